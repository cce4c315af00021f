"""Payment settlement domain operations."""
