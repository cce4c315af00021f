"""Enum definitions for payments service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class HmacValidationResult(str, enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    FALLBACK_USED = "fallback_used"


class PreferenceStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
