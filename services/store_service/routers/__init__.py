"""Store service routers package."""

from services.store_service.routers.admin_inventory import (
    router as admin_inventory_router,
)

__all__ = [
    "admin_inventory_router",
]
