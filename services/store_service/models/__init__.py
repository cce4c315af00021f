"""Store Service models package."""

from services.store_service.models.catalog import Product, ProductVariant
from services.store_service.models.commerce import Order, OrderItem
from services.store_service.models.enums import OrderStatus, StockMovementType
from services.store_service.models.inventory import StockLog

__all__ = [
    "Order",
    "OrderItem",
    "OrderStatus",
    "Product",
    "ProductVariant",
    "StockLog",
    "StockMovementType",
]
