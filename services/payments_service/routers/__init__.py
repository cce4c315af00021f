"""Routers package."""

from services.payments_service.routers.internal import router as internal_router
from services.payments_service.routers.webhooks import router as webhooks_router

__all__ = [
    "internal_router",
    "webhooks_router",
]
