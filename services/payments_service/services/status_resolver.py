"""Maps Mercado Pago payment statuses onto order statuses."""

from dataclasses import dataclass
from typing import Optional

from services.payments_service.models import PreferenceStatus
from services.store_service.models import OrderStatus

# Funds are likely secured but a person still verifies them, so these stay
# "pending" on the order instead of going straight to "paid".
STOCK_SECURING_STATUSES = frozenset({"approved", "pending", "in_process", "authorised"})

ORDER_STATUS_BY_PAYMENT_STATUS: dict[str, OrderStatus] = {
    "approved": OrderStatus.PENDING,
    "pending": OrderStatus.PENDING,
    "in_process": OrderStatus.PENDING,
    "authorised": OrderStatus.PENDING,
    "rejected": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
    "refunded": OrderStatus.CANCELLED,
    "charged_back": OrderStatus.FAILED,
}


@dataclass(frozen=True)
class StatusResolution:
    provider_status: str
    order_status: Optional[OrderStatus]
    secures_stock: bool

    @property
    def requires_transition(self) -> bool:
        return self.order_status is not None


def normalize_status(status: Optional[str]) -> str:
    return (status or "").strip().lower()


def resolve_payment_status(status: Optional[str]) -> StatusResolution:
    """Order status and stock decision for a provider status.

    Unknown statuses resolve to ``order_status=None``: no transition, and no
    stock action.
    """
    normalized = normalize_status(status)
    order_status = ORDER_STATUS_BY_PAYMENT_STATUS.get(normalized)
    return StatusResolution(
        provider_status=normalized,
        order_status=order_status,
        secures_stock=order_status is not None
        and normalized in STOCK_SECURING_STATUSES,
    )


def preference_status_for(status: Optional[str]) -> PreferenceStatus:
    if normalize_status(status) == "approved":
        return PreferenceStatus.ACTIVE
    return PreferenceStatus.PENDING
