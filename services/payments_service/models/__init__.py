"""Payments Service models package."""

from services.payments_service.models.core import MercadoPagoPayment, PaymentPreference
from services.payments_service.models.enums import (
    HmacValidationResult,
    PreferenceStatus,
)

__all__ = [
    "HmacValidationResult",
    "MercadoPagoPayment",
    "PaymentPreference",
    "PreferenceStatus",
]
