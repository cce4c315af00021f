"""Payments Service schemas package."""

from services.payments_service.schemas.main import (
    HmacAuditContext,
    PaymentNotification,
    ProviderPayment,
    ReconciliationOverview,
    RestoreStockRequest,
    SettlementResult,
    SkippedItemResponse,
    StockReconciliationResponse,
)

__all__ = [
    "HmacAuditContext",
    "PaymentNotification",
    "ProviderPayment",
    "ReconciliationOverview",
    "RestoreStockRequest",
    "SettlementResult",
    "SkippedItemResponse",
    "StockReconciliationResponse",
]
