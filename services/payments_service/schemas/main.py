import uuid
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from services.payments_service.models import HmacValidationResult


def _stringify_id(value: Any) -> Any:
    # The provider sends numeric ids; we always store them as text
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value))
    return value


class HmacAuditContext(BaseModel):
    """How the transport established the notification's authenticity."""

    validation_result: Optional[HmacValidationResult] = None
    failure_reason: Optional[str] = None
    fallback_used: bool = False
    source_request_id: Optional[str] = None


class PaymentNotification(BaseModel):
    """A payment notification as handed over by the webhook transport.

    Only ``payment_id`` is trusted; everything else about the payment is
    fetched from the provider.
    """

    payment_id: str = Field(min_length=1, max_length=64)
    request_id: str
    requires_manual_verification: bool = False
    audit_context: Optional[HmacAuditContext] = None

    @field_validator("payment_id", mode="before")
    @classmethod
    def normalize_payment_id(cls, v: Any) -> Any:
        return _stringify_id(v)


class ProviderPayment(BaseModel):
    """Subset of Mercado Pago's ``GET /v1/payments/{id}`` response."""

    id: str
    status: Optional[str] = None
    status_detail: Optional[str] = None
    external_reference: Optional[str] = None
    preference_id: Optional[str] = None
    transaction_amount: Decimal = Decimal("0")
    payment_method_id: Optional[str] = None
    currency_id: Optional[str] = None
    installments: Optional[int] = None
    date_created: Optional[str] = None
    date_approved: Optional[str] = None
    date_last_updated: Optional[str] = None

    # Full provider payload, persisted for audit
    raw: dict = Field(default_factory=dict, exclude=True)

    model_config = ConfigDict(extra="ignore")

    @field_validator("id", "external_reference", "preference_id", mode="before")
    @classmethod
    def normalize_ids(cls, v: Any) -> Any:
        return _stringify_id(v)

    @field_validator("transaction_amount", mode="before")
    @classmethod
    def default_amount(cls, v: Any) -> Any:
        return Decimal("0") if v is None else v

    @classmethod
    def from_api(cls, data: dict) -> "ProviderPayment":
        return cls.model_validate({**data, "raw": data})


class SettlementResult(BaseModel):
    """Outcome reported back to the webhook transport.

    ``success=False`` means "ask the provider to redeliver"; anything with
    ``success=True`` (including ``already_processed``) is acknowledged.
    """

    success: bool
    status: Optional[str] = None
    already_processed: Optional[bool] = None
    order_id: Optional[uuid.UUID] = None
    error: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_response(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SkippedItemResponse(BaseModel):
    order_item_id: uuid.UUID
    reason: str

    model_config = ConfigDict(from_attributes=True)


class StockReconciliationResponse(BaseModel):
    order_id: uuid.UUID
    payment_id: Optional[str] = None
    adjusted: list[uuid.UUID] = Field(default_factory=list)
    duplicates: list[uuid.UUID] = Field(default_factory=list)
    skipped: list[SkippedItemResponse] = Field(default_factory=list)
    already_committed: bool = False
    preempted: bool = False
    committed: bool = False
    released: bool = False

    model_config = ConfigDict(from_attributes=True)


class RestoreStockRequest(BaseModel):
    reason: str = Field(min_length=3, max_length=255)
    actor: Optional[str] = None


class ReconciliationOverview(BaseModel):
    """Orders that need an operator (or the worker) to look at their stock."""

    committed_with_missing_items: list[uuid.UUID]
    uncommitted_settlements: list[uuid.UUID]
