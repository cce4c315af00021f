import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base, JSONType
from services.payments_service.models.enums import (
    HmacValidationResult,
    PreferenceStatus,
    enum_values,
)
from sqlalchemy import Boolean, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column


class MercadoPagoPayment(Base):
    """One payment reported by Mercado Pago.

    ``payment_id`` is unique: the insert of this row is the authoritative
    "this notification has been recorded" checkpoint.
    """

    __tablename__ = "mercadopago_payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False
    )

    # Correlation keys
    preference_id: Mapped[Optional[str]] = mapped_column(
        String(128), index=True, nullable=True
    )
    external_reference: Mapped[Optional[str]] = mapped_column(
        String(128), index=True, nullable=True
    )
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("store_orders.id"), index=True, nullable=True
    )

    status: Mapped[str] = mapped_column(String(32), nullable=False)
    status_detail: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency_id: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    payment_method_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    installments: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    date_created: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    date_approved: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    date_last_updated: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Provider payload as fetched, kept for audit
    raw_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # How the notification's authenticity was established
    requires_manual_verification: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="0", nullable=False
    )
    hmac_validation_result: Mapped[HmacValidationResult] = mapped_column(
        SAEnum(
            HmacValidationResult,
            name="hmac_validation_result_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=HmacValidationResult.VALID,
        nullable=False,
    )
    hmac_failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    hmac_fallback_used: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="0", nullable=False
    )
    verification_timestamp: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    webhook_request_id: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<MercadoPagoPayment {self.payment_id} status={self.status}>"


class PaymentPreference(Base):
    """Checkout preference created when the buyer is sent to the provider.

    Links the provider's ``preference_id`` and our ``external_reference`` back
    to the order.
    """

    __tablename__ = "mercadopago_preferences"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    preference_id: Mapped[str] = mapped_column(
        String(128), unique=True, index=True, nullable=False
    )
    external_reference: Mapped[Optional[str]] = mapped_column(
        String(128), unique=True, index=True, nullable=True
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("store_orders.id"), index=True, nullable=False
    )

    status: Mapped[PreferenceStatus] = mapped_column(
        SAEnum(
            PreferenceStatus,
            name="mercadopago_preference_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=PreferenceStatus.PENDING,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<PaymentPreference {self.preference_id} order={self.order_id}>"
