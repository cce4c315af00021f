"""Store commerce models: orders and their line items."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.store_service.models.enums import OrderStatus, enum_values
from sqlalchemy import Boolean, CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship


class Order(Base):
    """Customer orders.

    ``stock_deducted`` is the single authoritative gate for whether inventory
    has been committed for the order. Only the stock reconciliation engine
    sets it to true; a cancellation restore sets it back to false and opens a
    new ``stock_cycle``.
    """

    __tablename__ = "store_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Customer
    user_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)

    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    status: Mapped[OrderStatus] = mapped_column(
        SAEnum(
            OrderStatus,
            values_callable=enum_values,
            name="store_order_status_enum",
        ),
        default=OrderStatus.PENDING,
        server_default="pending",
        nullable=False,
    )

    # Latest provider payment that settled this order
    payment_id: Mapped[Optional[str]] = mapped_column(
        String(64), index=True, nullable=True
    )

    # Stock commitment
    stock_deducted: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="0", nullable=False
    )
    stock_deducted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    stock_cycle: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    items = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Order {self.id} status={self.status}>"


class OrderItem(Base):
    """Order line items. Immutable once the order is created."""

    __tablename__ = "store_order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("store_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("store_products.id"), nullable=True
    )
    variant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("store_product_variants.id"), nullable=True
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    # Price captured at checkout
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="order_item_positive_quantity"),
        CheckConstraint(
            "(product_id IS NULL) <> (variant_id IS NULL)",
            name="order_item_single_stock_target",
        ),
    )

    order = relationship("Order", back_populates="items")

    def __repr__(self):
        target = self.variant_id or self.product_id
        return f"<OrderItem target={target} qty={self.quantity}>"
