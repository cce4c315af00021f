"""Store inventory models: append-only stock audit trail."""

import uuid
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.store_service.models.enums import StockMovementType, enum_values
from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column


class StockLog(Base):
    """Audit trail for every stock mutation. Rows are never updated or deleted.

    The (order_item_id, movement_type, stock_cycle) unique key lets a single
    sale and a single restock be recorded per line item per stock cycle; it
    is what makes concurrent settlement of the same order apply each item at
    most once. Manual adjustments carry no order item and never collide.
    """

    __tablename__ = "store_stock_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    variant_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    old_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    new_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    change: Mapped[int] = mapped_column(
        Integer, nullable=False
    )  # Positive = add, negative = subtract
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    movement_type: Mapped[StockMovementType] = mapped_column(
        SAEnum(
            StockMovementType,
            values_callable=enum_values,
            name="store_stock_movement_type_enum",
        ),
        nullable=False,
    )

    # Settlement context (NULL for manual adjustments)
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    order_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    stock_cycle: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (
        UniqueConstraint(
            "order_item_id",
            "movement_type",
            "stock_cycle",
            name="unique_stock_log_item_movement_cycle",
        ),
        Index("ix_store_stock_logs_order_id", "order_id"),
    )

    def __repr__(self):
        return f"<StockLog {self.movement_type} change={self.change}>"
