"""Store catalog models: products and variants with their stock counters."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base, JSONType
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship


class Product(Base):
    """Sellable product. Base stock is used when an order line has no variant."""

    __tablename__ = "store_products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(
        String(100), unique=True, nullable=True
    )
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    stock: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="1", nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("stock >= 0", name="product_non_negative_stock"),
    )

    variants = relationship(
        "ProductVariant", back_populates="product", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Product {self.name} stock={self.stock}>"


class ProductVariant(Base):
    """Product variant (size, colour, ...) with its own stock counter."""

    __tablename__ = "store_product_variants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("store_products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sku: Mapped[Optional[str]] = mapped_column(
        String(100), unique=True, nullable=True
    )
    attributes: Mapped[Optional[dict]] = mapped_column(
        JSONType, nullable=True
    )  # {"size": "M", "color": "blue"}
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    stock: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    # Cleared automatically when stock hits zero
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="1", nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("stock >= 0", name="variant_non_negative_stock"),
    )

    product = relationship("Product", back_populates="variants")

    def __repr__(self):
        return f"<ProductVariant {self.id} stock={self.stock}>"
