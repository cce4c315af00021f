"""Stock ledger primitives: counter reads, atomic counter writes, audit entries.

Every write here is a single statement followed by a commit. Callers compose
them; nothing relies on a multi-statement transaction.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from libs.common.config import get_settings
from libs.common.logging import get_logger
from services.store_service.models import (
    Product,
    ProductVariant,
    StockLog,
    StockMovementType,
)
from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

logger = get_logger(__name__)


class StockTargetNotFoundError(LookupError):
    """The product or variant referenced by a stock change does not exist."""


@dataclass(frozen=True)
class StockTarget:
    """Snapshot of the counter a stock change applies to."""

    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID]
    current_stock: int

    @property
    def is_variant(self) -> bool:
        return self.variant_id is not None


def clamp_stock(current: int, change: int) -> int:
    """Stock never goes below zero, whatever the requested change."""
    return max(0, current + change)


async def load_stock_target(
    db: AsyncSession,
    *,
    product_id: Optional[uuid.UUID] = None,
    variant_id: Optional[uuid.UUID] = None,
) -> StockTarget:
    """Read the current stock of a variant, or of a base product."""
    if variant_id is not None:
        row = (
            await db.execute(
                select(ProductVariant.product_id, ProductVariant.stock).where(
                    ProductVariant.id == variant_id
                )
            )
        ).one_or_none()
        if row is None:
            raise StockTargetNotFoundError(f"Variant {variant_id} not found")
        return StockTarget(
            product_id=row.product_id, variant_id=variant_id, current_stock=row.stock
        )

    if product_id is None:
        raise ValueError("product_id or variant_id is required")

    stock = (
        await db.execute(select(Product.stock).where(Product.id == product_id))
    ).scalar_one_or_none()
    if stock is None:
        raise StockTargetNotFoundError(f"Product {product_id} not found")
    return StockTarget(product_id=product_id, variant_id=None, current_stock=stock)


async def apply_stock_change(
    db: AsyncSession, target: StockTarget, change: int
) -> Optional[int]:
    """Apply ``change`` to the counter in one clamped UPDATE.

    The new value is computed by the database from the stored value, so
    unrelated concurrent writers are not overwritten. Variants are
    deactivated at zero and reactivated above it. Returns the stock the
    database ended up with, or None when the row is gone.
    """
    if target.is_variant:
        column = ProductVariant.stock
        stmt = (
            update(ProductVariant)
            .where(ProductVariant.id == target.variant_id)
            .values(
                stock=case((column + change < 0, 0), else_=column + change),
                is_active=case((column + change > 0, True), else_=False),
            )
        )
    else:
        column = Product.stock
        stmt = (
            update(Product)
            .where(Product.id == target.product_id)
            .values(stock=case((column + change < 0, 0), else_=column + change))
        )

    result = await db.execute(stmt.returning(column))
    new_stock = result.scalar_one_or_none()
    await db.commit()
    return new_stock


async def append_stock_log(
    db: AsyncSession,
    *,
    target: StockTarget,
    change: int,
    reason: str,
    movement_type: StockMovementType,
    actor: Optional[str] = None,
    order_id: Optional[uuid.UUID] = None,
    order_item_id: Optional[uuid.UUID] = None,
    payment_id: Optional[str] = None,
    stock_cycle: Optional[int] = None,
) -> StockLog:
    """Insert one audit entry.

    ``old_stock`` and ``new_stock`` are computed from the snapshot in
    ``target``. The counter itself is written later by the database, so a
    writer outside this ledger can move it in between; callers that know the
    stored result pass it to ``record_stock_result``.

    Raises IntegrityError (after rolling the session back) when an entry for
    the same order item, movement and stock cycle already exists.
    """
    entry = StockLog(
        product_id=target.product_id,
        variant_id=target.variant_id,
        old_stock=target.current_stock,
        new_stock=clamp_stock(target.current_stock, change),
        change=change,
        reason=reason,
        user_id=actor or get_settings().STOCK_SYSTEM_USER_ID,
        movement_type=movement_type,
        order_id=order_id,
        order_item_id=order_item_id,
        payment_id=payment_id,
        stock_cycle=stock_cycle,
    )
    db.add(entry)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise
    return entry


async def adjust_stock(
    db: AsyncSession,
    *,
    change: int,
    reason: str,
    actor: str,
    product_id: Optional[uuid.UUID] = None,
    variant_id: Optional[uuid.UUID] = None,
) -> int:
    """Manual stock adjustment (restock, shrinkage). Returns the new stock."""
    if not reason.strip():
        raise ValueError("reason is required")

    target = await load_stock_target(db, product_id=product_id, variant_id=variant_id)
    new_stock = await apply_stock_change(db, target, change)
    if new_stock is None:
        raise StockTargetNotFoundError("Stock target disappeared during adjustment")
    entry = await append_stock_log(
        db,
        target=target,
        change=change,
        reason=reason,
        movement_type=StockMovementType.ADJUSTMENT,
        actor=actor,
    )
    await record_stock_result(db, entry, new_stock)
    logger.info(
        "Manual stock adjustment product=%s variant=%s %d -> %d",
        target.product_id,
        target.variant_id,
        target.current_stock,
        new_stock,
        extra={"extra_fields": {"actor": actor, "reason": reason}},
    )
    return new_stock


async def record_stock_result(
    db: AsyncSession, entry: StockLog, new_stock: Optional[int]
) -> None:
    """Overwrite an entry's ``new_stock`` with what the counter actually holds."""
    expected = entry.new_stock
    if new_stock is None or new_stock == expected:
        return
    await db.execute(
        update(StockLog).where(StockLog.id == entry.id).values(new_stock=new_stock)
    )
    await db.commit()
    logger.info(
        "Stock moved outside the ledger for product=%s variant=%s: "
        "expected %d, stored %d",
        entry.product_id,
        entry.variant_id,
        expected,
        new_stock,
    )
    set_committed_value(entry, "new_stock", new_stock)
