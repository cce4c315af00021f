"""Stock reconciliation engine: commits (and releases) inventory for an order.

Deduction follows a check-then-act pattern without locks:

1. Read ``Order.stock_deducted``; if already committed there is nothing to do.
2. Load the line items.
3. Per item: re-read the flag (stop if a concurrent run finished first), read
   the counter, claim the item by appending its stock log entry (unique per
   item/movement/cycle), then apply the clamped decrement atomically.
   A failing item gives its claim back and is skipped; it is never fatal.
4. Set ``stock_deducted`` unconditionally, alerting on skipped items.

Release (cancellation) mirrors this for the items that were actually sold in
the current cycle and opens the next stock cycle with a compare-and-swap.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.store_service.models import (
    Order,
    OrderItem,
    StockLog,
    StockMovementType,
)
from services.store_service.services.stock_ledger import (
    StockTargetNotFoundError,
    append_stock_log,
    apply_stock_change,
    load_stock_target,
    record_stock_result,
)
from sqlalchemy import delete, exists, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class OrderNotFoundError(LookupError):
    """Raised when the order targeted by a stock operation does not exist."""


@dataclass
class SkippedItem:
    order_item_id: uuid.UUID
    reason: str


@dataclass
class StockReconciliationReport:
    """Outcome of one engine invocation."""

    order_id: uuid.UUID
    payment_id: Optional[str]
    adjusted: list[uuid.UUID] = field(default_factory=list)
    duplicates: list[uuid.UUID] = field(default_factory=list)
    skipped: list[SkippedItem] = field(default_factory=list)
    already_committed: bool = False
    preempted: bool = False
    committed: bool = False
    released: bool = False

    @property
    def needs_attention(self) -> bool:
        return bool(self.skipped)


def sale_reason(order_id: uuid.UUID, payment_id: Optional[str]) -> str:
    return f"Sale - order {order_id} - payment {payment_id or 'n/a'}"


def restock_reason(order_id: uuid.UUID, detail: str) -> str:
    return f"Restock - order {order_id} - {detail}"


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def _read_commit_state(db: AsyncSession, order_id: uuid.UUID) -> tuple[bool, int]:
    # Column select: always hits the database, never the identity map
    row = (
        await db.execute(
            select(Order.stock_deducted, Order.stock_cycle).where(Order.id == order_id)
        )
    ).one_or_none()
    if row is None:
        raise OrderNotFoundError(f"Order {order_id} not found")
    return bool(row.stock_deducted), int(row.stock_cycle)


async def _load_items(db: AsyncSession, order_id: uuid.UUID) -> list:
    result = await db.execute(
        select(
            OrderItem.id,
            OrderItem.product_id,
            OrderItem.variant_id,
            OrderItem.quantity,
        )
        .where(OrderItem.order_id == order_id)
        .order_by(OrderItem.created_at, OrderItem.id)
    )
    return list(result.all())


async def _sold_item_ids(
    db: AsyncSession, order_id: uuid.UUID, stock_cycle: int
) -> set[uuid.UUID]:
    result = await db.execute(
        select(StockLog.order_item_id).where(
            StockLog.order_id == order_id,
            StockLog.movement_type == StockMovementType.SALE,
            StockLog.stock_cycle == stock_cycle,
        )
    )
    return {row for row in result.scalars().all() if row is not None}


# ---------------------------------------------------------------------------
# Per-item adjustment
# ---------------------------------------------------------------------------


async def _with_retry(
    db: AsyncSession, operation: Callable[[], Awaitable[None]], *, label: str
) -> None:
    """Retry transient database errors with exponential backoff."""
    settings = get_settings()
    attempts = max(1, settings.STOCK_RETRY_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        try:
            await operation()
            return
        except OperationalError as exc:
            await db.rollback()
            if attempt == attempts:
                raise
            delay = min(
                settings.STOCK_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)),
                settings.STOCK_RETRY_MAX_DELAY_SECONDS,
            )
            logger.warning(
                "Stock write failed for %s (attempt %d/%d), retrying in %.2fs: %s",
                label,
                attempt,
                attempts,
                delay,
                exc,
            )
            await asyncio.sleep(delay)


async def _adjust_item(
    db: AsyncSession,
    item,
    *,
    change: int,
    movement_type: StockMovementType,
    reason: str,
    actor: Optional[str],
    order_id: uuid.UUID,
    payment_id: Optional[str],
    stock_cycle: int,
) -> bool:
    """Adjust one line item. Returns False when the item was already recorded."""
    target = await load_stock_target(
        db, product_id=item.product_id, variant_id=item.variant_id
    )

    try:
        entry = await append_stock_log(
            db,
            target=target,
            change=change,
            reason=reason,
            movement_type=movement_type,
            actor=actor,
            order_id=order_id,
            order_item_id=item.id,
            payment_id=payment_id,
            stock_cycle=stock_cycle,
        )
    except IntegrityError:
        return False

    stored: list = []

    async def write() -> None:
        stored.append(await apply_stock_change(db, target, change))

    try:
        await _with_retry(db, write, label=f"order item {item.id}")
    except Exception:
        await db.rollback()
        # Withdraw the claim so a later reapply can pick the item up
        await db.execute(delete(StockLog).where(StockLog.id == entry.id))
        await db.commit()
        raise

    await record_stock_result(db, entry, stored[-1] if stored else None)
    return True


async def _adjust_items(
    db: AsyncSession,
    report: StockReconciliationReport,
    items: list,
    *,
    sign: int,
    movement_type: StockMovementType,
    reason: str,
    actor: Optional[str],
    stock_cycle: int,
    expect_committed: bool,
) -> None:
    for item in items:
        # Another run may have finished (or released) the order meanwhile
        committed, current_cycle = await _read_commit_state(db, report.order_id)
        if committed != expect_committed or current_cycle != stock_cycle:
            report.preempted = True
            logger.info(
                "Stock run for order %s preempted by a concurrent run after %d item(s)",
                report.order_id,
                len(report.adjusted) + len(report.duplicates) + len(report.skipped),
            )
            return

        try:
            applied = await _adjust_item(
                db,
                item,
                change=sign * item.quantity,
                movement_type=movement_type,
                reason=reason,
                actor=actor,
                order_id=report.order_id,
                payment_id=report.payment_id,
                stock_cycle=stock_cycle,
            )
        except StockTargetNotFoundError as exc:
            report.skipped.append(SkippedItem(item.id, str(exc)))
            logger.error(
                "Stock target missing for order %s item %s: %s",
                report.order_id,
                item.id,
                exc,
            )
            continue
        except Exception as exc:
            await db.rollback()
            report.skipped.append(SkippedItem(item.id, repr(exc)))
            logger.error(
                "Stock %s failed for order %s item %s: %s",
                movement_type.value,
                report.order_id,
                item.id,
                exc,
                exc_info=True,
                extra={"extra_fields": {"payment_id": report.payment_id}},
            )
            continue

        if applied:
            report.adjusted.append(item.id)
        else:
            report.duplicates.append(item.id)
            logger.info(
                "Order %s item %s already has a %s entry for cycle %d, skipping",
                report.order_id,
                item.id,
                movement_type.value,
                stock_cycle,
            )


def _alert_if_incomplete(report: StockReconciliationReport, operation: str) -> None:
    if not report.skipped:
        return
    logger.error(
        "Stock %s for order %s finished with %d skipped item(s); manual reconciliation required",
        operation,
        report.order_id,
        len(report.skipped),
        extra={
            "extra_fields": {
                "payment_id": report.payment_id,
                "skipped": [
                    {"order_item_id": str(s.order_item_id), "reason": s.reason}
                    for s in report.skipped
                ],
            }
        },
    )


# ---------------------------------------------------------------------------
# Commit / release
# ---------------------------------------------------------------------------


async def deduct_stock_for_order(
    db: AsyncSession,
    order_id: uuid.UUID,
    payment_id: Optional[str],
    *,
    actor: Optional[str] = None,
) -> StockReconciliationReport:
    """Decrement every line item of the order exactly once and commit stock.

    Raises OrderNotFoundError when the order does not exist. Individual item
    failures never raise; they are reported in ``report.skipped``.
    """
    report = StockReconciliationReport(order_id=order_id, payment_id=payment_id)

    committed, stock_cycle = await _read_commit_state(db, order_id)
    if committed:
        report.already_committed = True
        logger.info("Stock already committed for order %s", order_id)
        return report

    items = await _load_items(db, order_id)
    if not items:
        logger.warning("Order %s has no line items; nothing to deduct", order_id)
        return report

    await _adjust_items(
        db,
        report,
        items,
        sign=-1,
        movement_type=StockMovementType.SALE,
        reason=sale_reason(order_id, payment_id),
        actor=actor,
        stock_cycle=stock_cycle,
        expect_committed=False,
    )
    if report.preempted:
        return report

    await _mark_committed(db, order_id)
    report.committed = True

    logger.info(
        "Stock committed for order %s: %d adjusted, %d already recorded, %d skipped",
        order_id,
        len(report.adjusted),
        len(report.duplicates),
        len(report.skipped),
        extra={"extra_fields": {"payment_id": payment_id}},
    )
    _alert_if_incomplete(report, "deduction")
    return report


async def _mark_committed(db: AsyncSession, order_id: uuid.UUID) -> None:
    await db.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(stock_deducted=True, stock_deducted_at=utc_now())
    )
    await db.commit()


async def restore_stock_for_order(
    db: AsyncSession,
    order_id: uuid.UUID,
    *,
    reason: str,
    actor: Optional[str] = None,
) -> StockReconciliationReport:
    """Give back the stock committed for an order (cancellation workflow).

    Only items with a sale entry in the current cycle are restocked. The
    order then moves to the next stock cycle so a later payment can commit
    stock again.
    """
    report = StockReconciliationReport(order_id=order_id, payment_id=None)

    committed, stock_cycle = await _read_commit_state(db, order_id)
    if not committed:
        logger.info("Order %s has no committed stock to restore", order_id)
        return report

    sold = await _sold_item_ids(db, order_id, stock_cycle)
    items = [item for item in await _load_items(db, order_id) if item.id in sold]

    await _adjust_items(
        db,
        report,
        items,
        sign=1,
        movement_type=StockMovementType.RESTOCK,
        reason=restock_reason(order_id, reason),
        actor=actor,
        stock_cycle=stock_cycle,
        expect_committed=True,
    )
    if report.preempted:
        return report

    result = await db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.stock_deducted.is_(True),
            Order.stock_cycle == stock_cycle,
        )
        .values(
            stock_deducted=False,
            stock_deducted_at=None,
            stock_cycle=stock_cycle + 1,
        )
    )
    await db.commit()
    report.released = result.rowcount == 1

    logger.info(
        "Stock released for order %s: %d restocked, %d skipped (cycle %d -> %d)",
        order_id,
        len(report.adjusted),
        len(report.skipped),
        stock_cycle,
        stock_cycle + 1,
    )
    _alert_if_incomplete(report, "restore")
    return report


# ---------------------------------------------------------------------------
# Out-of-band reconciliation
# ---------------------------------------------------------------------------


async def find_orders_missing_stock_entries(
    db: AsyncSession, *, limit: int = 200
) -> list[uuid.UUID]:
    """Orders whose stock is committed but where some item was never sold."""
    sale_recorded = exists().where(
        StockLog.order_item_id == OrderItem.id,
        StockLog.movement_type == StockMovementType.SALE,
        StockLog.stock_cycle == Order.stock_cycle,
    )
    result = await db.execute(
        select(Order.id)
        .join(OrderItem, OrderItem.order_id == Order.id)
        .where(Order.stock_deducted.is_(True), ~sale_recorded)
        .distinct()
        .limit(limit)
    )
    return list(result.scalars().all())


async def reapply_missing_items(
    db: AsyncSession,
    order_id: uuid.UUID,
    payment_id: Optional[str],
    *,
    actor: Optional[str] = None,
) -> StockReconciliationReport:
    """Deduct the items a previous committed run skipped.

    Uncommitted orders go through the regular deduction. Re-running is safe:
    the ledger key rejects items that were already sold in this cycle.
    """
    committed, stock_cycle = await _read_commit_state(db, order_id)
    if not committed:
        return await deduct_stock_for_order(db, order_id, payment_id, actor=actor)

    report = StockReconciliationReport(
        order_id=order_id, payment_id=payment_id, already_committed=True
    )
    sold = await _sold_item_ids(db, order_id, stock_cycle)
    missing = [item for item in await _load_items(db, order_id) if item.id not in sold]
    if not missing:
        return report

    await _adjust_items(
        db,
        report,
        missing,
        sign=-1,
        movement_type=StockMovementType.SALE,
        reason=sale_reason(order_id, payment_id),
        actor=actor,
        stock_cycle=stock_cycle,
        expect_committed=True,
    )
    logger.info(
        "Reapplied %d missing item(s) for order %s",
        len(report.adjusted),
        order_id,
    )
    _alert_if_incomplete(report, "reapply")
    return report
