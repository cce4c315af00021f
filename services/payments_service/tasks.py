"""Background stock reconciliation tasks for the payments service."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from libs.common.config import get_settings
from libs.common.logging import get_logger
from services.payments_service.models import MercadoPagoPayment, PaymentPreference
from services.payments_service.services.status_resolver import (
    STOCK_SECURING_STATUSES,
)
from services.store_service.models import Order, OrderStatus
from services.store_service.services.stock_reconciliation import (
    deduct_stock_for_order,
    find_orders_missing_stock_entries,
    reapply_missing_items,
)
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def find_uncommitted_settlements(
    db: AsyncSession, older_than: datetime, *, limit: int = 200
) -> list[tuple[uuid.UUID, str]]:
    """Pending orders whose securing payment was recorded but stock never committed.

    Happens when a settlement crashed between the payment insert and the stock
    commit and the provider has not redelivered since. Records that were never
    linked to their order are matched through the checkout preference.
    """
    owner = func.coalesce(MercadoPagoPayment.order_id, PaymentPreference.order_id)
    result = await db.execute(
        select(Order.id, MercadoPagoPayment.payment_id)
        .select_from(MercadoPagoPayment)
        .outerjoin(
            PaymentPreference,
            PaymentPreference.preference_id == MercadoPagoPayment.preference_id,
        )
        .join(Order, Order.id == owner)
        .where(
            Order.status == OrderStatus.PENDING,
            Order.stock_deducted.is_(False),
            MercadoPagoPayment.status.in_(STOCK_SECURING_STATUSES),
            MercadoPagoPayment.created_at <= older_than,
        )
        .order_by(MercadoPagoPayment.created_at.asc())
        .limit(limit)
    )

    seen: set[uuid.UUID] = set()
    settlements = []
    for order_id, payment_id in result.all():
        if order_id in seen:
            continue
        seen.add(order_id)
        settlements.append((order_id, payment_id))
    return settlements


async def reconcile_stock_commitments(db: AsyncSession) -> dict[str, int]:
    """Finish interrupted stock commitments and re-sell items a run skipped."""
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(
        minutes=settings.RECONCILIATION_GRACE_MINUTES
    )
    summary = {"committed": 0, "reapplied": 0, "failed": 0}

    for order_id, payment_id in await find_uncommitted_settlements(db, cutoff):
        try:
            report = await deduct_stock_for_order(db, order_id, payment_id)
        except Exception as exc:
            await db.rollback()
            summary["failed"] += 1
            logger.warning(
                "Stock commit retry failed for order %s: %s", order_id, exc
            )
            continue
        if report.committed:
            summary["committed"] += 1

    for order_id in await find_orders_missing_stock_entries(db):
        payment_id = await db.scalar(select(Order.payment_id).where(Order.id == order_id))
        try:
            report = await reapply_missing_items(db, order_id, payment_id)
        except Exception as exc:
            await db.rollback()
            summary["failed"] += 1
            logger.warning(
                "Missing item reapply failed for order %s: %s", order_id, exc
            )
            continue
        summary["reapplied"] += len(report.adjusted)

    logger.info(
        "Stock reconciliation pass: %d committed, %d item(s) reapplied, %d failed",
        summary["committed"],
        summary["reapplied"],
        summary["failed"],
    )
    return summary
