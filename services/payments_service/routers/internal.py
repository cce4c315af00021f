"""Service-to-service internal endpoints for stock reconciliation."""

import uuid
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from libs.auth.dependencies import require_service_role
from libs.auth.models import ServicePrincipal
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.payments_service.schemas import (
    ReconciliationOverview,
    RestoreStockRequest,
    StockReconciliationResponse,
)
from services.payments_service.tasks import find_uncommitted_settlements
from services.store_service.models import Order
from services.store_service.services.stock_reconciliation import (
    OrderNotFoundError,
    find_orders_missing_stock_entries,
    reapply_missing_items,
    restore_stock_for_order,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(
    prefix="/internal",
    tags=["internal-stock"],
    dependencies=[Depends(require_service_role)],
)
logger = get_logger(__name__)


@router.get("/stock/reconciliation", response_model=ReconciliationOverview)
async def stock_reconciliation_overview(
    db: AsyncSession = Depends(get_async_db),
):
    """Orders whose stock ledger and commitment flag disagree."""
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(
        minutes=settings.RECONCILIATION_GRACE_MINUTES
    )
    uncommitted = await find_uncommitted_settlements(db, cutoff)
    return ReconciliationOverview(
        committed_with_missing_items=await find_orders_missing_stock_entries(db),
        uncommitted_settlements=[order_id for order_id, _ in uncommitted],
    )


@router.post(
    "/orders/{order_id}/stock/reconcile",
    response_model=StockReconciliationResponse,
)
async def reconcile_order_stock(
    order_id: uuid.UUID,
    principal: ServicePrincipal = Depends(require_service_role),
    db: AsyncSession = Depends(get_async_db),
):
    """Commit stock for an order, or re-sell the items a committed run skipped."""
    payment_id = await db.scalar(select(Order.payment_id).where(Order.id == order_id))
    try:
        report = await reapply_missing_items(
            db, order_id, payment_id, actor=principal.subject
        )
    except OrderNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Order not found"
        )

    logger.info(
        "Manual stock reconcile for order %s by %s",
        order_id,
        principal.subject,
        extra={"extra_fields": {"adjusted": len(report.adjusted)}},
    )
    return StockReconciliationResponse.model_validate(report)


@router.post(
    "/orders/{order_id}/stock/restore",
    response_model=StockReconciliationResponse,
)
async def restore_order_stock(
    order_id: uuid.UUID,
    payload: RestoreStockRequest,
    principal: ServicePrincipal = Depends(require_service_role),
    db: AsyncSession = Depends(get_async_db),
):
    """Give back the stock committed for a cancelled or refunded order."""
    try:
        report = await restore_stock_for_order(
            db,
            order_id,
            reason=payload.reason,
            actor=payload.actor or principal.subject,
        )
    except OrderNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Order not found"
        )
    return StockReconciliationResponse.model_validate(report)
