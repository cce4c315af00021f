"""Admin store inventory router."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from libs.auth.dependencies import require_service_role
from libs.auth.models import ServicePrincipal
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.store_service.models import StockLog
from services.store_service.schemas import (
    StockAdjustment,
    StockAdjustmentResponse,
    StockLogResponse,
)
from services.store_service.services.stock_ledger import (
    StockTargetNotFoundError,
    adjust_stock,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(tags=["admin-store"])
logger = get_logger(__name__)


# ============================================================================
# INVENTORY
# ============================================================================


@router.post("/stock/adjustments", response_model=StockAdjustmentResponse)
async def create_stock_adjustment(
    adjustment: StockAdjustment,
    current_user: ServicePrincipal = Depends(require_service_role),
    db: AsyncSession = Depends(get_async_db),
):
    """Adjust stock (restock or correction). Stock never drops below zero."""
    try:
        new_stock = await adjust_stock(
            db,
            change=adjustment.change,
            reason=adjustment.reason,
            actor=current_user.subject,
            product_id=adjustment.product_id,
            variant_id=adjustment.variant_id,
        )
    except StockTargetNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Product not found"
        )

    return StockAdjustmentResponse(
        product_id=adjustment.product_id,
        variant_id=adjustment.variant_id,
        new_stock=new_stock,
    )


@router.get("/orders/{order_id}/stock-logs", response_model=list[StockLogResponse])
async def list_order_stock_logs(
    order_id: uuid.UUID,
    current_user: ServicePrincipal = Depends(require_service_role),
    db: AsyncSession = Depends(get_async_db),
):
    """Stock ledger entries written for an order, oldest first."""
    result = await db.execute(
        select(StockLog)
        .where(StockLog.order_id == order_id)
        .order_by(StockLog.created_at.asc())
    )
    return result.scalars().all()
