"""Pydantic schemas for store service."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from services.store_service.models import StockMovementType

# ============================================================================
# INVENTORY SCHEMAS
# ============================================================================


class StockAdjustment(BaseModel):
    """Adjust stock (restock, correction, etc.)."""

    product_id: Optional[uuid.UUID] = None
    variant_id: Optional[uuid.UUID] = None
    change: int = Field(..., description="Positive to add, negative to subtract")
    reason: str = Field(..., min_length=3, max_length=255)

    @model_validator(mode="after")
    def exactly_one_target(self) -> "StockAdjustment":
        if (self.product_id is None) == (self.variant_id is None):
            raise ValueError("Provide exactly one of product_id or variant_id")
        return self


class StockAdjustmentResponse(BaseModel):
    product_id: Optional[uuid.UUID] = None
    variant_id: Optional[uuid.UUID] = None
    new_stock: int


class StockLogResponse(BaseModel):
    id: uuid.UUID
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    old_stock: int
    new_stock: int
    change: int
    reason: str
    user_id: str
    movement_type: StockMovementType
    order_id: Optional[uuid.UUID] = None
    order_item_id: Optional[uuid.UUID] = None
    payment_id: Optional[str] = None
    stock_cycle: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
