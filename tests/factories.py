"""
Model factories for creating valid test data.

Every factory produces a valid, insertable SQLAlchemy model instance.
Override any field via kwargs.

Usage:
    product = ProductFactory.create(stock=10)
    db_session.add(product)
    await db_session.commit()
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _uuid() -> uuid.UUID:
    return uuid.uuid4()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _payment_id() -> str:
    return str(uuid.uuid4().int)[:11]


# ---------------------------------------------------------------------------
# Store Service
# ---------------------------------------------------------------------------


class ProductFactory:
    @staticmethod
    def create(**overrides):
        from services.store_service.models import Product

        defaults = {
            "id": _uuid(),
            "name": "Test Product",
            "sku": f"SKU-{uuid.uuid4().hex[:8].upper()}",
            "price": Decimal("1500.00"),
            "stock": 10,
            "is_active": True,
            "created_at": _now(),
            "updated_at": _now(),
        }
        defaults.update(overrides)
        return Product(**defaults)


class VariantFactory:
    @staticmethod
    def create(product_id, **overrides):
        from services.store_service.models import ProductVariant

        defaults = {
            "id": _uuid(),
            "product_id": product_id,
            "sku": f"VAR-{uuid.uuid4().hex[:8].upper()}",
            "attributes": {"size": "M"},
            "price": Decimal("1500.00"),
            "stock": 5,
            "is_active": True,
            "created_at": _now(),
            "updated_at": _now(),
        }
        defaults.update(overrides)
        return ProductVariant(**defaults)


class OrderFactory:
    @staticmethod
    def create(**overrides):
        from services.store_service.models import Order, OrderStatus

        defaults = {
            "id": _uuid(),
            "user_id": f"user-{uuid.uuid4().hex[:8]}",
            "total": Decimal("3000.00"),
            "status": OrderStatus.PENDING,
            "payment_id": None,
            "stock_deducted": False,
            "stock_cycle": 0,
            "created_at": _now(),
            "updated_at": _now(),
        }
        defaults.update(overrides)
        return Order(**defaults)


class OrderItemFactory:
    @staticmethod
    def create(order_id, product_id=None, variant_id=None, **overrides):
        from services.store_service.models import OrderItem

        defaults = {
            "id": _uuid(),
            "order_id": order_id,
            "product_id": None if variant_id else product_id,
            "variant_id": variant_id,
            "quantity": 2,
            "unit_price": Decimal("1500.00"),
            "created_at": _now(),
        }
        defaults.update(overrides)
        return OrderItem(**defaults)


# ---------------------------------------------------------------------------
# Payments Service
# ---------------------------------------------------------------------------


class PreferenceFactory:
    @staticmethod
    def create(order_id, **overrides):
        from services.payments_service.models import (
            PaymentPreference,
            PreferenceStatus,
        )

        defaults = {
            "id": _uuid(),
            "preference_id": f"pref-{uuid.uuid4().hex[:12]}",
            "external_reference": f"order-{uuid.uuid4().hex[:12]}",
            "order_id": order_id,
            "status": PreferenceStatus.PENDING,
            "created_at": _now(),
            "updated_at": _now(),
        }
        defaults.update(overrides)
        return PaymentPreference(**defaults)


class PaymentRecordFactory:
    @staticmethod
    def create(**overrides):
        from services.payments_service.models import (
            HmacValidationResult,
            MercadoPagoPayment,
        )

        defaults = {
            "id": _uuid(),
            "payment_id": _payment_id(),
            "preference_id": None,
            "external_reference": None,
            "order_id": None,
            "status": "approved",
            "amount": Decimal("3000.00"),
            "currency_id": "ARS",
            "payment_method_id": "visa",
            "hmac_validation_result": HmacValidationResult.VALID,
            "hmac_fallback_used": False,
            "requires_manual_verification": False,
            "created_at": _now(),
            "updated_at": _now(),
        }
        defaults.update(overrides)
        return MercadoPagoPayment(**defaults)


class ProviderPaymentFactory:
    """Mercado Pago ``GET /v1/payments/{id}`` response bodies."""

    @staticmethod
    def payload(**overrides) -> dict:
        defaults = {
            "id": int(_payment_id()),
            "status": "approved",
            "status_detail": "accredited",
            "external_reference": None,
            "preference_id": None,
            "transaction_amount": 3000.0,
            "payment_method_id": "visa",
            "currency_id": "ARS",
            "installments": 1,
            "date_created": "2026-10-18T10:00:00.000-03:00",
            "date_approved": "2026-10-18T10:00:05.000-03:00",
            "date_last_updated": "2026-10-18T10:00:05.000-03:00",
        }
        defaults.update(overrides)
        return defaults
