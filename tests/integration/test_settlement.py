"""Integration tests for the payment settlement orchestrator.

Each notification runs on its own database session, like concurrent webhook
deliveries would.
"""

import asyncio
import uuid

import pytest
from services.payments_service.mercadopago_client import MercadoPagoError
from services.payments_service.models import (
    HmacValidationResult,
    MercadoPagoPayment,
    PaymentPreference,
    PreferenceStatus,
)
from services.payments_service.schemas import HmacAuditContext, PaymentNotification
from services.payments_service.services.idempotency import IdempotencyGate
from services.payments_service.services.settlement import (
    process_payment_notification,
)
from services.store_service.models import (
    Order,
    OrderStatus,
    Product,
    StockLog,
    StockMovementType,
)
from sqlalchemy import func, select
from tests.factories import (
    OrderFactory,
    OrderItemFactory,
    PaymentRecordFactory,
    PreferenceFactory,
    ProductFactory,
    ProviderPaymentFactory,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _checkout(db, *, stock=10, quantity=2, **order_overrides):
    """A product, an order for it and the checkout preference."""
    product = ProductFactory.create(stock=stock)
    db.add(product)
    await db.commit()
    order = OrderFactory.create(**order_overrides)
    db.add(order)
    db.add(OrderItemFactory.create(order.id, product_id=product.id, quantity=quantity))
    preference = PreferenceFactory.create(order.id)
    db.add(preference)
    await db.commit()
    return product, order, preference


def _notification(payment_id: str, **overrides) -> PaymentNotification:
    defaults = {"payment_id": payment_id, "request_id": f"req-{uuid.uuid4().hex[:8]}"}
    defaults.update(overrides)
    return PaymentNotification(**defaults)


async def _settle(session_factory, provider, payment_id, gate=None, **overrides):
    async with session_factory() as session:
        return await process_payment_notification(
            session,
            _notification(payment_id, **overrides),
            provider=provider,
            gate=gate or IdempotencyGate(ttl_seconds=60),
        )


async def _stock(db, product_id) -> int:
    return await db.scalar(select(Product.stock).where(Product.id == product_id))


async def _order(db, order_id):
    return (
        await db.execute(
            select(Order.status, Order.payment_id, Order.stock_deducted).where(
                Order.id == order_id
            )
        )
    ).one()


async def _payment_count(db, payment_id) -> int:
    return await db.scalar(
        select(func.count())
        .select_from(MercadoPagoPayment)
        .where(MercadoPagoPayment.payment_id == payment_id)
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_approved_payment_settles_order_and_commits_stock(
    db_session, session_factory, fake_provider
):
    product, order, preference = await _checkout(db_session)
    payment_id = fake_provider.add(
        ProviderPaymentFactory.payload(preference_id=preference.preference_id)
    )

    result = await _settle(session_factory, fake_provider, payment_id)

    assert result.success is True
    assert result.status == "approved"
    assert result.already_processed is None
    assert result.order_id == order.id

    status, order_payment_id, deducted = await _order(db_session, order.id)
    assert status == OrderStatus.PENDING
    assert order_payment_id == payment_id
    assert deducted is True
    assert await _stock(db_session, product.id) == 8

    record = await db_session.scalar(
        select(MercadoPagoPayment).where(MercadoPagoPayment.payment_id == payment_id)
    )
    assert record.order_id == order.id
    assert record.status == "approved"
    assert record.hmac_validation_result == HmacValidationResult.VALID
    assert record.raw_data["id"] == int(payment_id)
    assert record.date_approved is not None

    pref_status = await db_session.scalar(
        select(PaymentPreference.status).where(PaymentPreference.id == preference.id)
    )
    assert pref_status == PreferenceStatus.ACTIVE


@pytest.mark.asyncio
@pytest.mark.integration
async def test_order_found_through_external_reference(
    db_session, session_factory, fake_provider
):
    product, order, preference = await _checkout(db_session)
    payment_id = fake_provider.add(
        ProviderPaymentFactory.payload(
            preference_id=None, external_reference=preference.external_reference
        )
    )

    result = await _settle(session_factory, fake_provider, payment_id)

    assert result.order_id == order.id
    assert await _stock(db_session, product.id) == 8


@pytest.mark.asyncio
@pytest.mark.integration
async def test_order_found_through_sibling_payment(
    db_session, session_factory, fake_provider
):
    product, order, _ = await _checkout(db_session)
    db_session.add(
        PaymentRecordFactory.create(
            status="rejected", external_reference="legacy-ref", order_id=order.id
        )
    )
    await db_session.commit()
    payment_id = fake_provider.add(
        ProviderPaymentFactory.payload(external_reference="legacy-ref")
    )

    result = await _settle(session_factory, fake_provider, payment_id)

    assert result.order_id == order.id
    assert await _stock(db_session, product.id) == 8


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_redelivered_notification_is_applied_once(
    db_session, session_factory, fake_provider
):
    product, order, preference = await _checkout(db_session)
    payment_id = fake_provider.add(
        ProviderPaymentFactory.payload(preference_id=preference.preference_id)
    )

    first = await _settle(session_factory, fake_provider, payment_id)
    second = await _settle(session_factory, fake_provider, payment_id)

    assert first.success is True
    assert second.success is True
    assert second.already_processed is True
    assert await _payment_count(db_session, payment_id) == 1
    assert await _stock(db_session, product.id) == 8


@pytest.mark.asyncio
@pytest.mark.integration
async def test_concurrent_notifications_decrement_stock_once(
    db_session, session_factory, fake_provider
):
    product, order, preference = await _checkout(db_session, stock=10, quantity=2)
    payment_id = fake_provider.add(
        ProviderPaymentFactory.payload(preference_id=preference.preference_id)
    )

    # Separate gates: deliveries landing on different workers
    results = await asyncio.gather(
        _settle(session_factory, fake_provider, payment_id),
        _settle(session_factory, fake_provider, payment_id),
    )

    assert all(r.success for r in results)
    assert await _payment_count(db_session, payment_id) == 1
    assert await _stock(db_session, product.id) == 8
    sale_entries = await db_session.scalar(
        select(func.count()).select_from(StockLog).where(StockLog.order_id == order.id)
    )
    assert sale_entries == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_in_flight_duplicate_short_circuits_without_fetch(
    session_factory, fake_provider
):
    gate = IdempotencyGate(ttl_seconds=60)
    gate.begin("42")

    result = await _settle(session_factory, fake_provider, "42", gate=gate)

    assert result.success is True
    assert result.already_processed is True
    assert fake_provider.calls == []


@pytest.mark.asyncio
@pytest.mark.integration
async def test_gate_is_released_after_settlement(
    db_session, session_factory, fake_provider
):
    _, _, preference = await _checkout(db_session)
    payment_id = fake_provider.add(
        ProviderPaymentFactory.payload(preference_id=preference.preference_id)
    )
    gate = IdempotencyGate(ttl_seconds=60)

    await _settle(session_factory, fake_provider, payment_id, gate=gate)

    assert len(gate) == 0


@pytest.mark.asyncio
@pytest.mark.integration
async def test_duplicate_path_resumes_uncommitted_stock(
    db_session, session_factory, fake_provider
):
    """First attempt recorded the payment, then crashed before touching stock."""
    product, order, preference = await _checkout(db_session)
    payment_id = fake_provider.add(
        ProviderPaymentFactory.payload(preference_id=preference.preference_id)
    )
    db_session.add(
        PaymentRecordFactory.create(
            payment_id=payment_id,
            preference_id=preference.preference_id,
            order_id=order.id,
            status="approved",
        )
    )
    await db_session.commit()

    result = await _settle(session_factory, fake_provider, payment_id)

    assert result.success is True
    assert result.already_processed is True
    assert await _stock(db_session, product.id) == 8
    assert (await _order(db_session, order.id)).stock_deducted is True


@pytest.mark.asyncio
@pytest.mark.integration
async def test_status_change_on_same_payment_updates_order(
    db_session, session_factory, fake_provider
):
    product, order, preference = await _checkout(db_session)
    payment_id = fake_provider.add(
        ProviderPaymentFactory.payload(
            preference_id=preference.preference_id, status="in_process"
        )
    )
    await _settle(session_factory, fake_provider, payment_id)

    fake_provider.payments[payment_id]["status"] = "rejected"
    result = await _settle(session_factory, fake_provider, payment_id)

    assert result.already_processed is True
    assert result.status == "rejected"
    assert (await _order(db_session, order.id)).status == OrderStatus.CANCELLED
    stored = await db_session.scalar(
        select(MercadoPagoPayment.status).where(
            MercadoPagoPayment.payment_id == payment_id
        )
    )
    assert stored == "rejected"
    # Stock commitment is released through the restore workflow, not here
    assert await _stock(db_session, product.id) == 8


@pytest.mark.asyncio
@pytest.mark.integration
async def test_redelivery_completes_order_update_of_unlinked_payment(
    db_session, session_factory, fake_provider
):
    """First attempt recorded the payment, then crashed before the order update."""
    product, order, preference = await _checkout(db_session)
    payment_id = fake_provider.add(
        ProviderPaymentFactory.payload(
            preference_id=preference.preference_id, status="rejected"
        )
    )
    db_session.add(
        PaymentRecordFactory.create(
            payment_id=payment_id,
            preference_id=preference.preference_id,
            status="rejected",
        )
    )
    await db_session.commit()

    result = await _settle(session_factory, fake_provider, payment_id)

    assert result.success is True
    assert result.already_processed is True
    assert result.order_id == order.id
    status, order_payment_id, deducted = await _order(db_session, order.id)
    assert status == OrderStatus.CANCELLED
    assert order_payment_id == payment_id
    assert deducted is False
    linked = await db_session.scalar(
        select(MercadoPagoPayment.order_id).where(
            MercadoPagoPayment.payment_id == payment_id
        )
    )
    assert linked == order.id
    assert await _stock(db_session, product.id) == 10


@pytest.mark.asyncio
@pytest.mark.integration
async def test_redelivery_of_unlinked_approved_payment_commits_stock(
    db_session, session_factory, fake_provider
):
    product, order, preference = await _checkout(db_session)
    payment_id = fake_provider.add(
        ProviderPaymentFactory.payload(preference_id=preference.preference_id)
    )
    db_session.add(
        PaymentRecordFactory.create(
            payment_id=payment_id, preference_id=preference.preference_id
        )
    )
    await db_session.commit()

    await _settle(session_factory, fake_provider, payment_id)

    _, order_payment_id, deducted = await _order(db_session, order.id)
    assert order_payment_id == payment_id
    assert deducted is True
    assert await _stock(db_session, product.id) == 8
    log = await db_session.scalar(select(StockLog).where(StockLog.order_id == order.id))
    assert log.payment_id == payment_id


@pytest.mark.asyncio
@pytest.mark.integration
async def test_new_payment_supersedes_previous_stock_commitment(
    db_session, session_factory, fake_provider
):
    product, order, preference = await _checkout(db_session, stock=10, quantity=2)
    first_id = fake_provider.add(
        ProviderPaymentFactory.payload(preference_id=preference.preference_id)
    )
    second_id = fake_provider.add(
        ProviderPaymentFactory.payload(preference_id=preference.preference_id)
    )

    await _settle(session_factory, fake_provider, first_id)
    assert await _stock(db_session, product.id) == 8

    result = await _settle(session_factory, fake_provider, second_id)

    assert result.success is True
    assert result.order_id == order.id
    # One net decrement, owned by the second payment
    assert await _stock(db_session, product.id) == 8
    _, order_payment_id, deducted = await _order(db_session, order.id)
    assert order_payment_id == second_id
    assert deducted is True
    cycle = await db_session.scalar(
        select(Order.stock_cycle).where(Order.id == order.id)
    )
    assert cycle == 1

    entries = (
        await db_session.execute(
            select(StockLog.movement_type, StockLog.payment_id, StockLog.stock_cycle)
            .where(StockLog.order_id == order.id)
            .order_by(StockLog.created_at)
        )
    ).all()
    assert [(e.movement_type, e.stock_cycle) for e in entries] == [
        (StockMovementType.SALE, 0),
        (StockMovementType.RESTOCK, 0),
        (StockMovementType.SALE, 1),
    ]
    assert entries[0].payment_id == first_id
    assert entries[2].payment_id == second_id


@pytest.mark.asyncio
@pytest.mark.integration
async def test_redelivered_first_payment_does_not_reopen_superseded_order(
    db_session, session_factory, fake_provider
):
    product, order, preference = await _checkout(db_session)
    first_id = fake_provider.add(
        ProviderPaymentFactory.payload(preference_id=preference.preference_id)
    )
    second_id = fake_provider.add(
        ProviderPaymentFactory.payload(preference_id=preference.preference_id)
    )
    await _settle(session_factory, fake_provider, first_id)
    await _settle(session_factory, fake_provider, second_id)

    result = await _settle(session_factory, fake_provider, first_id)

    assert result.already_processed is True
    assert await _stock(db_session, product.id) == 8
    assert (await _order(db_session, order.id)).payment_id == second_id


# ---------------------------------------------------------------------------
# Non-settling outcomes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_unknown_status_records_payment_but_leaves_order(
    db_session, session_factory, fake_provider
):
    product, order, preference = await _checkout(
        db_session, status=OrderStatus.PROCESSING
    )
    payment_id = fake_provider.add(
        ProviderPaymentFactory.payload(
            preference_id=preference.preference_id, status="in_mediation"
        )
    )

    result = await _settle(session_factory, fake_provider, payment_id)

    assert result.success is True
    assert await _payment_count(db_session, payment_id) == 1
    status, order_payment_id, deducted = await _order(db_session, order.id)
    assert status == OrderStatus.PROCESSING
    assert order_payment_id is None
    assert deducted is False
    assert await _stock(db_session, product.id) == 10


@pytest.mark.asyncio
@pytest.mark.integration
async def test_rejected_payment_cancels_without_touching_stock(
    db_session, session_factory, fake_provider
):
    product, order, preference = await _checkout(db_session)
    payment_id = fake_provider.add(
        ProviderPaymentFactory.payload(
            preference_id=preference.preference_id, status="rejected"
        )
    )

    result = await _settle(session_factory, fake_provider, payment_id)

    assert result.success is True
    assert (await _order(db_session, order.id)).status == OrderStatus.CANCELLED
    assert await _stock(db_session, product.id) == 10


@pytest.mark.asyncio
@pytest.mark.integration
async def test_payment_without_order_is_acknowledged(
    db_session, session_factory, fake_provider
):
    payment_id = fake_provider.add(
        ProviderPaymentFactory.payload(external_reference="unknown-ref")
    )

    result = await _settle(session_factory, fake_provider, payment_id)

    assert result.success is True
    assert result.order_id is None
    assert await _payment_count(db_session, payment_id) == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_provider_timeout_asks_for_redelivery(
    db_session, session_factory, fake_provider
):
    fake_provider.error = MercadoPagoError("Mercado Pago request timed out", transient=True)
    gate = IdempotencyGate(ttl_seconds=60)

    result = await _settle(session_factory, fake_provider, "31337", gate=gate)

    assert result.success is False
    assert "timed out" in result.error
    assert await _payment_count(db_session, "31337") == 0
    # A redelivery is not blocked by the failed attempt
    assert gate.begin("31337") is True


@pytest.mark.asyncio
@pytest.mark.integration
async def test_stock_failure_does_not_fail_acknowledgement(
    db_session, session_factory, fake_provider, monkeypatch
):
    from services.payments_service.services import settlement

    _, order, preference = await _checkout(db_session)
    payment_id = fake_provider.add(
        ProviderPaymentFactory.payload(preference_id=preference.preference_id)
    )

    async def engine_down(*args, **kwargs):
        raise RuntimeError("inventory unavailable")

    monkeypatch.setattr(settlement, "deduct_stock_for_order", engine_down)

    result = await _settle(session_factory, fake_provider, payment_id)

    assert result.success is True
    assert (await _order(db_session, order.id)).stock_deducted is False


@pytest.mark.asyncio
@pytest.mark.integration
async def test_fallback_audit_context_is_recorded(
    db_session, session_factory, fake_provider
):
    payment_id = fake_provider.add(ProviderPaymentFactory.payload())

    await _settle(
        session_factory,
        fake_provider,
        payment_id,
        requires_manual_verification=True,
        audit_context=HmacAuditContext(
            validation_result=HmacValidationResult.FALLBACK_USED,
            failure_reason="Signature mismatch",
            fallback_used=True,
            source_request_id="mp-req-1",
        ),
    )

    record = await db_session.scalar(
        select(MercadoPagoPayment).where(MercadoPagoPayment.payment_id == payment_id)
    )
    assert record.requires_manual_verification is True
    assert record.hmac_validation_result == HmacValidationResult.FALLBACK_USED
    assert record.hmac_fallback_used is True
    assert record.hmac_failure_reason == "Signature mismatch"
    assert record.webhook_request_id == "mp-req-1"
    assert record.verification_timestamp is not None
