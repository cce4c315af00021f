"""Settlement orchestrator for Mercado Pago payment notifications.

received -> deduplicating -> fetching -> resolving -> persisting_payment
-> updating_order -> reconciling_stock -> acknowledged

A duplicate (in-flight marker, or the unique ``payment_id`` rejecting the
insert) is never an error. The duplicate path still makes sure stock is
committed when the status secures funds, so an attempt that crashed after
recording the payment is completed by the next redelivery.

Nothing raises out of ``process_payment_notification``: every failure is
logged and turned into ``SettlementResult(success=False)`` so the webhook can
ask the provider to redeliver.
"""

import uuid
from typing import Optional

from libs.common.datetime_utils import parse_provider_datetime, utc_now
from libs.common.logging import get_logger
from services.payments_service.mercadopago_client import (
    MercadoPagoError,
    PaymentProvider,
    get_mercadopago_client,
)
from services.payments_service.models import (
    HmacValidationResult,
    MercadoPagoPayment,
    PaymentPreference,
)
from services.payments_service.schemas import (
    PaymentNotification,
    ProviderPayment,
    SettlementResult,
)
from services.payments_service.services.idempotency import (
    IdempotencyGate,
    get_idempotency_gate,
    record_payment,
)
from services.payments_service.services.status_resolver import (
    StatusResolution,
    preference_status_for,
    resolve_payment_status,
)
from services.store_service.models import Order
from services.store_service.services.stock_reconciliation import (
    StockReconciliationReport,
    deduct_stock_for_order,
    restore_stock_for_order,
)
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def process_payment_notification(
    db: AsyncSession,
    notification: PaymentNotification,
    *,
    provider: Optional[PaymentProvider] = None,
    gate: Optional[IdempotencyGate] = None,
) -> SettlementResult:
    if gate is None:
        gate = get_idempotency_gate()

    payment_id = notification.payment_id
    context = {"payment_id": payment_id, "request_id": notification.request_id}

    if not gate.begin(payment_id):
        logger.info(
            "Payment %s is already being processed, skipping",
            payment_id,
            extra={"extra_fields": context},
        )
        return SettlementResult(success=True, already_processed=True)

    try:
        if provider is None:
            provider = get_mercadopago_client()
        return await _settle(db, notification, provider, context)
    except MercadoPagoError as exc:
        await _rollback_quietly(db)
        logger.error(
            "Could not fetch payment %s from Mercado Pago: %s",
            payment_id,
            exc.message,
            exc_info=True,
            extra={
                "extra_fields": {
                    **context,
                    "status_code": exc.status_code,
                    "transient": exc.transient,
                }
            },
        )
        return SettlementResult(success=False, error=exc.message)
    except Exception as exc:
        await _rollback_quietly(db)
        logger.exception(
            "Settlement failed for payment %s: %s",
            payment_id,
            exc,
            extra={"extra_fields": context},
        )
        return SettlementResult(success=False, error=str(exc))
    finally:
        gate.release(payment_id)


async def _settle(
    db: AsyncSession,
    notification: PaymentNotification,
    provider: PaymentProvider,
    context: dict,
) -> SettlementResult:
    payment = await provider.get_payment(notification.payment_id)
    resolution = resolve_payment_status(payment.status)
    context["status"] = resolution.provider_status

    record = build_payment_record(notification, payment, resolution)
    if not await record_payment(db, record):
        return await _settle_duplicate(db, payment, resolution, context)

    if not resolution.requires_transition:
        logger.info(
            "Payment %s has unmapped status %r; order left untouched",
            payment.id,
            payment.status,
            extra={"extra_fields": context},
        )
        return SettlementResult(success=True, status=resolution.provider_status)

    order_id = await find_order_id(db, payment)
    if order_id is None:
        logger.warning(
            "No order found for payment %s (preference=%s, external_reference=%s)",
            payment.id,
            payment.preference_id,
            payment.external_reference,
            extra={"extra_fields": context},
        )
        return SettlementResult(success=True, status=resolution.provider_status)

    context["order_id"] = str(order_id)
    await _link_payment(db, payment.id, order_id)
    await apply_order_transition(db, order_id, payment, resolution)

    if resolution.secures_stock:
        await _reconcile_stock(db, order_id, payment.id, context)

    logger.info(
        "Payment %s settled: order %s -> %s",
        payment.id,
        order_id,
        resolution.order_status.value,
        extra={"extra_fields": context},
    )
    return SettlementResult(
        success=True, status=resolution.provider_status, order_id=order_id
    )


async def _settle_duplicate(
    db: AsyncSession,
    payment: ProviderPayment,
    resolution: StatusResolution,
    context: dict,
) -> SettlementResult:
    stored = (
        await db.execute(
            select(MercadoPagoPayment.status, MercadoPagoPayment.order_id).where(
                MercadoPagoPayment.payment_id == payment.id
            )
        )
    ).one_or_none()
    if stored is None:
        # The insert was rejected by something other than the payment_id key
        raise LookupError(
            f"Payment {payment.id} insert was rejected but no record exists"
        )

    order_id = stored.order_id or await find_order_id(db, payment)
    if order_id is not None:
        context["order_id"] = str(order_id)

    changed = False
    if stored.status != resolution.provider_status:
        changed = await _update_payment_status(db, payment, resolution, stored.status)
        if changed:
            logger.info(
                "Payment %s status changed %s -> %s",
                payment.id,
                stored.status,
                resolution.provider_status,
                extra={"extra_fields": context},
            )

    # An unlinked record means the first attempt stopped before the order update
    unlinked = stored.order_id is None
    if order_id is not None and resolution.requires_transition and (changed or unlinked):
        if unlinked:
            logger.info(
                "Completing interrupted settlement of payment %s for order %s",
                payment.id,
                order_id,
                extra={"extra_fields": context},
            )
        await _link_payment(db, payment.id, order_id)
        await apply_order_transition(db, order_id, payment, resolution)

    if order_id is not None and resolution.secures_stock:
        # Resumes a stock commitment an earlier attempt never finished
        await _reconcile_stock(db, order_id, payment.id, context)

    return SettlementResult(
        success=True,
        status=resolution.provider_status,
        already_processed=True,
        order_id=order_id,
    )


def build_payment_record(
    notification: PaymentNotification,
    payment: ProviderPayment,
    resolution: StatusResolution,
) -> MercadoPagoPayment:
    audit = notification.audit_context
    validation_result = audit.validation_result if audit else None
    if validation_result is None:
        validation_result = (
            HmacValidationResult.FALLBACK_USED
            if notification.requires_manual_verification
            else HmacValidationResult.VALID
        )

    return MercadoPagoPayment(
        payment_id=payment.id,
        preference_id=payment.preference_id,
        external_reference=payment.external_reference,
        status=resolution.provider_status,
        status_detail=payment.status_detail,
        amount=payment.transaction_amount,
        currency_id=payment.currency_id,
        payment_method_id=payment.payment_method_id,
        installments=payment.installments,
        date_created=parse_provider_datetime(payment.date_created),
        date_approved=parse_provider_datetime(payment.date_approved),
        date_last_updated=parse_provider_datetime(payment.date_last_updated),
        raw_data=payment.raw or None,
        requires_manual_verification=notification.requires_manual_verification,
        hmac_validation_result=validation_result,
        hmac_failure_reason=audit.failure_reason if audit else None,
        hmac_fallback_used=bool(audit and audit.fallback_used)
        or validation_result == HmacValidationResult.FALLBACK_USED,
        verification_timestamp=utc_now(),
        webhook_request_id=(audit.source_request_id if audit else None)
        or notification.request_id,
    )


async def find_order_id(
    db: AsyncSession, payment: ProviderPayment
) -> Optional[uuid.UUID]:
    """Locate the order a payment belongs to.

    Tries, in order: the order already linked to this payment record, the
    checkout preference by ``preference_id``, the preference by
    ``external_reference``, and any other payment record with the same
    ``external_reference`` that was already linked.
    """
    order_id = await db.scalar(
        select(MercadoPagoPayment.order_id).where(
            MercadoPagoPayment.payment_id == payment.id,
            MercadoPagoPayment.order_id.is_not(None),
        )
    )
    if order_id is not None:
        return order_id

    if payment.preference_id:
        order_id = await db.scalar(
            select(PaymentPreference.order_id).where(
                PaymentPreference.preference_id == payment.preference_id
            )
        )
        if order_id is not None:
            return order_id

    if payment.external_reference:
        order_id = await db.scalar(
            select(PaymentPreference.order_id).where(
                PaymentPreference.external_reference == payment.external_reference
            )
        )
        if order_id is not None:
            return order_id

        order_id = await db.scalar(
            select(MercadoPagoPayment.order_id)
            .where(
                MercadoPagoPayment.external_reference == payment.external_reference,
                MercadoPagoPayment.payment_id != payment.id,
                MercadoPagoPayment.order_id.is_not(None),
            )
            .order_by(MercadoPagoPayment.created_at.desc())
            .limit(1)
        )

    return order_id


async def apply_order_transition(
    db: AsyncSession,
    order_id: uuid.UUID,
    payment: ProviderPayment,
    resolution: StatusResolution,
) -> bool:
    """Write the resolved status onto the order. Last writer wins.

    When a different payment already owns the order and the new one secures
    stock, the earlier commitment is released first so that the new payment's
    stock run commits the order on a fresh stock cycle.
    """
    superseded = await _take_over_order(db, order_id, payment.id)

    result = await db.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(
            status=resolution.order_status,
            payment_id=payment.id,
            updated_at=utc_now(),
        )
    )
    await db.commit()
    if result.rowcount == 0:
        logger.warning(
            "Order %s disappeared before payment %s could update it",
            order_id,
            payment.id,
        )
        return False

    if payment.preference_id:
        await db.execute(
            update(PaymentPreference)
            .where(PaymentPreference.preference_id == payment.preference_id)
            .values(
                status=preference_status_for(resolution.provider_status),
                updated_at=utc_now(),
            )
        )
        await db.commit()

    if superseded is not None and resolution.secures_stock:
        await _release_superseded_stock(db, order_id, superseded, payment.id)
    return True


async def _take_over_order(
    db: AsyncSession, order_id: uuid.UUID, payment_id: str
) -> Optional[str]:
    """Point the order at ``payment_id``; returns the payment it replaced.

    The swap is guarded on the payment id that was read, so among concurrent
    deliveries only one sees the takeover.
    """
    previous = await db.scalar(select(Order.payment_id).where(Order.id == order_id))
    if previous is None or previous == payment_id:
        return None

    result = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.payment_id == previous)
        .values(payment_id=payment_id, updated_at=utc_now())
    )
    await db.commit()
    return previous if result.rowcount == 1 else None


async def _release_superseded_stock(
    db: AsyncSession,
    order_id: uuid.UUID,
    previous_payment_id: str,
    payment_id: str,
) -> None:
    try:
        report = await restore_stock_for_order(
            db,
            order_id,
            reason=f"superseded by payment {payment_id}",
        )
    except Exception:
        await _rollback_quietly(db)
        logger.exception(
            "Could not release stock of payment %s superseded by %s on order %s",
            previous_payment_id,
            payment_id,
            order_id,
        )
        return

    if report.released:
        logger.info(
            "Payment %s superseded %s on order %s; stock commitment released",
            payment_id,
            previous_payment_id,
            order_id,
        )


async def _link_payment(db: AsyncSession, payment_id: str, order_id: uuid.UUID) -> None:
    await db.execute(
        update(MercadoPagoPayment)
        .where(
            MercadoPagoPayment.payment_id == payment_id,
            MercadoPagoPayment.order_id.is_(None),
        )
        .values(order_id=order_id, updated_at=utc_now())
    )
    await db.commit()


async def _update_payment_status(
    db: AsyncSession,
    payment: ProviderPayment,
    resolution: StatusResolution,
    previous_status: str,
) -> bool:
    # Guarded on the status we read so only one redelivery applies the change
    result = await db.execute(
        update(MercadoPagoPayment)
        .where(
            MercadoPagoPayment.payment_id == payment.id,
            MercadoPagoPayment.status == previous_status,
        )
        .values(
            status=resolution.provider_status,
            status_detail=payment.status_detail,
            date_approved=parse_provider_datetime(payment.date_approved),
            date_last_updated=parse_provider_datetime(payment.date_last_updated),
            raw_data=payment.raw or None,
            updated_at=utc_now(),
        )
    )
    await db.commit()
    return result.rowcount == 1


async def _reconcile_stock(
    db: AsyncSession,
    order_id: uuid.UUID,
    payment_id: str,
    context: dict,
) -> Optional[StockReconciliationReport]:
    """Commit stock for the order; failures never block the acknowledgement."""
    try:
        return await deduct_stock_for_order(db, order_id, payment_id)
    except Exception:
        await _rollback_quietly(db)
        logger.exception(
            "Stock reconciliation failed for order %s (payment %s); "
            "payment acknowledged, manual reconciliation required",
            order_id,
            payment_id,
            extra={"extra_fields": context},
        )
        return None


async def _rollback_quietly(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except Exception:
        logger.warning("Session rollback failed", exc_info=True)
