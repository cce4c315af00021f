"""Mercado Pago webhook handler."""

import json

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from libs.common.config import get_settings
from libs.common.logging import get_logger, get_request_id
from libs.db.session import get_async_db
from services.payments_service.mercadopago_client import (
    PaymentProvider,
    get_mercadopago_client,
)
from services.payments_service.models import HmacValidationResult
from services.payments_service.schemas import HmacAuditContext, PaymentNotification
from services.payments_service.services.settlement import (
    process_payment_notification,
)
from services.payments_service.webhook_security import (
    extract_payment_id,
    verify_webhook_signature,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/payments", tags=["payments"])
logger = get_logger(__name__)

PAYMENT_TOPICS = {"payment", "payment.created", "payment.updated"}


def _notification_topic(request: Request, payload: dict) -> str:
    return str(
        payload.get("type")
        or payload.get("topic")
        or payload.get("action")
        or request.query_params.get("type")
        or request.query_params.get("topic")
        or ""
    ).lower()


@router.post("/webhooks/mercadopago")
async def mercadopago_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    provider: PaymentProvider = Depends(get_mercadopago_client),
):
    """
    Mercado Pago webhook endpoint (no auth; verified by x-signature).

    2xx acknowledges the notification; 5xx makes Mercado Pago redeliver it.
    """
    settings = get_settings()
    raw = await request.body()
    try:
        payload = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    topic = _notification_topic(request, payload)
    if topic not in PAYMENT_TOPICS:
        # merchant_order and friends carry nothing we settle on
        logger.info(
            "Ignoring Mercado Pago notification topic %r",
            topic,
            extra={"extra_fields": {"topic": topic}},
        )
        return {"received": True, "ignored": True}

    data_id = extract_payment_id(
        payload,
        request.query_params.get("data.id") or request.query_params.get("id"),
    )
    x_request_id = request.headers.get("x-request-id")
    check = verify_webhook_signature(
        secret=settings.MERCADOPAGO_WEBHOOK_SECRET,
        signature_header=request.headers.get("x-signature"),
        request_id=x_request_id,
        data_id=data_id,
    )

    audit_context = HmacAuditContext(
        validation_result=HmacValidationResult.VALID,
        source_request_id=x_request_id,
    )
    if not check.is_valid:
        if not settings.MERCADOPAGO_ALLOW_UNSIGNED_FALLBACK:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
            )
        logger.warning(
            "Accepting Mercado Pago notification without a valid signature; "
            "payment flagged for manual verification",
            extra={"extra_fields": {"data_id": data_id, "error": check.error}},
        )
        audit_context = HmacAuditContext(
            validation_result=HmacValidationResult.FALLBACK_USED,
            failure_reason=check.error,
            fallback_used=True,
            source_request_id=x_request_id,
        )

    if not data_id:
        logger.warning("Mercado Pago payment notification without data.id")
        return {"received": True, "ignored": True}

    notification = PaymentNotification(
        payment_id=data_id,
        request_id=get_request_id() or x_request_id or "",
        requires_manual_verification=audit_context.fallback_used,
        audit_context=audit_context,
    )
    result = await process_payment_notification(db, notification, provider=provider)
    if not result.success:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=result.to_response(),
        )
    return result.to_response()
