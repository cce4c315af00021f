"""Mercado Pago webhook signature verification.

Mercado Pago signs notifications with the ``x-signature`` header::

    x-signature: ts=1704908010,v1=618c85345248dd820d5fd456117c2ab2ef8eda45a0282ff693eac24131a5e839

``v1`` is HMAC-SHA256 (hex) of the manifest
``id:{data.id};request-id:{x-request-id};ts:{ts};`` keyed with the webhook
secret from the Mercado Pago dashboard.
"""

import hashlib
import hmac
import re
from dataclasses import dataclass
from typing import Any, Optional

from libs.common.logging import get_logger

logger = get_logger(__name__)

_RESOURCE_ID = re.compile(r"(\d+)$")


class WebhookSignatureError(ValueError):
    """The notification signature is missing, malformed or does not match."""


@dataclass(frozen=True)
class SignatureCheck:
    is_valid: bool
    data_id: Optional[str] = None
    error: Optional[str] = None


def normalize_secret(secret: str) -> str:
    # Secrets pasted into env files often keep their quotes
    return secret.strip().strip("\"'").strip()


def parse_signature_header(header: str) -> tuple[str, str]:
    """Return ``(ts, v1)`` from an ``x-signature`` header."""
    parts = {}
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key:
            parts[key.strip()] = value.strip()
    ts, v1 = parts.get("ts"), parts.get("v1")
    if not ts or not v1:
        raise WebhookSignatureError("Malformed x-signature header: ts or v1 missing")
    return ts, v1


def build_manifest(data_id: str, request_id: str, ts: str) -> str:
    return f"id:{data_id};request-id:{request_id};ts:{ts};"


def sign_manifest(secret: str, manifest: str) -> str:
    return hmac.new(
        normalize_secret(secret).encode("utf-8"),
        manifest.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def extract_payment_id(
    payload: Optional[dict[str, Any]], data_id_from_url: Optional[str] = None
) -> Optional[str]:
    """Payment id of a notification: query string first, then the body."""
    if data_id_from_url:
        return str(data_id_from_url)
    if not isinstance(payload, dict):
        return None

    data = payload.get("data")
    if isinstance(data, dict) and data.get("id") is not None:
        return str(data["id"])
    if payload.get("id") is not None and payload.get("type") is None:
        return str(payload["id"])

    resource = payload.get("resource")
    if resource:
        match = _RESOURCE_ID.search(str(resource))
        if match:
            return match.group(1)
    return None


def verify_webhook_signature(
    *,
    secret: str,
    signature_header: Optional[str],
    request_id: Optional[str],
    data_id: Optional[str],
) -> SignatureCheck:
    """Check a notification signature; never raises."""
    try:
        if not normalize_secret(secret or ""):
            raise WebhookSignatureError("Webhook secret is not configured")
        if not signature_header:
            raise WebhookSignatureError("x-signature header is required")
        if not request_id:
            raise WebhookSignatureError("x-request-id header is required")
        if not data_id:
            raise WebhookSignatureError("data.id not found in query string or body")

        ts, received = parse_signature_header(signature_header)
        expected = sign_manifest(secret, build_manifest(data_id, request_id, ts))
        if not hmac.compare_digest(expected, received.lower()):
            raise WebhookSignatureError("Signature mismatch")
    except WebhookSignatureError as exc:
        logger.warning(
            "Mercado Pago webhook signature rejected: %s",
            exc,
            extra={"extra_fields": {"data_id": data_id, "x_request_id": request_id}},
        )
        return SignatureCheck(is_valid=False, data_id=data_id, error=str(exc))

    return SignatureCheck(is_valid=True, data_id=data_id)
