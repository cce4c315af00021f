"""
Mercado Pago API client.

Provides async methods for:
- Fetching the authoritative state of a payment by id
"""

import logging
from functools import lru_cache
from typing import Optional, Protocol

import httpx
from libs.common.config import get_settings
from services.payments_service.schemas import ProviderPayment

logger = logging.getLogger(__name__)


class MercadoPagoError(Exception):
    """Base exception for Mercado Pago API errors.

    ``transient`` marks failures the provider should be asked to redeliver
    for (timeouts, connection errors, 5xx, rate limits).
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_data: Optional[dict] = None,
        transient: bool = False,
    ):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}
        self.transient = transient
        super().__init__(message)


class PaymentProvider(Protocol):
    """What the settlement orchestrator needs from a payment provider."""

    async def get_payment(self, payment_id: str) -> ProviderPayment: ...


class MercadoPagoClient:
    """Async client for the Mercado Pago Payments API."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.access_token = access_token or settings.MERCADOPAGO_ACCESS_TOKEN
        if not self.access_token:
            raise ValueError("MERCADOPAGO_ACCESS_TOKEN is required")
        self.base_url = (base_url or settings.MERCADOPAGO_API_URL).rstrip("/")
        self.timeout = timeout or settings.MERCADOPAGO_TIMEOUT_SECONDS
        self._transport = transport
        self._headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
    ) -> dict:
        """Make an async request to the Mercado Pago API."""
        url = f"{self.base_url}{endpoint}"

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self._headers,
                    params=params,
                )
        except httpx.TimeoutException as exc:
            # The request may still have been served; never read this as "no payment"
            raise MercadoPagoError(
                f"Mercado Pago request timed out: {method} {endpoint}",
                transient=True,
            ) from exc
        except httpx.RequestError as exc:
            raise MercadoPagoError(
                f"Mercado Pago request failed: {exc}", transient=True
            ) from exc

        try:
            data = response.json()
        except ValueError:
            data = {"message": response.text}

        if not response.is_success:
            logger.error(f"Mercado Pago API error: {response.status_code} - {data}")
            raise MercadoPagoError(
                message=data.get("message", "Unknown Mercado Pago error"),
                status_code=response.status_code,
                response_data=data,
                transient=response.status_code >= 500 or response.status_code == 429,
            )

        return data

    # =========================================================================
    # Payment Methods
    # =========================================================================

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        """
        Fetch a payment by id.

        Args:
            payment_id: Provider payment id from the notification

        Returns:
            ProviderPayment with status, amounts and correlation keys
        """
        data = await self._request("GET", f"/v1/payments/{payment_id}")
        payment = ProviderPayment.from_api(data)
        logger.info(
            "Fetched Mercado Pago payment %s status=%s external_reference=%s",
            payment.id,
            payment.status,
            payment.external_reference,
        )
        return payment


@lru_cache
def get_mercadopago_client() -> MercadoPagoClient:
    """Shared client instance; also used as a FastAPI dependency."""
    return MercadoPagoClient()
