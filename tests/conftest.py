import asyncio
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from libs.common.config import get_settings
from services.payments_service.mercadopago_client import MercadoPagoError
from services.payments_service.schemas import ProviderPayment


class FakeMercadoPago:
    """
    In-process stand-in for the Mercado Pago payments API.

    Register payloads with ``add``; ``error`` makes every fetch fail.
    """

    def __init__(self):
        self.payments: dict[str, dict] = {}
        self.error: Optional[MercadoPagoError] = None
        self.calls: list[str] = []

    def add(self, payload: dict) -> str:
        payment_id = str(payload["id"])
        self.payments[payment_id] = payload
        return payment_id

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        self.calls.append(payment_id)
        # Yield so concurrent settlements actually interleave
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if payment_id not in self.payments:
            raise MercadoPagoError(
                "Payment not found", status_code=404, response_data={}
            )
        return ProviderPayment.from_api(self.payments[payment_id])


@pytest.fixture
def fake_provider() -> FakeMercadoPago:
    return FakeMercadoPago()


@pytest.fixture
def service_headers() -> dict:
    """
    Headers carrying a real HS256 service-role token.
    """
    token = jwt.encode(
        {"sub": "ops-bot", "role": "service_role"},
        get_settings().INTERNAL_JWT_SECRET,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


def _session_override(session_factory):
    async def _get_db():
        async with session_factory() as session:
            yield session

    return _get_db


@pytest_asyncio.fixture
async def payments_client(
    session_factory, fake_provider
) -> AsyncGenerator[AsyncClient, None]:
    """
    Yield an AsyncClient for the payments app with DB and provider overridden.
    """
    from libs.db.session import get_async_db
    from services.payments_service.app.main import app
    from services.payments_service.mercadopago_client import get_mercadopago_client

    app.dependency_overrides[get_async_db] = _session_override(session_factory)
    app.dependency_overrides[get_mercadopago_client] = lambda: fake_provider

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def store_client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    from libs.db.session import get_async_db
    from services.store_service.app.main import app

    app.dependency_overrides[get_async_db] = _session_override(session_factory)

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
