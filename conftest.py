import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Load .env.test for tests if present, then fall back to an isolated SQLite setup
from dotenv import load_dotenv

env_test_path = os.path.join(os.path.dirname(__file__), ".env.test")
if os.path.exists(env_test_path):
    load_dotenv(env_test_path, override=True)

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./settlement-test.db")
os.environ.setdefault("MERCADOPAGO_ACCESS_TOKEN", "TEST-access-token")
os.environ.setdefault("MERCADOPAGO_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("INTERNAL_JWT_SECRET", "test-internal-secret")
os.environ.setdefault("STOCK_RETRY_BASE_DELAY_SECONDS", "0.01")

from libs.common.config import get_settings
from libs.db.base import Base

# Import all models so metadata includes every table
from services.payments_service import models as _payments_models  # noqa: F401
from services.store_service import models as _store_models  # noqa: F401

# Clear cached settings to reload with new env vars
get_settings.cache_clear()
settings = get_settings()


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """
    Create a fresh SQLite database file per test.

    File-backed so every session gets its own connection.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}",
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a database session for arranging and asserting test data.
    """
    async with session_factory() as session:
        yield session
