from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "production", "test"] = "local"
    LOG_LEVEL: str = "INFO"
    SERVICE_NAME: str = "settlement"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800
    # Applied as a server-side statement_timeout on PostgreSQL connections
    DB_STATEMENT_TIMEOUT_MS: int = 15000

    # Internal ops API: HS256 tokens carrying role=service_role
    INTERNAL_JWT_SECRET: str = ""

    # Background worker (arq)
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CONN_RETRIES: int = 5
    RECONCILIATION_QUEUE_NAME: str = "settlement:reconciliation"
    RECONCILIATION_JOB_TIMEOUT_SECONDS: int = 300

    # Mercado Pago
    MERCADOPAGO_ACCESS_TOKEN: str = ""
    MERCADOPAGO_WEBHOOK_SECRET: str = ""
    MERCADOPAGO_API_URL: str = "https://api.mercadopago.com"
    MERCADOPAGO_TIMEOUT_SECONDS: float = 5.0
    # Accept notifications whose signature failed, flagged for manual review
    MERCADOPAGO_ALLOW_UNSIGNED_FALLBACK: bool = False

    # Settlement
    IDEMPOTENCY_CACHE_TTL_SECONDS: float = 60.0
    STOCK_SYSTEM_USER_ID: str = "system"
    STOCK_RETRY_ATTEMPTS: int = 3
    STOCK_RETRY_BASE_DELAY_SECONDS: float = 0.2
    STOCK_RETRY_MAX_DELAY_SECONDS: float = 2.0
    RECONCILIATION_GRACE_MINUTES: int = 10

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
