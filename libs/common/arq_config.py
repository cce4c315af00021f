"""Redis connection and queue settings for the reconciliation worker."""

from typing import Optional
from urllib.parse import urlparse

from arq.connections import RedisSettings
from libs.common.config import Settings, get_settings


def get_redis_settings(settings: Optional[Settings] = None) -> RedisSettings:
    """Build arq ``RedisSettings`` from ``REDIS_URL``.

    ``rediss://`` URLs enable TLS; the path selects the database number.
    """
    settings = settings or get_settings()
    parsed = urlparse(settings.REDIS_URL)
    database = parsed.path.lstrip("/")

    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        database=int(database) if database.isdigit() else 0,
        username=parsed.username or None,
        password=parsed.password,
        ssl=parsed.scheme == "rediss",
        conn_retries=settings.REDIS_CONN_RETRIES,
    )


def reconciliation_queue_options(settings: Optional[Settings] = None) -> dict:
    """Queue name and job limits shared by the worker and anything enqueuing."""
    settings = settings or get_settings()
    return {
        "queue_name": settings.RECONCILIATION_QUEUE_NAME,
        "job_timeout": settings.RECONCILIATION_JOB_TIMEOUT_SECONDS,
        "max_jobs": 1,
    }
