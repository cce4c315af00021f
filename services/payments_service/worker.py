"""ARQ worker for stock reconciliation."""

from arq import cron
from libs.common.arq_config import get_redis_settings, reconciliation_queue_options
from libs.common.logging import configure_logging, get_logger
from libs.db.session import session_scope

logger = get_logger(__name__)


async def startup(ctx: dict):
    configure_logging()


async def task_reconcile_stock_commitments(ctx: dict):
    from services.payments_service.tasks import reconcile_stock_commitments

    logger.info("Running: reconcile_stock_commitments")
    async with session_scope() as db:
        return await reconcile_stock_commitments(db)


_queue = reconciliation_queue_options()


class WorkerSettings:
    redis_settings = get_redis_settings()
    queue_name = _queue["queue_name"]
    job_timeout = _queue["job_timeout"]
    max_jobs = _queue["max_jobs"]

    on_startup = startup

    functions = [
        task_reconcile_stock_commitments,
    ]

    cron_jobs = [
        cron(
            task_reconcile_stock_commitments,
            minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55},
            run_at_startup=True,
        ),
    ]
