"""
Worker process entrypoint.

    python -m retention_os.jobs.worker billing_confirmation
    WORKER_JOB=webhook_consumer python -m retention_os.jobs.worker

The job runs with its own Postgres pool and Redis client. Both are closed
when the job returns or fails.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

from retention_os.config import settings
from retention_os.db.pool import db_pool
from retention_os.infrastructure.observability.logging import get_logger, setup_logging
from retention_os.jobs.billing_confirmation_job import start_billing_confirmation_scheduler
from retention_os.jobs.performance_reconcile_job import (
    run_performance_reconcile,
    start_performance_reconcile_scheduler,
)
from retention_os.jobs.webhook_consumer import start_webhook_consumer
from retention_os.services.billing_client import close_billing_client
from retention_os.services.redis_client import fast_redis

logger = get_logger(__name__)

DEFAULT_JOB = "webhook_consumer"

JobCoroutine = Callable[[], Awaitable[None]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "webhook_consumer": start_webhook_consumer,
    "billing_confirmation": start_billing_confirmation_scheduler,
    "performance_reconcile": start_performance_reconcile_scheduler,
    "performance_reconcile_once": run_performance_reconcile,
}


def _resolve_job_name() -> str:
    raw = sys.argv[1] if len(sys.argv) > 1 else os.getenv("WORKER_JOB", DEFAULT_JOB)
    return raw.strip().lower()


@asynccontextmanager
async def _worker_resources():
    await db_pool.initialize()
    await fast_redis.initialize()
    try:
        yield
    finally:
        # Reverse of opening; the billing client may still hold pooled sockets
        await close_billing_client()
        await fast_redis.close()
        await db_pool.close()


async def run_worker(job_name: str | None = None) -> None:
    name = (job_name or _resolve_job_name()).strip().lower()
    job = JOB_REGISTRY.get(name)
    if job is None:
        raise ValueError(f"Unknown worker job '{name}'. Available jobs: {', '.join(sorted(JOB_REGISTRY))}")

    logger.info("Worker starting", job=name, environment=settings.environment)
    async with _worker_resources():
        await job()
    logger.info("Worker finished", job=name)


def main() -> None:
    setup_logging(log_level=settings.LOG_LEVEL)
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
