"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable, opens the database pool and Redis client, and delegates to the
appropriate scheduler.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from jobflow.config import settings
from jobflow.db.pool import db_pool
from jobflow.infrastructure.observability.logging import get_logger, setup_logging
from jobflow.jobs.maintenance_sweep_job import (
    run_maintenance_sweep_once,
    start_maintenance_sweep_scheduler,
)
from jobflow.jobs.notification_dispatch_job import start_notification_dispatcher
from jobflow.services.infrastructure.redis_client import fast_redis

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "maintenance_sweep": start_maintenance_sweep_scheduler,
    "maintenance_sweep_once": run_maintenance_sweep_once,
    "notification_dispatch": start_notification_dispatcher,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "maintenance_sweep").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await db_pool.initialize()
    await fast_redis.initialize()
    try:
        await JOB_REGISTRY[name]()
    finally:
        await fast_redis.close()
        await db_pool.close()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
