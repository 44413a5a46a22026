"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate runner.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, set_service_name, setup_logging
from app.jobs.registry import get_queue_manager
from app.models.domain.job_domain import JobType
from app.services.infrastructure.redis_client import fast_redis

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


async def run_queue_worker() -> None:
    """Process every registered queue until cancelled."""
    await db_pool.initialize()
    await fast_redis.initialize()
    manager = get_queue_manager()
    try:
        await manager.run()
    finally:
        await manager.close()
        await fast_redis.close()
        await db_pool.close()


async def start_token_cleanup_scheduler() -> None:
    """Enqueue a revoked-token cleanup job on a fixed interval."""
    interval = settings.TOKEN_CLEANUP_INTERVAL_MINUTES * 60
    logger.info(
        "Starting token cleanup scheduler",
        interval_minutes=settings.TOKEN_CLEANUP_INTERVAL_MINUTES,
    )
    await fast_redis.initialize()
    manager = get_queue_manager()
    try:
        while True:
            try:
                job_id = await manager.add_job(JobType.CLEANUP_EXPIRED_TOKENS, {})
                logger.info("Token cleanup enqueued", job_id=job_id)
            except Exception as e:
                logger.error(
                    "Error enqueuing token cleanup", error=str(e), error_type=type(e).__name__
                )
            await asyncio.sleep(interval)
    finally:
        await fast_redis.close()


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "queue_worker": run_queue_worker,
    "token_cleanup": start_token_cleanup_scheduler,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "queue_worker").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    set_service_name("worker")
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
