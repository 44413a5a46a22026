"""
API entrypoint: events and jobs routers over a shared Postgres pool and Redis
client. Jobs are only enqueued here; the worker process runs them.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.routes import events, health, jobs
from app.services.infrastructure.redis_client import fast_redis

setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)

# Opened in this order, closed in reverse
RESOURCES = (("database_pool", db_pool), ("redis", fast_redis))


async def _close_resources(opened: list[tuple[str, object]]) -> list[str]:
    errors = []
    for name, resource in reversed(opened):
        try:
            await resource.close()
        except Exception as e:
            logger.error("Error closing resource", resource=name, error=str(e))
            errors.append(f"{name}: {e}")
    return errors


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    opened = []
    try:
        for name, resource in RESOURCES:
            await resource.initialize()
            opened.append((name, resource))
    except Exception as e:
        logger.error(
            "Failed to initialize services",
            error=str(e),
            completed=[name for name, _ in opened],
        )
        await _close_resources(opened)
        raise
    logger.info("All services initialized", services=[name for name, _ in opened])

    yield

    logger.info("Application shutting down")
    errors = await _close_resources(opened)
    if errors:
        logger.warning("Some services had shutdown errors", errors=errors)
    else:
        logger.info("All services closed")


app = FastAPI(
    title="Calendar Sync Backend",
    description="Calendar events API with background sync against Google Calendar",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(events.router)
app.include_router(jobs.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.time()
    response = await call_next(request)
    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.time() - started) * 1000, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
