# app/routes/health.py
"""
Liveness and readiness endpoints.

Readiness depends on Redis and the database pool. Queue stats and
configuration are reported for operators but never make the API unready.
"""

import time

from fastapi import APIRouter

from app.config import settings
from app.db.pool import db_health_check
from app.infrastructure.observability.logging import log_health_check
from app.jobs.registry import get_queue_manager
from app.services.infrastructure.encryption_service import validate_encryption_config
from app.services.infrastructure.redis_client import fast_redis

router = APIRouter()


async def _timed_check(service: str, check) -> dict:
    """Run one dependency check and time it. ``check`` returns (ok, details)."""
    started = time.time()
    try:
        ok, details = await check()
    except Exception as e:
        ok, details = False, {"error": f"{type(e).__name__}: {e}"}
    latency_ms = round((time.time() - started) * 1000, 1)
    log_health_check(service, ok, latency_ms, error=details.get("error"))
    return {"ok": ok, "latency_ms": latency_ms, **details}


async def _check_redis():
    return await fast_redis.ping(), {}


async def _check_database():
    health = await db_health_check()
    healthy = bool(health.get("healthy", False))
    details = {}
    if "pool_stats" in health:
        details["pool_stats"] = health["pool_stats"]
    if not healthy:
        details["error"] = health.get("error", "Database unhealthy")
    return healthy, details


@router.get("/healthz")
async def healthz():
    return {"status": "ok", "service": "calendar-sync-backend"}


@router.get("/readyz")
async def readyz():
    checks = {
        "redis": await _timed_check("redis", _check_redis),
        "database": await _timed_check("database", _check_database),
    }
    overall_ok = all(check["ok"] for check in checks.values())

    try:
        checks["queues"] = {"ok": True, "stats": await get_queue_manager().get_queue_stats()}
    except Exception as e:
        checks["queues"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}

    checks["configuration"] = {
        "ok": bool(settings.GOOGLE_CLIENT_ID and settings.GOOGLE_CLIENT_SECRET),
        "encryption_ok": validate_encryption_config(),
        "environment": settings.environment,
    }

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    return await db_health_check()
