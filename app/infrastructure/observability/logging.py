"""
Structured logging setup for the calendar sync backend.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_service_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _add_service_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag every entry with the emitting process role (api or worker)."""
    event_dict.setdefault("service", _service_name)
    return event_dict


_service_name = "api"


def set_service_name(name: str) -> None:
    """Set the process role reported on every log line."""
    global _service_name
    _service_name = name


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_job_event(
    event: str,
    queue: str,
    job_id: str,
    user_id: str | None = None,
    attempts: int | None = None,
    **extra: Any,
) -> None:
    """Log a job lifecycle transition with consistent fields."""
    logger = get_logger("jobs")

    log_data: dict[str, Any] = {
        "queue": queue,
        "job_id": job_id,
        "job_event": event,
    }
    if user_id:
        log_data["user_id"] = user_id
    if attempts is not None:
        log_data["attempts"] = attempts
    log_data.update(extra)

    if event in ("failed", "stalled"):
        logger.warning(f"Job {event}", **log_data)
    else:
        logger.info(f"Job {event}", **log_data)


def log_health_check(service: str, healthy: bool, latency_ms: float, error: str = None):
    """Log health check results with consistent fields."""
    logger = get_logger("health")

    log_data = {
        "service_checked": service,
        "healthy": healthy,
        "latency_ms": latency_ms,
    }

    if error:
        log_data["error"] = error

    if healthy:
        logger.info("Health check passed", **log_data)
    else:
        logger.error("Health check failed", **log_data)
