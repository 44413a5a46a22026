# app/services/notification_service.py
"""
Live notifications for job lifecycle events.
Published to a per-user Redis channel; delivery is best-effort.
"""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from app.infrastructure.observability.logging import get_logger
from app.services.infrastructure.redis_client import fast_redis

logger = get_logger(__name__)


class NotificationType(str, Enum):
    SYNC_STARTED = "sync_started"
    SYNC_PROGRESS = "sync_progress"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    CALENDAR_CONNECTION_STARTED = "calendar_connection_started"
    CALENDAR_CONNECTED = "calendar_connected"
    CALENDAR_CONNECTION_FAILED = "calendar_connection_failed"


class SyncNotification(BaseModel):
    type: NotificationType
    user_id: str
    job_id: str | None = None
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


def user_channel(user_id: str) -> str:
    return f"notifications:user:{user_id}"


class NotificationService:
    def __init__(self, redis_client=None):
        self.redis = redis_client or fast_redis

    async def push(self, user_id: str, notification: SyncNotification) -> bool:
        """Publish a notification. Never raises; returns False if it could not be sent."""
        try:
            message = json.dumps(notification.model_dump(mode="json"))
            receivers = await self.redis.publish(user_channel(user_id), message)
            logger.debug(
                "Notification published",
                user_id=user_id,
                type=notification.type.value,
                job_id=notification.job_id,
                receivers=receivers,
            )
            return True
        except Exception as e:
            logger.warning(
                "Notification delivery failed",
                user_id=user_id,
                type=notification.type.value,
                error=str(e),
            )
            return False


# Global instance
notification_service = NotificationService()
