# app/models/domain/job_domain.py
"""
Job Domain Models
Job records persisted by the job store and the payload shapes of each job type.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class JobType(str, Enum):
    """Closed set of job types. Adding one means registering a new queue."""

    SYNC_EVENTS = "sync-events"
    CONNECT_PROVIDER = "connect-provider"
    CLEANUP_EXPIRED_TOKENS = "cleanup-expired-tokens"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Allowed status moves. FAILED -> PROCESSING is a retry of a non-terminal failure,
# PROCESSING -> PENDING is a stalled job being handed back to the queue.
ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PENDING},
    JobStatus.FAILED: {JobStatus.PROCESSING},
    JobStatus.COMPLETED: set(),
}


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_job_id(queue_name: str) -> str:
    return f"{queue_name}_{uuid.uuid4().hex}"


class JobPayload(BaseModel):
    """Minimum payload shape: every job names the user it acts for."""

    user_id: str = Field(..., min_length=1)

    model_config = {"extra": "allow"}


class SyncEventsPayload(JobPayload):
    calendar_id: str = "primary"


class ConnectProviderPayload(JobPayload):
    code: str = Field(..., min_length=1)
    calendar_id: str = "primary"


class CleanupTokensPayload(JobPayload):
    user_id: str = "system"


class Job(BaseModel):
    """A persisted job record."""

    id: str
    type: JobType
    payload: dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    created_at: datetime = Field(default_factory=utc_now)
    available_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    next_retry_at: datetime | None = None
    error: str | None = None
    result: dict[str, Any] | None = None

    @property
    def user_id(self) -> str | None:
        return self.payload.get("user_id")

    @property
    def is_terminal(self) -> bool:
        """Completed, or failed with no retry scheduled."""
        if self.status == JobStatus.COMPLETED:
            return True
        return self.status == JobStatus.FAILED and self.next_retry_at is None

    def transition(self, new_status: JobStatus) -> None:
        """Move to a new status, rejecting moves outside the lifecycle."""
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(f"Illegal job transition {self.status.value} -> {new_status.value}")
        self.status = new_status

    def to_status_dict(self) -> dict[str, Any]:
        """Snapshot exposed to API clients polling a job."""
        return {
            "id": self.id,
            "type": self.type.value,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "error": self.error,
            "result": self.result,
        }


class QueueCounts(BaseModel):
    """Per-queue job counts reported by the queue manager."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0  # pending jobs waiting out a retry backoff
    paused: bool = False
