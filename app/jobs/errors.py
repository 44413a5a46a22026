"""Job queue exceptions."""


class JobQueueError(Exception):
    """Base class for queue-level failures."""

    def __init__(self, message: str, queue: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.queue = queue
        self.recoverable = recoverable


class UnknownJobType(JobQueueError):
    """No queue is registered for the requested job type."""


class InvalidJobPayload(JobQueueError):
    """Payload is missing the subject user id or fails the job type's schema."""

    def __init__(self, message: str, queue: str | None = None, errors: list | None = None):
        super().__init__(message, queue=queue)
        self.errors = errors or []


class QueueCapacityExceeded(JobQueueError):
    """The queue already holds its maximum number of pending jobs."""

    def __init__(self, message: str, queue: str | None = None, limit: int | None = None):
        super().__init__(message, queue=queue)
        self.limit = limit


class StalledJob(JobQueueError):
    """A job sat in processing past the liveness timeout. Triggers a requeue, never user-facing."""

    def __init__(self, job_id: str, queue: str | None = None, timeout_seconds: float | None = None):
        super().__init__(
            f"Job {job_id} stalled in processing for more than {timeout_seconds}s",
            queue=queue,
            recoverable=True,
        )
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds
