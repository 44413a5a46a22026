"""
Connect a provider account: exchange the authorization code for tokens, then
run the first inbound sync.
"""

from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.jobs.base_queue import JobQueue
from app.models.domain.job_domain import ConnectProviderPayload, Job, JobType
from app.services.calendar.sync_service import event_sync_service
from app.services.notification_service import NotificationType, SyncNotification
from app.services.token_service import token_service

logger = get_logger(__name__)


class ConnectProviderQueue(JobQueue):
    job_type = JobType.CONNECT_PROVIDER
    payload_model = ConnectProviderPayload
    max_attempts = 3

    def __init__(
        self, store=None, notifier=None, sync_service=None, credentials=None, **options: Any
    ):
        super().__init__(store=store, notifier=notifier, **options)
        self.sync_service = sync_service or event_sync_service
        self.credentials = credentials or token_service

    async def handle(
        self, job: Job, payload: ConnectProviderPayload, report_progress
    ) -> dict[str, Any]:
        # Authorization codes are single use. A retry after a successful exchange
        # only repeats the sync.
        existing = None
        if job.attempts > 1:
            existing = await self.credentials.get_tokens(payload.user_id)
        if existing is None:
            await self.credentials.connect_with_code(payload.user_id, payload.code)
        else:
            logger.info(
                "Tokens already stored, skipping code exchange",
                user_id=payload.user_id,
                job_id=job.id,
            )

        result = await self.sync_service.sync_user_events(
            payload.user_id,
            calendar_id=payload.calendar_id,
            on_progress=report_progress,
        )
        return {
            **result.to_dict(),
            "message": (
                f"Calendar connected: {result.scanned} events synced "
                f"({result.created} new, {result.updated} updated)"
            ),
        }

    def on_job_started(self, job: Job) -> SyncNotification:
        return SyncNotification(
            type=NotificationType.CALENDAR_CONNECTION_STARTED,
            user_id=job.user_id,
            job_id=job.id,
            message="Connecting your calendar",
        )

    def on_job_completed(self, job: Job, result: dict[str, Any]) -> SyncNotification:
        return SyncNotification(
            type=NotificationType.CALENDAR_CONNECTED,
            user_id=job.user_id,
            job_id=job.id,
            message=result["message"],
            data=result,
        )

    def on_job_failed(self, job: Job, error: Exception, will_retry: bool) -> SyncNotification | None:
        if will_retry:
            return None
        return SyncNotification(
            type=NotificationType.CALENDAR_CONNECTION_FAILED,
            user_id=job.user_id,
            job_id=job.id,
            message=f"Calendar connection failed: {job.error}",
            data={"attempts": job.attempts, "error_type": type(error).__name__},
        )
