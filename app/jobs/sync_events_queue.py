"""Background inbound sync of a user's provider calendar."""

from typing import Any

from app.jobs.base_queue import JobQueue
from app.models.domain.job_domain import Job, JobType, SyncEventsPayload
from app.services.calendar.sync_service import event_sync_service
from app.services.notification_service import NotificationType, SyncNotification


class SyncEventsQueue(JobQueue):
    job_type = JobType.SYNC_EVENTS
    payload_model = SyncEventsPayload
    max_attempts = 5

    def __init__(self, store=None, notifier=None, sync_service=None, **options: Any):
        super().__init__(store=store, notifier=notifier, **options)
        self.sync_service = sync_service or event_sync_service

    async def handle(self, job: Job, payload: SyncEventsPayload, report_progress) -> dict[str, Any]:
        result = await self.sync_service.sync_user_events(
            payload.user_id,
            calendar_id=payload.calendar_id,
            on_progress=report_progress,
        )
        return {**result.to_dict(), "message": result.summary_message()}

    def on_job_started(self, job: Job) -> SyncNotification:
        return SyncNotification(
            type=NotificationType.SYNC_STARTED,
            user_id=job.user_id,
            job_id=job.id,
            message="Calendar sync started",
            data={"attempt": job.attempts},
        )

    def on_job_progress(self, job: Job, progress: dict[str, Any]) -> SyncNotification:
        return SyncNotification(
            type=NotificationType.SYNC_PROGRESS,
            user_id=job.user_id,
            job_id=job.id,
            message=f"Synced {progress.get('scanned', 0)} events so far",
            data=progress,
        )

    def on_job_completed(self, job: Job, result: dict[str, Any]) -> SyncNotification:
        return SyncNotification(
            type=NotificationType.SYNC_COMPLETED,
            user_id=job.user_id,
            job_id=job.id,
            message=result.get("message", "Sync completed"),
            data=result,
        )

    def on_job_failed(self, job: Job, error: Exception, will_retry: bool) -> SyncNotification | None:
        # Intermediate failures stay quiet; the user hears about the final outcome
        if will_retry:
            return None
        return SyncNotification(
            type=NotificationType.SYNC_FAILED,
            user_id=job.user_id,
            job_id=job.id,
            message=f"Calendar sync failed: {job.error}",
            data={"attempts": job.attempts, "error_type": type(error).__name__},
        )
