"""Periodic removal of expired revoked-token records."""

from typing import Any

from app.jobs.base_queue import JobQueue
from app.models.domain.job_domain import CleanupTokensPayload, Job, JobType
from app.services.token_service import token_service


class CleanupTokensQueue(JobQueue):
    job_type = JobType.CLEANUP_EXPIRED_TOKENS
    payload_model = CleanupTokensPayload
    max_attempts = 2
    backoff_base = 5

    def __init__(self, store=None, notifier=None, credentials=None, **options: Any):
        super().__init__(store=store, notifier=notifier, **options)
        self.credentials = credentials or token_service

    async def handle(self, job: Job, payload: CleanupTokensPayload, report_progress) -> dict[str, Any]:
        deleted = await self.credentials.cleanup_revoked_tokens()
        return {"deleted": deleted}
