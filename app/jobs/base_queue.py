"""
Generic retryable job queue.

One JobQueue subclass per job type supplies the payload schema, the handler
and the lifecycle hooks. The base class owns enqueue, claiming, retry with
exponential backoff, stalled-job recovery, retention and delivery of hook
notifications. Handler exceptions stop at the queue boundary and are recorded
on the job; callers see them only through ``get_job``.
"""

import asyncio
from datetime import timedelta
from typing import Any

from pydantic import ValidationError

from app.config import settings
from app.infrastructure.observability.logging import get_logger, log_job_event
from app.jobs.errors import InvalidJobPayload, QueueCapacityExceeded, StalledJob
from app.jobs.store import JobStore, RedisJobStore
from app.models.domain.job_domain import (
    Job,
    JobPayload,
    JobStatus,
    JobType,
    QueueCounts,
    new_job_id,
    utc_now,
)
from app.services.notification_service import SyncNotification, notification_service

logger = get_logger(__name__)

# Stalled-job recovery and retention run at most this often per queue
MAINTENANCE_INTERVAL_SECONDS = 30


class JobQueue:
    job_type: JobType
    payload_model: type[JobPayload] = JobPayload
    max_attempts: int | None = None
    backoff_base: float | None = None
    concurrency: int = 1

    def __init__(self, store: JobStore | None = None, notifier=None, **options: Any):
        config = {**settings.get_queue_config(), **options}

        self.name = self.job_type.value
        self.store = store or RedisJobStore(self.name)
        self.notifier = notifier or notification_service

        self.max_attempts = options.get("max_attempts") or self.max_attempts or config["max_attempts"]
        self.backoff_base = options.get("backoff_base") or self.backoff_base or config["backoff_base"]
        self.backoff_max = config["backoff_max"]
        self.stalled_timeout = config["stalled_timeout"]
        self.poll_interval = config["poll_interval"]
        self.retain_completed = config["retain_completed"]
        self.retain_failed = config["retain_failed"]
        self.retention = timedelta(hours=config["retention_hours"])
        self.max_pending = config["max_pending"]
        self.concurrency = options.get("concurrency") or self.concurrency

        self._stop_event: asyncio.Event | None = None
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Job-type specific parts
    # ------------------------------------------------------------------

    async def handle(self, job: Job, payload: JobPayload, report_progress) -> dict[str, Any]:
        """Do the work. The returned dict becomes the job result."""
        raise NotImplementedError

    def on_job_started(self, job: Job) -> SyncNotification | None:
        return None

    def on_job_progress(self, job: Job, progress: dict[str, Any]) -> SyncNotification | None:
        return None

    def on_job_completed(self, job: Job, result: dict[str, Any]) -> SyncNotification | None:
        return None

    def on_job_failed(self, job: Job, error: Exception, will_retry: bool) -> SyncNotification | None:
        return None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def validate_payload(self, payload: dict[str, Any]) -> JobPayload:
        try:
            return self.payload_model.model_validate(payload)
        except ValidationError as e:
            raise InvalidJobPayload(
                f"Invalid payload for {self.name}: {e.error_count()} error(s)",
                queue=self.name,
                errors=e.errors(include_url=False),
            ) from e

    async def add_job(self, payload: dict[str, Any], delay_seconds: float = 0) -> str:
        """
        Persist a pending job and return its id. Never runs the job inline.

        Raises:
            InvalidJobPayload: payload fails the job type's schema
            QueueCapacityExceeded: too many jobs already pending
        """
        validated = self.validate_payload(payload)

        if await self.store.pending_count() >= self.max_pending:
            raise QueueCapacityExceeded(
                f"Queue {self.name} is full", queue=self.name, limit=self.max_pending
            )

        now = utc_now()
        job = Job(
            id=new_job_id(self.name),
            type=self.job_type,
            payload=validated.model_dump(mode="json"),
            max_attempts=self.max_attempts,
            created_at=now,
            available_at=now + timedelta(seconds=delay_seconds),
        )
        await self.store.save(job)
        log_job_event("enqueued", self.name, job.id, user_id=job.user_id)
        return job.id

    async def get_job(self, job_id: str) -> Job | None:
        return await self.store.get(job_id)

    async def get_job_counts(self) -> QueueCounts:
        counts = await self.store.counts(utc_now())
        counts.paused = await self.store.is_paused()
        return counts

    async def pause(self) -> None:
        """Stop claiming new jobs. Enqueue keeps working; in-flight jobs finish."""
        await self.store.set_paused(True)
        logger.info("Queue paused", queue=self.name)

    async def resume(self) -> None:
        await self.store.set_paused(False)
        logger.info("Queue resumed", queue=self.name)

    def backoff_seconds(self, attempts: int) -> float:
        """Delay before the next try after ``attempts`` executions."""
        return min(self.backoff_base * (2 ** max(attempts - 1, 0)), self.backoff_max)

    async def process_next(self) -> Job | None:
        """
        Claim and run one eligible job.

        Returns the job in its final state for this attempt, or None when the
        queue is paused or nothing is eligible.
        """
        if await self.store.is_paused():
            return None
        job = await self.store.claim_next(utc_now())
        if job is None:
            return None
        return await self._execute(job)

    # ------------------------------------------------------------------
    # Processing internals
    # ------------------------------------------------------------------

    async def _emit(self, hook, *args) -> None:
        """Run a lifecycle hook and push its notification. Never affects job status."""
        try:
            notification = hook(*args)
            if notification is not None:
                await self.notifier.push(notification.user_id, notification)
        except Exception as e:
            logger.warning(
                "Job lifecycle hook failed",
                queue=self.name,
                hook=getattr(hook, "__name__", str(hook)),
                error=str(e),
            )

    async def _execute(self, job: Job) -> Job:
        job.transition(JobStatus.PROCESSING)
        job.attempts += 1
        job.started_at = utc_now()
        job.next_retry_at = None
        await self.store.save(job)
        log_job_event("started", self.name, job.id, user_id=job.user_id, attempts=job.attempts)
        await self._emit(self.on_job_started, job)

        async def report_progress(progress: dict[str, Any]) -> None:
            # Progress doubles as a heartbeat so long jobs are not requeued as stalled
            try:
                await self.store.touch(job.id, utc_now())
            except Exception as e:
                logger.warning("Job lease renewal failed", queue=self.name, job_id=job.id, error=str(e))
            await self._emit(self.on_job_progress, job, progress)

        try:
            payload = self.validate_payload(job.payload)
            result = await self.handle(job, payload, report_progress)
        except Exception as e:
            await self._record_failure(job, e)
            return job

        job.transition(JobStatus.COMPLETED)
        job.completed_at = utc_now()
        job.result = result or {}
        job.error = None
        await self.store.save(job)
        log_job_event(
            "completed",
            self.name,
            job.id,
            user_id=job.user_id,
            attempts=job.attempts,
            duration_ms=round((job.completed_at - job.started_at).total_seconds() * 1000, 2),
        )
        await self._emit(self.on_job_completed, job, job.result)
        return job

    async def _record_failure(self, job: Job, error: Exception) -> None:
        now = utc_now()
        recoverable = getattr(error, "recoverable", True)
        will_retry = recoverable and job.attempts < job.max_attempts

        job.transition(JobStatus.FAILED)
        job.error = str(error) or type(error).__name__
        if will_retry:
            delay = self.backoff_seconds(job.attempts)
            job.next_retry_at = now + timedelta(seconds=delay)
            job.available_at = job.next_retry_at
            log_job_event(
                "retry_scheduled",
                self.name,
                job.id,
                user_id=job.user_id,
                attempts=job.attempts,
                delay_seconds=delay,
                error=job.error,
            )
        else:
            job.next_retry_at = None
            job.completed_at = now
            log_job_event(
                "failed",
                self.name,
                job.id,
                user_id=job.user_id,
                attempts=job.attempts,
                error=job.error,
                error_type=type(error).__name__,
                recoverable=recoverable,
            )

        await self.store.save(job)
        await self._emit(self.on_job_failed, job, error, will_retry)

    async def requeue_stalled(self) -> int:
        """Hand jobs stuck in processing back to pending, or fail them if out of attempts."""
        now = utc_now()
        stalled_jobs = await self.store.find_stalled(now - timedelta(seconds=self.stalled_timeout))

        for job in stalled_jobs:
            if job.status == JobStatus.PROCESSING:
                stalled = StalledJob(job.id, queue=self.name, timeout_seconds=self.stalled_timeout)
                if job.attempts >= job.max_attempts:
                    job.transition(JobStatus.FAILED)
                    job.error = str(stalled)
                    job.next_retry_at = None
                    job.completed_at = now
                    log_job_event(
                        "failed",
                        self.name,
                        job.id,
                        user_id=job.user_id,
                        attempts=job.attempts,
                        error=job.error,
                    )
                else:
                    job.transition(JobStatus.PENDING)
                    job.available_at = now
                    log_job_event(
                        "stalled",
                        self.name,
                        job.id,
                        user_id=job.user_id,
                        attempts=job.attempts,
                        error=str(stalled),
                    )
            # Claimed but never marked processing: save re-files it as pending
            await self.store.save(job)

        return len(stalled_jobs)

    async def purge_finished(self) -> int:
        removed = await self.store.purge(
            self.retain_completed, self.retain_failed, utc_now() - self.retention
        )
        if removed:
            logger.info("Purged finished jobs", queue=self.name, removed=removed)
        return removed

    async def _maintenance(self) -> None:
        try:
            await self.requeue_stalled()
            await self.purge_finished()
        except Exception as e:
            logger.error("Queue maintenance failed", queue=self.name, error=str(e))

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _run_claimed(self, job: Job, semaphore: asyncio.Semaphore) -> None:
        try:
            await self._execute(job)
        except Exception as e:
            logger.error(
                "Job bookkeeping failed", queue=self.name, job_id=job.id, error=str(e)
            )
        finally:
            semaphore.release()

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Processing loop: claim up to ``concurrency`` jobs at a time until stopped."""
        self._stop_event = stop_event or asyncio.Event()
        semaphore = asyncio.Semaphore(self.concurrency)
        loop = asyncio.get_running_loop()
        last_maintenance = None

        logger.info("Queue worker started", queue=self.name, concurrency=self.concurrency)
        try:
            while not self._stop_event.is_set():
                due = last_maintenance is None or (
                    loop.time() - last_maintenance >= MAINTENANCE_INTERVAL_SECONDS
                )
                if due:
                    await self._maintenance()
                    last_maintenance = loop.time()

                await semaphore.acquire()
                try:
                    job = None
                    if not await self.store.is_paused():
                        job = await self.store.claim_next(utc_now())
                except Exception as e:
                    logger.error("Failed to claim job", queue=self.name, error=str(e))
                    job = None

                if job is None:
                    semaphore.release()
                    await self._wait(self.poll_interval)
                    continue

                task = asyncio.create_task(self._run_claimed(job, semaphore))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info("Queue worker stopped", queue=self.name)

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def close(self) -> None:
        self.stop()
        await self.store.close()
