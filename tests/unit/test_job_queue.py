import asyncio
from datetime import timedelta

import pytest

from app.jobs.base_queue import JobQueue
from app.jobs.errors import InvalidJobPayload, QueueCapacityExceeded
from app.jobs.store import InMemoryJobStore
from app.models.domain.job_domain import JobStatus, JobType, utc_now
from app.services.notification_service import NotificationType, SyncNotification


class Boom(Exception):
    def __init__(self, message="boom", recoverable=True):
        super().__init__(message)
        self.recoverable = recoverable


class RecordingQueue(JobQueue):
    job_type = JobType.SYNC_EVENTS

    def __init__(self, fail_times=0, error=None, **kwargs):
        super().__init__(**kwargs)
        self.fail_times = fail_times
        self.error = error
        self.calls = 0

    async def handle(self, job, payload, report_progress):
        self.calls += 1
        await report_progress({"call": self.calls})
        if self.error is not None:
            raise self.error
        if self.calls <= self.fail_times:
            raise Boom(f"failure {self.calls}")
        return {"user": payload.user_id, "calls": self.calls}

    def on_job_started(self, job):
        return SyncNotification(
            type=NotificationType.SYNC_STARTED, user_id=job.user_id, job_id=job.id, message="started"
        )

    def on_job_completed(self, job, result):
        return SyncNotification(
            type=NotificationType.SYNC_COMPLETED, user_id=job.user_id, job_id=job.id, message="done"
        )

    def on_job_failed(self, job, error, will_retry):
        if will_retry:
            return None
        return SyncNotification(
            type=NotificationType.SYNC_FAILED, user_id=job.user_id, job_id=job.id, message="failed"
        )


def make_queue(notifier, **kwargs):
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("backoff_base", 0.001)
    return RecordingQueue(store=InMemoryJobStore("sync-events"), notifier=notifier, **kwargs)


async def drain(queue, rounds=50):
    """Process until nothing is pending or delayed."""
    for _ in range(rounds):
        job = await queue.process_next()
        if job is None:
            counts = await queue.get_job_counts()
            if counts.pending == 0 and counts.delayed == 0:
                return
            await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_add_job_persists_pending_job(notifier):
    queue = make_queue(notifier)

    job_id = await queue.add_job({"user_id": "user-1"})
    job = await queue.get_job(job_id)

    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.payload["user_id"] == "user-1"
    assert queue.calls == 0
    counts = await queue.get_job_counts()
    assert counts.pending == 1


@pytest.mark.asyncio
async def test_job_ids_are_unique(notifier):
    queue = make_queue(notifier)
    ids = {await queue.add_job({"user_id": "user-1"}) for _ in range(20)}
    assert len(ids) == 20


@pytest.mark.asyncio
async def test_successful_job_completes_and_notifies(notifier):
    queue = make_queue(notifier)
    job_id = await queue.add_job({"user_id": "user-1"})

    job = await queue.process_next()

    assert job.id == job_id
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 1
    assert job.result == {"user": "user-1", "calls": 1}
    assert job.completed_at is not None
    assert notifier.types() == ["sync_started", "sync_completed"]
    stored = await queue.get_job(job_id)
    assert stored.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_recoverable_failures_retry_until_success(notifier):
    queue = make_queue(notifier, fail_times=2)
    job_id = await queue.add_job({"user_id": "user-1"})

    await drain(queue)

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 3
    assert queue.calls == 3
    # No failure notification for intermediate attempts
    assert "sync_failed" not in notifier.types()


@pytest.mark.asyncio
async def test_always_failing_job_stops_after_max_attempts(notifier):
    queue = make_queue(notifier, error=Boom("always"))
    job_id = await queue.add_job({"user_id": "user-1"})

    await drain(queue)

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.is_terminal
    assert job.attempts == 3
    assert queue.calls == 3
    assert job.error == "always"
    assert notifier.types().count("sync_failed") == 1
    assert await queue.process_next() is None


@pytest.mark.asyncio
async def test_non_recoverable_error_fails_immediately(notifier):
    queue = make_queue(notifier, error=Boom("bad credentials", recoverable=False))
    job_id = await queue.add_job({"user_id": "user-1"})

    await drain(queue)

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert job.next_retry_at is None
    assert queue.calls == 1


@pytest.mark.asyncio
async def test_failed_attempt_waits_out_backoff(notifier):
    queue = make_queue(notifier, fail_times=1, backoff_base=60)
    job_id = await queue.add_job({"user_id": "user-1"})

    first = await queue.process_next()

    assert first.status == JobStatus.FAILED
    assert first.next_retry_at is not None
    assert not first.is_terminal
    assert await queue.process_next() is None
    counts = await queue.get_job_counts()
    assert counts.delayed == 1
    assert counts.failed == 0
    stored = await queue.get_job(job_id)
    assert stored.next_retry_at - stored.started_at >= timedelta(seconds=59)


def test_backoff_doubles_and_is_capped(notifier):
    queue = make_queue(notifier, backoff_base=2)
    queue.backoff_max = 10

    assert [queue.backoff_seconds(n) for n in (1, 2, 3, 4)] == [2, 4, 8, 10]


@pytest.mark.asyncio
async def test_invalid_payload_is_rejected_at_enqueue(notifier):
    queue = make_queue(notifier)

    with pytest.raises(InvalidJobPayload):
        await queue.add_job({})
    with pytest.raises(InvalidJobPayload):
        await queue.add_job({"user_id": ""})

    counts = await queue.get_job_counts()
    assert counts.pending == 0


@pytest.mark.asyncio
async def test_capacity_limit(notifier):
    queue = make_queue(notifier, max_pending=2)
    await queue.add_job({"user_id": "user-1"})
    await queue.add_job({"user_id": "user-2"})

    with pytest.raises(QueueCapacityExceeded) as exc:
        await queue.add_job({"user_id": "user-3"})

    assert exc.value.limit == 2


@pytest.mark.asyncio
async def test_paused_queue_accepts_but_does_not_run_jobs(notifier):
    queue = make_queue(notifier)
    await queue.pause()

    job_id = await queue.add_job({"user_id": "user-1"})
    assert await queue.process_next() is None
    counts = await queue.get_job_counts()
    assert counts.paused is True
    assert counts.pending == 1

    await queue.resume()
    job = await queue.process_next()
    assert job.id == job_id
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_stalled_job_is_requeued(notifier):
    queue = make_queue(notifier, stalled_timeout=60)
    job_id = await queue.add_job({"user_id": "user-1"})

    # Simulate a worker that claimed the job and died
    job = await queue.store.claim_next(utc_now())
    job.transition(JobStatus.PROCESSING)
    job.attempts = 1
    job.started_at = utc_now() - timedelta(minutes=10)
    await queue.store.save(job)

    assert await queue.requeue_stalled() == 1

    stored = await queue.get_job(job_id)
    assert stored.status == JobStatus.PENDING
    assert stored.attempts == 1

    finished = await queue.process_next()
    assert finished.status == JobStatus.COMPLETED
    assert finished.attempts == 2


@pytest.mark.asyncio
async def test_stalled_job_out_of_attempts_fails(notifier):
    queue = make_queue(notifier, stalled_timeout=60, max_attempts=1)
    job_id = await queue.add_job({"user_id": "user-1"})

    job = await queue.store.claim_next(utc_now())
    job.transition(JobStatus.PROCESSING)
    job.attempts = 1
    job.started_at = utc_now() - timedelta(minutes=10)
    await queue.store.save(job)

    await queue.requeue_stalled()

    stored = await queue.get_job(job_id)
    assert stored.status == JobStatus.FAILED
    assert stored.is_terminal
    assert "stalled" in stored.error


@pytest.mark.asyncio
async def test_recent_processing_job_is_not_stalled(notifier):
    queue = make_queue(notifier, stalled_timeout=600)
    await queue.add_job({"user_id": "user-1"})
    job = await queue.store.claim_next(utc_now())
    job.transition(JobStatus.PROCESSING)
    job.started_at = utc_now()
    await queue.store.save(job)

    assert await queue.requeue_stalled() == 0


@pytest.mark.asyncio
async def test_purge_keeps_newest_finished_jobs(notifier):
    queue = make_queue(notifier, retain_completed=2)
    for _ in range(4):
        await queue.add_job({"user_id": "user-1"})
        await queue.process_next()
    pending_id = await queue.add_job({"user_id": "user-1"})

    removed = await queue.purge_finished()

    counts = await queue.get_job_counts()
    assert removed == 2
    assert counts.completed == 2
    assert counts.pending == 1
    assert await queue.get_job(pending_id) is not None


@pytest.mark.asyncio
async def test_hook_failure_does_not_change_outcome(notifier):
    class BrokenHooks(RecordingQueue):
        def on_job_completed(self, job, result):
            raise RuntimeError("hook exploded")

    queue = BrokenHooks(store=InMemoryJobStore("sync-events"), notifier=notifier, max_attempts=3)
    job_id = await queue.add_job({"user_id": "user-1"})

    await queue.process_next()

    assert (await queue.get_job(job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_notifier_failure_does_not_change_outcome(failing_notifier):
    queue = make_queue(failing_notifier)
    job_id = await queue.add_job({"user_id": "user-1"})

    await queue.process_next()

    assert (await queue.get_job(job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_run_loop_processes_jobs_until_stopped(notifier):
    queue = make_queue(notifier, poll_interval=0.01, concurrency=2)
    job_ids = [await queue.add_job({"user_id": f"user-{i}"}) for i in range(3)]
    stop_event = asyncio.Event()

    runner = asyncio.create_task(queue.run(stop_event))
    for _ in range(100):
        statuses = [(await queue.get_job(job_id)).status for job_id in job_ids]
        if all(status == JobStatus.COMPLETED for status in statuses):
            break
        await asyncio.sleep(0.01)
    stop_event.set()
    await asyncio.wait_for(runner, timeout=2)

    assert all(
        (await queue.get_job(job_id)).status == JobStatus.COMPLETED for job_id in job_ids
    )


class LongRunningQueue(RecordingQueue):
    """Handler that runs past the stall timeout, reporting progress as it goes."""

    async def handle(self, job, payload, report_progress):
        aged = job.model_copy(update={"started_at": utc_now() - timedelta(minutes=10)})
        await self.store.save(aged)
        self.requeued_before_progress = len(
            await self.store.find_stalled(utc_now() - timedelta(seconds=self.stalled_timeout))
        )
        await report_progress({"page": 1})
        self.requeued_after_progress = await self.requeue_stalled()
        return {"pages": 1}


@pytest.mark.asyncio
async def test_progress_renews_processing_lease(notifier):
    queue = LongRunningQueue(
        store=InMemoryJobStore("sync-events"), notifier=notifier, stalled_timeout=60
    )
    job_id = await queue.add_job({"user_id": "user-1"})

    finished = await queue.process_next()

    assert queue.requeued_before_progress == 1
    assert queue.requeued_after_progress == 0
    assert finished.id == job_id
    assert finished.status == JobStatus.COMPLETED
    assert finished.attempts == 1


class FlakyTouchStore(InMemoryJobStore):
    async def touch(self, job_id, now):
        raise ConnectionError("store unavailable")


@pytest.mark.asyncio
async def test_lease_renewal_failure_does_not_fail_job(notifier):
    queue = RecordingQueue(store=FlakyTouchStore("sync-events"), notifier=notifier)
    await queue.add_job({"user_id": "user-1"})

    finished = await queue.process_next()

    assert finished.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_touch_only_renews_processing_jobs(notifier):
    queue = make_queue(notifier)
    claimed_id = await queue.add_job({"user_id": "user-1"})
    claimed = await queue.store.claim_next(utc_now())
    waiting_id = await queue.add_job({"user_id": "user-2"})

    assert claimed.id == claimed_id
    assert await queue.store.touch(claimed_id, utc_now()) is True
    assert await queue.store.touch(waiting_id, utc_now()) is False
    assert await queue.store.touch("missing", utc_now()) is False
