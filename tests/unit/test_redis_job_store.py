import asyncio
from datetime import timedelta

import fakeredis
import pytest

from app.jobs.store import RedisJobStore
from app.models.domain.job_domain import Job, JobStatus, JobType, new_job_id, utc_now


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(decode_responses=True)


@pytest.fixture
def store(redis_client):
    return RedisJobStore("sync-events", client=redis_client, prefix="test:queue")


def make_job(**overrides) -> Job:
    fields = {
        "id": new_job_id("sync-events"),
        "type": JobType.SYNC_EVENTS,
        "payload": {"user_id": "user-1"},
    }
    fields.update(overrides)
    return Job(**fields)


@pytest.mark.asyncio
async def test_save_and_get_round_trip(store, redis_client):
    job = make_job()
    await store.save(job)

    loaded = await store.get(job.id)

    assert loaded == job
    assert await redis_client.zscore("test:queue:sync-events:pending", job.id) is not None
    assert await store.get("unknown") is None


@pytest.mark.asyncio
async def test_claim_takes_earliest_eligible_job(store):
    now = utc_now()
    later = make_job(available_at=now - timedelta(seconds=5))
    earlier = make_job(available_at=now - timedelta(seconds=30))
    future = make_job(available_at=now + timedelta(minutes=5))
    for job in (later, earlier, future):
        await store.save(job)

    first = await store.claim_next(now)
    second = await store.claim_next(now)
    third = await store.claim_next(now)

    assert [first.id, second.id] == [earlier.id, later.id]
    assert third is None
    counts = await store.counts(now)
    assert counts.processing == 2
    assert counts.delayed == 1


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_job(store):
    jobs = [make_job(available_at=utc_now() - timedelta(seconds=1)) for _ in range(10)]
    for job in jobs:
        await store.save(job)

    claimed = await asyncio.gather(*(store.claim_next(utc_now()) for _ in range(15)))
    ids = [job.id for job in claimed if job is not None]

    assert len(ids) == 10
    assert len(set(ids)) == 10


@pytest.mark.asyncio
async def test_orphaned_index_entry_is_skipped(store, redis_client):
    await redis_client.zadd("test:queue:sync-events:pending", {"ghost": 0})
    job = make_job(available_at=utc_now() - timedelta(seconds=1))
    await store.save(job)

    claimed = await store.claim_next(utc_now())

    assert claimed.id == job.id
    assert await redis_client.zscore("test:queue:sync-events:processing", "ghost") is None


@pytest.mark.asyncio
async def test_find_stalled(store):
    job = make_job()
    await store.save(job)
    claimed = await store.claim_next(utc_now())
    claimed.transition(JobStatus.PROCESSING)
    claimed.started_at = utc_now() - timedelta(minutes=10)
    await store.save(claimed)

    stalled = await store.find_stalled(utc_now() - timedelta(minutes=5))
    assert [job.id for job in stalled] == [claimed.id]
    assert await store.find_stalled(utc_now() - timedelta(minutes=20)) == []


@pytest.mark.asyncio
async def test_purge_respects_retention_and_age(store):
    now = utc_now()
    finished = []
    for minutes_ago in (1, 2, 3, 120):
        job = make_job(status=JobStatus.COMPLETED, completed_at=now - timedelta(minutes=minutes_ago))
        await store.save(job)
        finished.append(job)
    pending = make_job()
    await store.save(pending)

    removed = await store.purge(
        retain_completed=3, retain_failed=10, finished_before=now - timedelta(minutes=60)
    )

    assert removed == 1
    assert await store.get(finished[3].id) is None
    assert await store.get(finished[0].id) is not None
    assert await store.get(pending.id) is not None

    removed = await store.purge(retain_completed=1, retain_failed=10, finished_before=now - timedelta(hours=1))
    assert removed == 2
    counts = await store.counts(now)
    assert counts.completed == 1
    assert counts.pending == 1


@pytest.mark.asyncio
async def test_failed_job_with_retry_waits_in_pending(store):
    retry_at = utc_now() + timedelta(seconds=30)
    job = make_job(status=JobStatus.FAILED, next_retry_at=retry_at, attempts=1)
    await store.save(job)

    assert await store.claim_next(utc_now()) is None
    claimed = await store.claim_next(retry_at + timedelta(seconds=1))
    assert claimed.id == job.id
    assert await store.pending_count() == 0


@pytest.mark.asyncio
async def test_pause_flag(store):
    assert await store.is_paused() is False
    await store.set_paused(True)
    assert await store.is_paused() is True
    await store.set_paused(False)
    assert await store.is_paused() is False


@pytest.mark.asyncio
async def test_touch_renews_processing_lease(store, redis_client):
    job = make_job()
    await store.save(job)
    claimed = await store.claim_next(utc_now())
    claimed.transition(JobStatus.PROCESSING)
    claimed.started_at = utc_now() - timedelta(minutes=10)
    await store.save(claimed)

    assert await store.touch(claimed.id, utc_now()) is True

    assert await store.find_stalled(utc_now() - timedelta(minutes=5)) == []


@pytest.mark.asyncio
async def test_touch_never_resurrects_finished_jobs(store, redis_client):
    job = make_job()
    await store.save(job)
    claimed = await store.claim_next(utc_now())
    claimed.transition(JobStatus.PROCESSING)
    claimed.transition(JobStatus.COMPLETED)
    claimed.completed_at = utc_now()
    await store.save(claimed)

    assert await store.touch(claimed.id, utc_now()) is False
    assert await redis_client.zscore("test:queue:sync-events:processing", claimed.id) is None
