import asyncio

import pytest

from app.jobs.errors import UnknownJobType
from app.jobs.registry import QUEUE_TYPES, build_queue_manager
from app.jobs.store import InMemoryJobStore
from app.models.domain.job_domain import JobStatus, JobType


@pytest.fixture
def manager(notifier):
    return build_queue_manager(store_factory=InMemoryJobStore, notifier=notifier)


def test_every_job_type_has_a_queue(manager):
    assert set(QUEUE_TYPES) == set(JobType)
    assert {queue.name for queue in manager.queues} == {job_type.value for job_type in JobType}


def test_duplicate_registration_is_rejected(manager):
    with pytest.raises(ValueError):
        manager.register(manager.get_queue(JobType.SYNC_EVENTS))


@pytest.mark.asyncio
async def test_unknown_job_type(manager):
    with pytest.raises(UnknownJobType):
        await manager.add_job("send-fax", {"user_id": "user-1"})


@pytest.mark.asyncio
async def test_add_job_routes_by_type_and_string(manager):
    sync_id = await manager.add_job(JobType.SYNC_EVENTS, {"user_id": "user-1"})
    cleanup_id = await manager.add_job("cleanup-expired-tokens", {})

    sync_job = await manager.get_job(sync_id)
    cleanup_job = await manager.get_job(cleanup_id)

    assert sync_job.type == JobType.SYNC_EVENTS
    assert sync_job.payload["calendar_id"] == "primary"
    assert cleanup_job.type == JobType.CLEANUP_EXPIRED_TOKENS
    assert cleanup_job.user_id == "system"
    assert await manager.get_job("missing") is None


@pytest.mark.asyncio
async def test_queue_stats(manager):
    await manager.add_job(JobType.SYNC_EVENTS, {"user_id": "user-1"})
    await manager.pause_queue("connect-provider")

    stats = await manager.get_queue_stats()

    assert stats["sync-events"]["pending"] == 1
    assert stats["connect-provider"]["paused"] is True
    assert stats["cleanup-expired-tokens"]["pending"] == 0

    await manager.resume_queue("connect-provider")
    stats = await manager.get_queue_stats()
    assert stats["connect-provider"]["paused"] is False


@pytest.mark.asyncio
async def test_start_and_stop_runs_queues(manager, credentials):
    cleanup_queue = manager.get_queue(JobType.CLEANUP_EXPIRED_TOKENS)
    cleanup_queue.credentials = credentials
    cleanup_queue.poll_interval = 0.01
    credentials.cleanup_result = 4
    job_id = await manager.add_job(JobType.CLEANUP_EXPIRED_TOKENS, {})

    manager.start()
    for _ in range(100):
        job = await manager.get_job(job_id)
        if job.status == JobStatus.COMPLETED:
            break
        await asyncio.sleep(0.01)
    await asyncio.wait_for(manager.close(), timeout=5)

    job = await manager.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.result == {"deleted": 4}
