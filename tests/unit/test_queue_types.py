import pytest

from app.jobs.cleanup_tokens_queue import CleanupTokensQueue
from app.jobs.connect_provider_queue import ConnectProviderQueue
from app.jobs.errors import InvalidJobPayload
from app.jobs.store import InMemoryJobStore
from app.jobs.sync_events_queue import SyncEventsQueue
from app.models.domain.job_domain import JobStatus
from app.services.calendar.errors import TransientProviderError
from app.services.calendar.sync_service import EventSyncService


@pytest.fixture
def sync_service_for(events_repo, credentials, cache):
    def _build(provider):
        return EventSyncService(
            repository=events_repo,
            calendar_client=provider,
            credentials=credentials,
            cache=cache,
            batch_size=50,
        )

    return _build


@pytest.mark.asyncio
async def test_sync_job_reports_progress_and_summary(
    sync_service_for, make_provider, make_remote_event, notifier
):
    provider = make_provider([[make_remote_event(1), make_remote_event(2)], [make_remote_event(3)]])
    queue = SyncEventsQueue(
        store=InMemoryJobStore("sync-events"),
        notifier=notifier,
        sync_service=sync_service_for(provider),
    )
    await queue.add_job({"user_id": "user-123"})

    job = await queue.process_next()

    assert job.status == JobStatus.COMPLETED
    assert job.result["created"] == 3
    assert job.result["message"] == "Sync completed: 3 events processed (3 new, 0 updated)"
    assert notifier.types() == ["sync_started", "sync_progress", "sync_progress", "sync_completed"]
    assert notifier.sent[-1].user_id == "user-123"


@pytest.mark.asyncio
async def test_sync_job_without_credentials_fails_without_retry(
    sync_service_for, make_provider, notifier
):
    queue = SyncEventsQueue(
        store=InMemoryJobStore("sync-events"),
        notifier=notifier,
        sync_service=sync_service_for(make_provider()),
    )
    job_id = await queue.add_job({"user_id": "stranger"})

    await queue.process_next()

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert job.is_terminal
    assert notifier.types()[-1] == "sync_failed"


@pytest.mark.asyncio
async def test_sync_job_retries_provider_outage(sync_service_for, make_provider, notifier):
    provider = make_provider(error=TransientProviderError("503"))
    queue = SyncEventsQueue(
        store=InMemoryJobStore("sync-events"),
        notifier=notifier,
        sync_service=sync_service_for(provider),
    )
    job_id = await queue.add_job({"user_id": "user-123"})

    await queue.process_next()

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.next_retry_at is not None
    assert job.max_attempts == 5
    assert "sync_failed" not in notifier.types()


@pytest.mark.asyncio
async def test_connect_job_exchanges_code_then_syncs(
    sync_service_for, make_provider, make_remote_event, credentials, notifier
):
    queue = ConnectProviderQueue(
        store=InMemoryJobStore("connect-provider"),
        notifier=notifier,
        sync_service=sync_service_for(make_provider([[make_remote_event(1)]])),
        credentials=credentials,
    )
    await queue.add_job({"user_id": "new-user", "code": "auth-code"})

    job = await queue.process_next()

    assert job.status == JobStatus.COMPLETED
    assert credentials.exchanged == [("new-user", "auth-code")]
    assert job.result["message"] == "Calendar connected: 1 events synced (1 new, 0 updated)"
    assert notifier.types() == [
        "calendar_connection_started",
        "calendar_connected",
    ]


@pytest.mark.asyncio
async def test_connect_job_retry_does_not_reuse_code(
    sync_service_for, make_provider, make_remote_event, credentials, notifier
):
    provider = make_provider([[make_remote_event(1)]], error=TransientProviderError("503"))
    queue = ConnectProviderQueue(
        store=InMemoryJobStore("connect-provider"),
        notifier=notifier,
        sync_service=sync_service_for(provider),
        credentials=credentials,
        backoff_base=0.001,
    )
    job_id = await queue.add_job({"user_id": "new-user", "code": "auth-code"})

    first = await queue.process_next()
    assert first.status == JobStatus.FAILED

    provider.error = None
    job = await queue.store.get(job_id)
    job.available_at = job.next_retry_at = job.created_at
    await queue.store.save(job)
    second = await queue.process_next()

    assert second.status == JobStatus.COMPLETED
    assert second.attempts == 2
    assert credentials.exchanged == [("new-user", "auth-code")]


@pytest.mark.asyncio
async def test_connect_job_requires_code(credentials, notifier):
    queue = ConnectProviderQueue(
        store=InMemoryJobStore("connect-provider"), notifier=notifier, credentials=credentials
    )

    with pytest.raises(InvalidJobPayload):
        await queue.add_job({"user_id": "new-user"})


@pytest.mark.asyncio
async def test_cleanup_job_reports_deleted_count(credentials, notifier):
    credentials.cleanup_result = 7
    queue = CleanupTokensQueue(
        store=InMemoryJobStore("cleanup-expired-tokens"), notifier=notifier, credentials=credentials
    )
    await queue.add_job({})

    job = await queue.process_next()

    assert job.result == {"deleted": 7}
    assert job.max_attempts == 2
    assert notifier.sent == []
