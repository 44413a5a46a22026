import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import psycopg
import pytest

from app.db import helpers
from app.db.helpers import DatabaseError
from app.models.domain.calendar_domain import EventRecord
from app.repositories.events_repository import EventsRepository


class FakeCursor:
    def __init__(self, rowcount: int):
        self.rowcount = rowcount
        self.executed: list[tuple[str, list]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def executemany(self, query, params_seq):
        self.executed.append((query, list(params_seq)))


class FakeConnection:
    def __init__(self, rowcount: int = 0):
        self.cur = FakeCursor(rowcount)

    def cursor(self):
        return self.cur


def _record(index: int) -> EventRecord:
    start = datetime(2024, 3, 1, 9, tzinfo=UTC) + timedelta(hours=index)
    return EventRecord(
        user_id="user-123",
        title=f"Event {index}",
        start_date=start,
        end_date=start + timedelta(minutes=30),
        provider_event_id=f"evt{index:04d}",
        provider_calendar_id="primary",
    )


@pytest.fixture
def repo(cache):
    return EventsRepository(cache=cache)


@pytest.fixture
def fake_transaction(monkeypatch):
    def install(conn: FakeConnection):
        @asynccontextmanager
        async def transaction():
            yield conn

        async def get_db_transaction():
            return transaction()

        monkeypatch.setattr(helpers, "get_db_transaction", get_db_transaction)
        return conn

    return install


@pytest.mark.asyncio
async def test_create_many_skips_existing_provider_references(repo, fake_transaction):
    conn = fake_transaction(FakeConnection(rowcount=1))

    inserted = await repo.create_many([_record(1), _record(2)])

    assert inserted == 1
    ((query, params_seq),) = conn.cur.executed
    normalized = " ".join(query.split())
    assert "INSERT INTO events" in normalized
    assert "ON CONFLICT (user_id, provider_calendar_id, provider_event_id) DO NOTHING" in normalized
    assert [params[9] for params in params_seq] == ["evt0001", "evt0002"]


@pytest.mark.asyncio
async def test_create_many_falls_back_to_batch_size_without_rowcount(repo, fake_transaction):
    fake_transaction(FakeConnection(rowcount=-1))

    assert await repo.create_many([_record(1), _record(2), _record(3)]) == 3


@pytest.mark.asyncio
async def test_create_many_with_no_records_touches_nothing(repo, fake_transaction):
    conn = fake_transaction(FakeConnection())

    assert await repo.create_many([]) == 0
    assert conn.cur.executed == []


@pytest.mark.asyncio
async def test_update_failure_raises_database_error(repo, monkeypatch):
    async def get_db_connection():
        raise psycopg.OperationalError("server closed the connection unexpectedly")

    monkeypatch.setattr(helpers, "get_db_connection", get_db_connection)

    with pytest.raises(DatabaseError) as exc_info:
        await repo.update("user-123", str(uuid.uuid4()), {"title": "x"})

    assert exc_info.value.operation == "fetch_one"
    assert isinstance(exc_info.value.__cause__, psycopg.OperationalError)


@pytest.mark.asyncio
async def test_update_rejects_unknown_columns(repo):
    with pytest.raises(ValueError):
        await repo.update("user-123", str(uuid.uuid4()), {"user_id": "someone-else"})


@pytest.mark.asyncio
async def test_non_uuid_ids_never_reach_the_database(repo, monkeypatch):
    async def get_db_connection():
        raise AssertionError("database should not be queried")

    monkeypatch.setattr(helpers, "get_db_connection", get_db_connection)

    assert await repo.find_by_id("user-123", "not-a-uuid") is None
    assert await repo.update("user-123", "not-a-uuid", {"title": "x"}) is None
    assert await repo.delete("user-123", "not-a-uuid") is False
