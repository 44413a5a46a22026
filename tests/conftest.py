import asyncio
import fnmatch
import uuid
from datetime import UTC, datetime, timedelta

import pytest

from app.auth.verify import auth_dependency
from app.models.domain.calendar_domain import CalendarEvent, EventsPage, LocalEvent
from app.services.cache_service import CacheService
from app.services.calendar.errors import NoCredentialError


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.published: list[tuple[str, str]] = []

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def delete(self, key: str) -> bool:
        return self.store.pop(key, None) is not None

    async def delete_pattern(self, pattern: str) -> int:
        matches = [key for key in self.store if fnmatch.fnmatchcase(key, pattern)]
        for key in matches:
            del self.store[key]
        return len(matches)

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


class InMemoryEventsRepository:
    """Events table stand-in with the same batch and keyset semantics."""

    def __init__(self):
        self.events: dict[str, LocalEvent] = {}
        self.lookups = 0

    def _by_ref(self, user_id, calendar_id, provider_event_id):
        for event in self.events.values():
            if (
                event.user_id == user_id
                and event.provider_calendar_id == calendar_id
                and event.provider_event_id == provider_event_id
            ):
                return event
        return None

    async def find_by_external_ids(self, user_id, calendar_id, provider_event_ids):
        self.lookups += 1
        found = [self._by_ref(user_id, calendar_id, ref) for ref in provider_event_ids]
        return [event for event in found if event is not None]

    async def create_many(self, records):
        inserted = 0
        for record in records:
            if self._by_ref(record.user_id, record.provider_calendar_id, record.provider_event_id):
                continue
            await self.create(record)
            inserted += 1
        return inserted

    async def update_many(self, user_id, updates):
        for update in updates:
            await self.update(user_id, update.id, update.fields)
        return len(updates)

    async def delete_by_external_ids(self, user_id, calendar_id, provider_event_ids):
        deleted = 0
        for ref in provider_event_ids:
            event = self._by_ref(user_id, calendar_id, ref)
            if event is not None:
                del self.events[event.id]
                deleted += 1
        return deleted

    async def find_by_id(self, user_id, event_id):
        event = self.events.get(event_id)
        if event is None or event.user_id != user_id:
            return None
        return event

    async def create(self, record):
        now = datetime.now(UTC)
        event = LocalEvent(
            **record.model_dump(), id=str(uuid.uuid4()), created_at=now, updated_at=now
        )
        self.events[event.id] = event
        return event

    async def update(self, user_id, event_id, fields):
        event = await self.find_by_id(user_id, event_id)
        if event is None:
            return None
        updated = event.model_copy(update={**fields, "updated_at": datetime.now(UTC)})
        self.events[event_id] = updated
        return updated

    async def delete(self, user_id, event_id):
        event = await self.find_by_id(user_id, event_id)
        if event is None:
            return False
        del self.events[event_id]
        return True

    async def count(self, user_id):
        return sum(1 for event in self.events.values() if event.user_id == user_id)

    async def find_page(self, user_id, start, end, limit, cursor=None, status="confirmed"):
        rows = sorted(
            (
                event
                for event in self.events.values()
                if event.user_id == user_id
                and event.status == status
                and start <= event.start_date <= end
            ),
            key=lambda event: (event.start_date, event.id),
        )
        if cursor is not None:
            rows = [
                event
                for event in rows
                if (event.start_date, event.id) > (cursor.last_sort_value, cursor.last_id)
            ]
        return rows[: limit + 1]


class StaleLookupRepository(InMemoryEventsRepository):
    """Lookups miss rows a concurrent sync is about to insert."""

    async def find_by_external_ids(self, user_id, calendar_id, provider_event_ids):
        self.lookups += 1
        await asyncio.sleep(0)
        return []

    async def create_many(self, records):
        await asyncio.sleep(0)
        return await super().create_many(records)


class FakeCredentials:
    def __init__(self, tokens: dict[str, str] | None = None):
        self.tokens = dict(tokens or {})
        self.exchanged: list[tuple[str, str]] = []
        self.cleanup_result = 0

    async def get_valid_access_token(self, user_id):
        if user_id not in self.tokens:
            raise NoCredentialError("No calendar connection", user_id=user_id)
        return self.tokens[user_id]

    async def get_tokens(self, user_id, provider="google"):
        return self.tokens.get(user_id)

    async def connect_with_code(self, user_id, code):
        self.exchanged.append((user_id, code))
        self.tokens[user_id] = f"token-for-{user_id}"
        return self.tokens[user_id]

    async def cleanup_revoked_tokens(self):
        return self.cleanup_result


def remote_event(index: int, **overrides) -> dict:
    """A provider event object as the events API returns it. Overrides replace raw fields."""
    start = datetime(2024, 3, 1, 9, tzinfo=UTC) + timedelta(hours=index)
    data = {
        "id": f"evt{index:04d}",
        "summary": f"Event {index}",
        "status": "confirmed",
        "htmlLink": f"https://calendar.example/evt{index:04d}",
        "start": {"dateTime": start.isoformat()},
        "end": {"dateTime": (start + timedelta(minutes=30)).isoformat()},
    }
    data.update(overrides)
    return data


class FakeCalendarProvider:
    """Serves fixed pages keyed by page token and records outbound writes."""

    def __init__(self, pages: list[list[dict]] | None = None, error: Exception | None = None):
        self.pages = pages or [[]]
        self.error = error
        self.list_calls: list[dict] = []
        self.created: list[dict] = []
        self.updated: list[dict] = []
        self.deleted: list[str] = []

    async def list_events_page(self, access_token, calendar_id="primary", **kwargs):
        self.list_calls.append({"access_token": access_token, "calendar_id": calendar_id, **kwargs})
        if self.error:
            raise self.error
        index = int(kwargs.get("page_token") or 0)
        next_token = str(index + 1) if index + 1 < len(self.pages) else None
        return EventsPage(self.pages[index], next_token)

    async def create_event(self, access_token, **kwargs):
        if self.error:
            raise self.error
        self.created.append(kwargs)
        return CalendarEvent(
            {
                "id": f"remote-{len(self.created)}",
                "summary": kwargs["summary"],
                "htmlLink": "https://calendar.example/remote",
                "start": {"dateTime": kwargs["start_time"].isoformat()},
                "end": {"dateTime": kwargs["end_time"].isoformat()},
            }
        )

    async def update_event(self, access_token, event_id, **kwargs):
        if self.error:
            raise self.error
        self.updated.append({"event_id": event_id, **kwargs})

    async def delete_event(self, access_token, event_id, calendar_id="primary"):
        if self.error:
            raise self.error
        self.deleted.append(event_id)
        return True


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def push(self, user_id, notification):
        if self.fail:
            raise RuntimeError("notifier down")
        self.sent.append(notification)
        return True

    def types(self) -> list[str]:
        return [notification.type.value for notification in self.sent]


@pytest.fixture
def events_repo():
    return InMemoryEventsRepository()


@pytest.fixture
def stale_events_repo():
    return StaleLookupRepository()


@pytest.fixture
def credentials():
    return FakeCredentials({"user-123": "access-token"})


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def cache(fake_redis):
    return CacheService(redis_client=fake_redis, prefix="test:", default_ttl=60)


@pytest.fixture
def make_remote_event():
    return remote_event


@pytest.fixture
def make_provider():
    return FakeCalendarProvider


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)
