"""
Events service: local CRUD with best-effort propagation to the provider,
cached keyset listing, and sync requests.

Local writes are authoritative for user-initiated changes. A failed provider
call is logged and never rolls back the local mutation; the next inbound
sync brings both sides back together.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.models.api.calendar_request import CreateEventRequest, EventFilter, UpdateEventRequest
from app.models.domain.calendar_domain import (
    DEFAULT_EVENT_DURATION,
    EventRecord,
    LocalEvent,
    group_events,
)
from app.models.domain.job_domain import JobType
from app.repositories.events_repository import events_repository
from app.services.cache_service import cache_service
from app.services.calendar.errors import GoogleCalendarError, InvalidCredentialError
from app.services.calendar.google_client import google_calendar_service
from app.services.token_service import token_service
from app.utils.pagination import PageCursor, build_page, decode_cursor

logger = get_logger(__name__)

LIST_CACHE_TYPE = "events"
WEEK_GROUPING_THRESHOLD = timedelta(days=30)

# Request field -> provider update kwarg
PROVIDER_FIELD_NAMES = {
    "title": "summary",
    "description": "description",
    "location": "location",
    "start_date": "start_time",
    "end_date": "end_time",
}


class EventsServiceError(Exception):
    """Custom exception for event operations."""

    def __init__(self, message: str, user_id: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.user_id = user_id
        self.recoverable = recoverable


class EventNotFoundError(EventsServiceError):
    pass


class EventsService:
    def __init__(
        self,
        repository=None,
        calendar_client=None,
        credentials=None,
        cache=None,
        queue_manager=None,
    ):
        self.repository = repository or events_repository
        self.calendar_client = calendar_client or google_calendar_service
        self.credentials = credentials or token_service
        self.cache = cache or cache_service
        self._queue_manager = queue_manager

    @property
    def queue_manager(self):
        if self._queue_manager is None:
            from app.jobs.registry import get_queue_manager

            self._queue_manager = get_queue_manager()
        return self._queue_manager

    @staticmethod
    def _resolve_window(filters: EventFilter) -> tuple[datetime, datetime]:
        if filters.start_date and filters.end_date:
            start, end = filters.start_date, filters.end_date
        else:
            today = datetime.now(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
            start = filters.start_date or today
            end = filters.end_date or start + timedelta(days=filters.days)
        if start.tzinfo is None:
            start = start.replace(tzinfo=UTC)
        if end.tzinfo is None:
            end = end.replace(tzinfo=UTC)
        return start, end

    async def list_events(self, user_id: str, filters: EventFilter) -> dict[str, Any]:
        """
        One page of confirmed events in a date window.

        The first page of each filter is served from cache when possible. Long
        windows are grouped by week even when day grouping was requested.

        Raises:
            EventsServiceError: if the window ends before it starts
        """
        start, end = self._resolve_window(filters)
        if end < start:
            raise EventsServiceError("end_date must not be before start_date", user_id=user_id)

        group_by = filters.group_by
        if group_by and end - start >= WEEK_GROUPING_THRESHOLD:
            group_by = "week"

        cursor = decode_cursor(filters.cursor)
        cache_key = None
        if cursor is None:
            params = {**filters.cache_params(), "start_date": start, "end_date": end}
            cache_key = self.cache.build_key(LIST_CACHE_TYPE, user_id, params)
            cached = await self.cache.get(cache_key)
            if cached is not None:
                logger.debug("Event list served from cache", user_id=user_id)
                return cached

        rows = await self.repository.find_page(user_id, start, end, filters.limit, cursor=cursor)
        page = build_page(
            rows,
            filters.limit,
            lambda event: PageCursor(last_sort_value=event.start_date, last_id=event.id),
            previous_cursor=filters.cursor if cursor else None,
        )

        response = page.to_dict(serialize=LocalEvent.to_dict)
        response["range"] = {"start": start.isoformat(), "end": end.isoformat(), "group_by": group_by}
        response["groups"] = group_events(page.items, group_by) if group_by else None

        if cache_key:
            await self.cache.set(cache_key, response)
        return response

    async def get_event(self, user_id: str, event_id: str) -> LocalEvent:
        event = await self.repository.find_by_id(user_id, event_id)
        if not event:
            raise EventNotFoundError("Event not found", user_id=user_id)
        return event

    async def _access_token_or_none(self, user_id: str) -> str | None:
        """Credentials for outbound calls, or None when the user has no usable connection."""
        try:
            return await self.credentials.get_valid_access_token(user_id)
        except InvalidCredentialError:
            logger.debug("No provider credentials, keeping change local", user_id=user_id)
            return None
        except Exception as e:
            logger.warning("Could not load provider credentials", user_id=user_id, error=str(e))
            return None

    async def create_event(self, user_id: str, request: CreateEventRequest) -> LocalEvent:
        end_date = request.end_date or request.start_date + DEFAULT_EVENT_DURATION
        event = await self.repository.create(
            EventRecord(
                user_id=user_id,
                title=request.title,
                description=request.description,
                location=request.location,
                start_date=request.start_date,
                end_date=end_date,
                is_all_day=request.is_all_day,
                timezone=request.timezone,
            )
        )
        logger.info("Event created locally", user_id=user_id, event_id=event.id)

        access_token = await self._access_token_or_none(user_id)
        if not access_token:
            return event

        try:
            remote = await self.calendar_client.create_event(
                access_token,
                summary=event.title,
                start_time=event.start_date,
                end_time=event.end_date,
                calendar_id=request.calendar_id,
                description=event.description,
                location=event.location,
                is_all_day=event.is_all_day,
                timezone_str=event.timezone,
            )
        except GoogleCalendarError as e:
            logger.warning(
                "Provider create failed, event kept local",
                user_id=user_id,
                event_id=event.id,
                error=str(e),
                status_code=e.status_code,
            )
            return event

        linked = await self.repository.update(
            user_id,
            event.id,
            {
                "provider_event_id": remote.id,
                "provider_calendar_id": request.calendar_id,
                "provider_html_link": remote.html_link,
                "last_synced_at": datetime.now(UTC),
            },
        )
        return linked or event

    async def update_event(
        self, user_id: str, event_id: str, request: UpdateEventRequest
    ) -> LocalEvent:
        existing = await self.get_event(user_id, event_id)
        fields = request.changed_fields()

        start = fields.get("start_date", existing.start_date)
        end = fields.get("end_date", existing.end_date)
        if end < start:
            raise EventsServiceError("end_date must not be before start_date", user_id=user_id)

        event = await self.repository.update(user_id, event_id, fields)
        if not event:
            raise EventNotFoundError("Event not found", user_id=user_id)

        ref = event.external_ref
        if not ref:
            return event
        access_token = await self._access_token_or_none(user_id)
        if not access_token:
            return event

        provider_changes = {
            PROVIDER_FIELD_NAMES[name]: value
            for name, value in fields.items()
            if name in PROVIDER_FIELD_NAMES
        }
        if "timezone" in fields:
            provider_changes["timezone_str"] = fields["timezone"]
        try:
            await self.calendar_client.update_event(
                access_token,
                ref.provider_event_id,
                calendar_id=ref.provider_calendar_id,
                is_all_day=event.is_all_day,
                **provider_changes,
            )
        except GoogleCalendarError as e:
            logger.warning(
                "Provider update failed, local change kept",
                user_id=user_id,
                event_id=event_id,
                error=str(e),
                status_code=e.status_code,
            )
        return event

    async def delete_event(self, user_id: str, event_id: str) -> bool:
        existing = await self.get_event(user_id, event_id)
        deleted = await self.repository.delete(user_id, event_id)
        if not deleted:
            raise EventNotFoundError("Event not found", user_id=user_id)
        logger.info("Event deleted locally", user_id=user_id, event_id=event_id)

        ref = existing.external_ref
        if not ref:
            return True
        access_token = await self._access_token_or_none(user_id)
        if not access_token:
            return True

        try:
            await self.calendar_client.delete_event(
                access_token, ref.provider_event_id, calendar_id=ref.provider_calendar_id
            )
        except GoogleCalendarError as e:
            logger.warning(
                "Provider delete failed, local delete kept",
                user_id=user_id,
                event_id=event_id,
                error=str(e),
                status_code=e.status_code,
            )
        return True

    async def request_sync(self, user_id: str, calendar_id: str = "primary") -> str:
        """Enqueue an inbound sync for the user and return the job id."""
        return await self.queue_manager.add_job(
            JobType.SYNC_EVENTS, {"user_id": user_id, "calendar_id": calendar_id}
        )


# Global instance
events_service = EventsService()
