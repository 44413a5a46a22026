# app/models/domain/calendar_domain.py
"""
Calendar Domain Models
Provider events as returned by Google Calendar, local event records,
and the value objects produced by a synchronization run.
"""

from dataclasses import asdict, dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

DEFAULT_EVENT_DURATION = timedelta(hours=1)
PRIMARY_CALENDAR_ID = "primary"


class MalformedRemoteRecord(Exception):
    """A provider event that cannot be mapped to a local record. Skipped, never fatal."""

    def __init__(self, message: str, provider_event_id: str | None = None):
        super().__init__(message)
        self.provider_event_id = provider_event_id
        self.recoverable = True


def _resolve_zone(name: str | None) -> ZoneInfo | None:
    if not isinstance(name, str) or not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def parse_event_boundary(
    boundary: dict | None, fallback_timezone: str | None = None
) -> tuple[datetime | None, bool]:
    """
    Parse a Google Calendar start/end object.

    Returns (moment, is_all_day). All-day boundaries carry a date only and are
    pinned to midnight UTC; timed boundaries keep their offset, falling back to
    the boundary's timeZone (or UTC) when the timestamp is naive.
    """
    if not isinstance(boundary, dict) or not boundary:
        return None, False

    if isinstance(boundary.get("dateTime"), str):
        try:
            moment = datetime.fromisoformat(boundary["dateTime"].replace("Z", "+00:00"))
        except ValueError:
            return None, False
        if moment.tzinfo is None:
            zone = _resolve_zone(boundary.get("timeZone") or fallback_timezone) or UTC
            moment = moment.replace(tzinfo=zone)
        return moment, False

    if isinstance(boundary.get("date"), str):
        try:
            day = date.fromisoformat(boundary["date"])
        except ValueError:
            return None, False
        return datetime(day.year, day.month, day.day, tzinfo=UTC), True

    return None, False


class ExternalEventReference(BaseModel):
    """Join between a local event and its provider counterpart."""

    local_id: str
    provider_event_id: str
    provider_calendar_id: str
    last_synced_at: datetime | None = None


class EventRecord(BaseModel):
    """Column values for inserting a local event."""

    user_id: str
    title: str
    description: str = ""
    location: str = ""
    start_date: datetime
    end_date: datetime
    is_all_day: bool = False
    status: str = "confirmed"
    timezone: str | None = None
    provider_event_id: str | None = None
    provider_calendar_id: str | None = None
    provider_html_link: str | None = None
    last_synced_at: datetime | None = None


class LocalEvent(EventRecord):
    """A stored event row."""

    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def external_ref(self) -> ExternalEventReference | None:
        if not self.provider_event_id:
            return None
        return ExternalEventReference(
            local_id=self.id,
            provider_event_id=self.provider_event_id,
            provider_calendar_id=self.provider_calendar_id or PRIMARY_CALENDAR_ID,
            last_synced_at=self.last_synced_at,
        )

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["display_date"] = format_display_date(self.start_date, self.end_date, self.is_all_day)
        return data


class EventUpdate(BaseModel):
    """A field-level update for one local event."""

    id: str
    fields: dict[str, Any] = Field(default_factory=dict)


class CalendarEvent:
    """Domain model for an event as returned by the provider's events API."""

    def __init__(self, data: dict):
        self.id = data.get("id")
        self.summary = data.get("summary") or ""
        self.description = data.get("description") or ""
        self.location = data.get("location") or ""
        self.status = data.get("status", "confirmed")
        self.html_link = data.get("htmlLink")
        start = data.get("start") or {}
        end = data.get("end") or {}
        # Wrong-typed fields are reported by to_record(), never raised here
        self.shape_errors = [
            name
            for name, value in (
                ("id", self.id),
                ("summary", self.summary),
                ("description", self.description),
                ("location", self.location),
                ("status", self.status),
                ("htmlLink", self.html_link),
            )
            if value is not None and not isinstance(value, str)
        ]
        self.shape_errors += [
            name for name, value in (("start", start), ("end", end)) if not isinstance(value, dict)
        ]
        start = start if isinstance(start, dict) else {}
        end = end if isinstance(end, dict) else {}
        timezone = start.get("timeZone") or end.get("timeZone")
        self.timezone = timezone if isinstance(timezone, str) else None
        self.start_time, self._start_all_day = parse_event_boundary(start)
        self.end_time, _ = parse_event_boundary(end, fallback_timezone=self.timezone)
        self.updated = self._parse_datetime_iso(data.get("updated"))
        self.raw_data = data

    @staticmethod
    def _parse_datetime_iso(dt_str: str | None) -> datetime | None:
        if not isinstance(dt_str, str) or not dt_str:
            return None
        try:
            return datetime.fromisoformat(dt_str.replace("Z", "+00:00"))
        except ValueError:
            return None

    def is_all_day(self) -> bool:
        return self._start_all_day

    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    def end_or_default(self) -> datetime | None:
        """Explicit end, or one hour after start when the provider sent none."""
        if self.end_time:
            return self.end_time
        if self.start_time:
            return self.start_time + DEFAULT_EVENT_DURATION
        return None

    def to_record(
        self, user_id: str, calendar_id: str, synced_at: datetime | None = None
    ) -> EventRecord:
        """
        Map to local column values.

        All-day ends are exclusive on the provider and inclusive locally.

        Raises:
            MalformedRemoteRecord: when a field has the wrong type, or id, title
                or start is missing or unparseable
        """
        reference = self.id if isinstance(self.id, str) else None
        if self.shape_errors:
            raise MalformedRemoteRecord(
                f"Provider event has wrongly typed fields: {', '.join(self.shape_errors)}",
                reference,
            )
        if not self.id:
            raise MalformedRemoteRecord("Provider event has no id")
        if not self.summary:
            raise MalformedRemoteRecord("Provider event has no title", self.id)
        if not self.start_time:
            raise MalformedRemoteRecord("Provider event has no usable start", self.id)

        end_time = self.end_or_default()
        if end_time < self.start_time:
            raise MalformedRemoteRecord("Provider event ends before it starts", self.id)
        if self.is_all_day() and end_time > self.start_time:
            end_time = max(end_time - timedelta(days=1), self.start_time)

        return EventRecord(
            user_id=user_id,
            title=self.summary,
            description=self.description,
            location=self.location,
            start_date=self.start_time,
            end_date=end_time,
            is_all_day=self.is_all_day(),
            status=self.status or "confirmed",
            timezone=self.timezone,
            provider_event_id=self.id,
            provider_calendar_id=calendar_id,
            provider_html_link=self.html_link,
            last_synced_at=synced_at or datetime.now(UTC),
        )


class EventsPage:
    """One page of the provider's event listing."""

    def __init__(self, items: list[dict], next_page_token: str | None = None):
        self.items = items
        self.next_page_token = next_page_token

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class SyncWindow:
    time_min: datetime
    time_max: datetime


@dataclass
class SyncResult:
    """Aggregate counts for one inbound synchronization run."""

    scanned: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    cancelled: int = 0
    deleted: int = 0
    pages_visited: int = 0
    batches_processed: int = 0
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def summary_message(self) -> str:
        return (
            f"Sync completed: {self.scanned} events processed "
            f"({self.created} new, {self.updated} updated)"
        )


def _format_day(moment: datetime) -> str:
    return f"{moment:%b} {moment.day}, {moment.year}"


def _format_clock(moment: datetime) -> str:
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{hour}:{moment.minute:02d} {suffix}"


def format_display_date(start: datetime, end: datetime, is_all_day: bool) -> str:
    """Human label for an event's span, e.g. "Jan 5, 2024 at 9:00 AM - 10:00 AM"."""
    same_day = start.date() == end.date()

    if is_all_day:
        if same_day:
            return _format_day(start)
        if start.year == end.year:
            if start.month == end.month:
                return f"{start:%b} {start.day}-{end.day}, {end.year}"
            return f"{start:%b} {start.day} - {_format_day(end)}"
        return f"{_format_day(start)} - {_format_day(end)}"

    if same_day:
        return f"{_format_day(start)} at {_format_clock(start)} - {_format_clock(end)}"
    return f"{_format_day(start)} {_format_clock(start)} - {_format_day(end)} {_format_clock(end)}"


def group_events(events: list[LocalEvent], group_by: str) -> dict[str, list[dict[str, Any]]]:
    """Group events by start day, or by the Monday of their ISO week."""
    grouped: dict[str, list[dict[str, Any]]] = {}
    for event in events:
        day = event.start_date.date()
        if group_by == "week":
            day = day - timedelta(days=day.weekday())
        grouped.setdefault(day.isoformat(), []).append(event.to_dict())
    return grouped
