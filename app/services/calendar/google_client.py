"""
Google Calendar v3 client.

Inbound sync reads events one page at a time (recurring events expanded,
cancelled instances included); outbound propagation creates, patches and
deletes single events. Requests are retried on 429/5xx and network errors,
and failures surface as GoogleCalendarError subclasses whose ``recoverable``
flag drives job retries.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any

import httpx

from app.infrastructure.observability.logging import get_logger
from app.models.domain.calendar_domain import PRIMARY_CALENDAR_ID, CalendarEvent, EventsPage
from app.services.calendar.errors import (
    GoogleCalendarError,
    InvalidCredentialError,
    TransientProviderError,
)

logger = get_logger(__name__)

CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
GONE_STATUS_CODES = {404, 410}

STATUS_MESSAGES = {
    400: "Invalid calendar request format.",
    401: "Calendar authorization expired. Please reconnect.",
    403: "Calendar access denied. Please check permissions.",
    404: "Calendar or event not found.",
    429: "Too many calendar requests. Please try again later.",
}


def _event_boundary(
    moment: datetime, is_all_day: bool, timezone_str: str | None, is_end: bool = False
) -> dict:
    if is_all_day:
        # Provider all-day ends are exclusive
        day = moment.date() + timedelta(days=1) if is_end else moment.date()
        return {"date": day.isoformat()}
    boundary = {"dateTime": moment.isoformat()}
    if timezone_str:
        boundary["timeZone"] = timezone_str
    return boundary


def error_for_status(status_code: int, body: Any) -> GoogleCalendarError:
    """Translate an error response into the provider error taxonomy."""
    detail = body.get("error", {}) if isinstance(body, dict) else {}
    provider_message = detail.get("message") if isinstance(detail, dict) else None

    if status_code in STATUS_MESSAGES:
        message = STATUS_MESSAGES[status_code]
    elif status_code >= 500:
        message = "Google Calendar service temporarily unavailable."
    else:
        message = f"Calendar error: {provider_message or f'HTTP {status_code}'}"

    context = {
        "error_code": str(status_code),
        "status_code": status_code,
        "response_data": body if isinstance(body, dict) else {},
    }
    if status_code == 401:
        return InvalidCredentialError(message, **context)
    if status_code == 429 or status_code >= 500:
        return TransientProviderError(message, **context)
    return GoogleCalendarError(message, **context)


class GoogleCalendarService:
    def __init__(self, max_retries: int = MAX_RETRIES, backoff_factor: float = BACKOFF_FACTOR):
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self._client = httpx.AsyncClient(
            base_url=CALENDAR_API_BASE_URL,
            timeout=httpx.Timeout(REQUEST_TIMEOUT),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=50),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, path: str, access_token: str, **kwargs) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

        for attempt in range(1, self.max_retries + 1):
            last_attempt = attempt == self.max_retries
            try:
                response = await self._client.request(method, path, headers=headers, **kwargs)
            except httpx.RequestError as e:
                if last_attempt:
                    raise TransientProviderError(f"Calendar API unreachable: {e}") from e
                logger.debug("Calendar API request error, retrying", attempt=attempt, error=str(e))
            else:
                if response.status_code not in RETRY_STATUS_CODES or last_attempt:
                    return response
                logger.debug(
                    "Calendar API transient status, retrying",
                    attempt=attempt,
                    status_code=response.status_code,
                )
            await asyncio.sleep(self.backoff_factor * (2 ** (attempt - 1)))

        raise TransientProviderError("Calendar API retry loop exhausted")

    def _json(self, response: httpx.Response, operation: str) -> dict:
        """Body of a successful response, or the mapped error for a failed one."""
        try:
            body = response.json() if response.content else {}
        except ValueError as e:
            if response.is_success:
                raise GoogleCalendarError(f"Invalid response format: {e}") from e
            body = {}

        if response.is_success:
            return body

        error = error_for_status(response.status_code, body)
        logger.error(
            "Calendar API call failed",
            operation=operation,
            status_code=response.status_code,
            error=str(error),
        )
        raise error

    async def list_events_page(
        self,
        access_token: str,
        calendar_id: str = PRIMARY_CALENDAR_ID,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int = 2500,
        page_token: str | None = None,
    ) -> EventsPage:
        """
        Fetch one page of events in [time_min, time_max).

        Raises:
            InvalidCredentialError: token rejected
            TransientProviderError: rate limited, 5xx or unreachable after retries
            GoogleCalendarError: any other failure, including a malformed body
        """
        params: dict[str, Any] = {
            "maxResults": max_results,
            "singleEvents": "true",
            "orderBy": "startTime",
            "showDeleted": "true",
        }
        if time_min:
            params["timeMin"] = time_min.isoformat()
        if time_max:
            params["timeMax"] = time_max.isoformat()
        if page_token:
            params["pageToken"] = page_token

        response = await self._send(
            "GET", f"/calendars/{calendar_id}/events", access_token, params=params
        )
        data = self._json(response, "list_events")

        items = data.get("items", [])
        if not isinstance(items, list):
            raise GoogleCalendarError("Invalid response format: items is not a list")
        logger.debug(
            "Fetched calendar events page",
            calendar_id=calendar_id,
            items=len(items),
            has_next=bool(data.get("nextPageToken")),
        )
        return EventsPage(items=items, next_page_token=data.get("nextPageToken"))

    async def create_event(
        self,
        access_token: str,
        summary: str,
        start_time: datetime,
        end_time: datetime,
        calendar_id: str = PRIMARY_CALENDAR_ID,
        description: str = "",
        location: str = "",
        is_all_day: bool = False,
        timezone_str: str | None = None,
    ) -> CalendarEvent:
        body = {
            "summary": summary,
            "description": description,
            "location": location,
            "start": _event_boundary(start_time, is_all_day, timezone_str),
            "end": _event_boundary(end_time, is_all_day, timezone_str, is_end=True),
        }
        response = await self._send(
            "POST", f"/calendars/{calendar_id}/events", access_token, json=body
        )
        event = CalendarEvent(self._json(response, "create_event"))
        logger.info("Provider event created", event_id=event.id, calendar_id=calendar_id)
        return event

    async def update_event(
        self,
        access_token: str,
        event_id: str,
        calendar_id: str = PRIMARY_CALENDAR_ID,
        summary: str | None = None,
        description: str | None = None,
        location: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        is_all_day: bool = False,
        timezone_str: str | None = None,
    ) -> CalendarEvent:
        """PATCH only the fields that are provided."""
        body: dict[str, Any] = {
            key: value
            for key, value in (
                ("summary", summary),
                ("description", description),
                ("location", location),
            )
            if value is not None
        }
        if start_time is not None:
            body["start"] = _event_boundary(start_time, is_all_day, timezone_str)
        if end_time is not None:
            body["end"] = _event_boundary(end_time, is_all_day, timezone_str, is_end=True)

        response = await self._send(
            "PATCH", f"/calendars/{calendar_id}/events/{event_id}", access_token, json=body
        )
        data = self._json(response, "update_event")
        logger.info("Provider event updated", event_id=event_id, fields=list(body))
        return CalendarEvent(data)

    async def delete_event(
        self, access_token: str, event_id: str, calendar_id: str = PRIMARY_CALENDAR_ID
    ) -> bool:
        """Delete an event. One that is already gone upstream counts as deleted."""
        response = await self._send(
            "DELETE", f"/calendars/{calendar_id}/events/{event_id}", access_token
        )
        if response.status_code in GONE_STATUS_CODES:
            logger.info("Provider event already gone", event_id=event_id)
            return True
        self._json(response, "delete_event")
        logger.info("Provider event deleted", event_id=event_id)
        return True


google_calendar_service = GoogleCalendarService()
