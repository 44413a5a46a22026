"""
Inbound event synchronization.

Pages through a user's provider events inside a bounded window and upserts
them into local storage in fixed-size batches. Re-running a sync over an
unchanged remote set converges to the same local state, which is what lets
the job queue retry or re-deliver sync jobs safely.
"""

import calendar
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.calendar_domain import (
    PRIMARY_CALENDAR_ID,
    CalendarEvent,
    EventRecord,
    EventUpdate,
    MalformedRemoteRecord,
    SyncResult,
    SyncWindow,
)
from app.repositories.events_repository import events_repository
from app.services.cache_service import cache_service
from app.services.calendar.google_client import google_calendar_service
from app.services.token_service import token_service

logger = get_logger(__name__)

ProgressCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Fields refreshed from the provider on every sync of a known event
SYNCED_FIELDS = (
    "title",
    "description",
    "location",
    "start_date",
    "end_date",
    "is_all_day",
    "status",
    "timezone",
    "provider_html_link",
    "last_synced_at",
)


def shift_months(moment: datetime, months: int) -> datetime:
    """Move by whole calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def chunked(items: list, size: int):
    for start in range(0, len(items), size):
        yield items[start : start + size]


class EventSyncService:
    """
    Reconciles provider events into the local events table.

    Collaborators are injected so the algorithm runs against fakes in tests:
    ``repository`` (batch lookup/create/update), ``calendar_client``
    (``list_events_page``), ``credentials`` (``get_valid_access_token``) and
    ``cache`` (``invalidate_user_events``).
    """

    def __init__(
        self,
        repository=None,
        calendar_client=None,
        credentials=None,
        cache=None,
        batch_size: int | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
        months_back: int | None = None,
        months_forward: int | None = None,
        delete_cancelled: bool | None = None,
    ):
        self.repository = repository or events_repository
        self.calendar_client = calendar_client or google_calendar_service
        self.credentials = credentials or token_service
        self.cache = cache or cache_service
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE
        self.page_size = page_size or settings.SYNC_PAGE_SIZE
        self.max_pages = max_pages or settings.SYNC_MAX_PAGES
        self.months_back = settings.SYNC_MONTHS_BACK if months_back is None else months_back
        self.months_forward = (
            settings.SYNC_MONTHS_FORWARD if months_forward is None else months_forward
        )
        self.delete_cancelled = (
            settings.SYNC_DELETE_CANCELLED if delete_cancelled is None else delete_cancelled
        )

    def get_sync_window(self, now: datetime | None = None) -> SyncWindow:
        now = now or datetime.now(UTC)
        return SyncWindow(
            time_min=shift_months(now, -self.months_back),
            time_max=shift_months(now, self.months_forward),
        )

    async def sync_user_events(
        self,
        user_id: str,
        calendar_id: str = PRIMARY_CALENDAR_ID,
        on_progress: ProgressCallback | None = None,
        window: SyncWindow | None = None,
    ) -> SyncResult:
        """
        Run one inbound sync for a user's calendar.

        Args:
            user_id: Owner of the local events
            calendar_id: Provider calendar to read
            on_progress: Awaited after every page with running counts
            window: Override the configured months-back/forward window

        Returns:
            SyncResult: aggregate counts for the run

        Raises:
            NoCredentialError / InvalidCredentialError: no usable credentials (terminal)
            TransientProviderError: provider unavailable or rate limited (retryable)
            DatabaseError: a batch write failed (retryable)
        """
        access_token = await self.credentials.get_valid_access_token(user_id)
        window = window or self.get_sync_window()
        result = SyncResult()
        synced_at = datetime.now(UTC)

        logger.info(
            "Starting event sync",
            user_id=user_id,
            calendar_id=calendar_id,
            time_min=window.time_min.isoformat(),
            time_max=window.time_max.isoformat(),
        )

        page_token = None
        while True:
            page = await self.calendar_client.list_events_page(
                access_token,
                calendar_id=calendar_id,
                time_min=window.time_min,
                time_max=window.time_max,
                max_results=self.page_size,
                page_token=page_token,
            )
            result.pages_visited += 1

            for batch in chunked(page.items, self.batch_size):
                await self._process_batch(user_id, calendar_id, batch, result, synced_at)

            logger.debug(
                "Sync page processed",
                user_id=user_id,
                page=result.pages_visited,
                page_items=len(page.items),
                scanned=result.scanned,
            )

            if on_progress:
                await on_progress(
                    {
                        "page": result.pages_visited,
                        "scanned": result.scanned,
                        "created": result.created,
                        "updated": result.updated,
                    }
                )

            page_token = page.next_page_token
            if not page_token:
                break
            if result.pages_visited >= self.max_pages:
                result.truncated = True
                logger.warning(
                    "Sync stopped at page ceiling",
                    user_id=user_id,
                    calendar_id=calendar_id,
                    max_pages=self.max_pages,
                )
                break

        await self.cache.invalidate_user_events(user_id)

        logger.info("Event sync completed", user_id=user_id, **result.to_dict())
        return result

    def _classify(
        self,
        user_id: str,
        calendar_id: str,
        items: list[dict],
        result: SyncResult,
        synced_at: datetime,
    ) -> tuple[dict[str, EventRecord], list[str]]:
        records: dict[str, EventRecord] = {}
        cancelled_ids: list[str] = []

        for item in items:
            result.scanned += 1
            if not isinstance(item, dict):
                result.skipped += 1
                logger.warning("Skipping non-object provider event", user_id=user_id)
                continue
            try:
                event = CalendarEvent(item)
                if event.is_cancelled():
                    result.cancelled += 1
                    if isinstance(event.id, str) and event.id:
                        cancelled_ids.append(event.id)
                    continue
                record = event.to_record(user_id, calendar_id, synced_at)
            except (MalformedRemoteRecord, ValidationError) as e:
                result.skipped += 1
                logger.warning(
                    "Skipping malformed provider event",
                    user_id=user_id,
                    provider_event_id=getattr(e, "provider_event_id", None),
                    reason=str(e),
                )
                continue

            # A page can repeat an id; the later copy wins
            records[record.provider_event_id] = record

        return records, cancelled_ids

    async def _process_batch(
        self,
        user_id: str,
        calendar_id: str,
        items: list[dict],
        result: SyncResult,
        synced_at: datetime,
    ) -> None:
        result.batches_processed += 1
        records, cancelled_ids = self._classify(user_id, calendar_id, items, result, synced_at)

        if records:
            existing = await self.repository.find_by_external_ids(
                user_id, calendar_id, list(records)
            )
            known = {event.provider_event_id: event for event in existing}

            to_create = [record for ref, record in records.items() if ref not in known]
            to_update = [
                EventUpdate(id=known[ref].id, fields=record.model_dump(include=set(SYNCED_FIELDS)))
                for ref, record in records.items()
                if ref in known
            ]

            if to_create:
                result.created += await self.repository.create_many(to_create)
            if to_update:
                await self.repository.update_many(user_id, to_update)
                result.updated += len(to_update)

        if cancelled_ids and self.delete_cancelled:
            result.deleted += await self.repository.delete_by_external_ids(
                user_id, calendar_id, cancelled_ids
            )


# Global instance
event_sync_service = EventSyncService()
