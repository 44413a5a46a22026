"""
Persistence for local calendar events.

Batch operations serve the inbound sync; single-row operations serve
user-initiated mutations. Every mutation invalidates the owner's cached
event listings.
"""

import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from psycopg import sql

from app.db.helpers import (
    execute_many,
    execute_query,
    execute_transaction,
    fetch_all,
    fetch_one,
    fetch_val,
)
from app.infrastructure.observability.logging import get_logger
from app.models.domain.calendar_domain import EventRecord, EventUpdate, LocalEvent
from app.services.cache_service import CacheService, cache_service
from app.utils.pagination import PageCursor

logger = get_logger(__name__)

EVENT_COLUMNS = (
    "user_id",
    "title",
    "description",
    "location",
    "start_date",
    "end_date",
    "is_all_day",
    "status",
    "timezone",
    "provider_event_id",
    "provider_calendar_id",
    "provider_html_link",
    "last_synced_at",
)

UPDATABLE_COLUMNS = frozenset(EVENT_COLUMNS) - {"user_id"}

SELECT_COLUMNS = "id, " + ", ".join(EVENT_COLUMNS) + ", created_at, updated_at"


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except ValueError:
        return False


def _row_to_event(row: dict[str, Any] | None) -> LocalEvent | None:
    if not row:
        return None
    data = dict(row)
    data["id"] = str(data["id"])
    return LocalEvent(**data)


def _update_statement(fields: dict[str, Any]) -> sql.Composed:
    unknown = set(fields) - UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Cannot update columns: {sorted(unknown)}")
    assignments = [
        sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder()) for column in fields
    ]
    assignments.append(sql.SQL("updated_at = NOW()"))
    return sql.SQL("UPDATE events SET {} WHERE id = %s AND user_id = %s").format(
        sql.SQL(", ").join(assignments)
    )


class EventsRepository:
    def __init__(self, cache: CacheService | None = None):
        self.cache = cache or cache_service

    async def _invalidate(self, user_ids: Iterable[str]) -> None:
        for user_id in set(user_ids):
            await self.cache.invalidate_user_events(user_id)

    async def find_by_external_ids(
        self, user_id: str, calendar_id: str, provider_event_ids: list[str]
    ) -> list[LocalEvent]:
        """One query for a whole batch of provider ids."""
        if not provider_event_ids:
            return []
        query = f"""
            SELECT {SELECT_COLUMNS}
            FROM events
            WHERE user_id = %s
              AND provider_calendar_id = %s
              AND provider_event_id = ANY(%s)
        """
        rows = await fetch_all(query, (user_id, calendar_id, list(provider_event_ids)))
        return [_row_to_event(row) for row in rows]

    async def create_many(self, records: list[EventRecord]) -> int:
        """
        Insert records, skipping any that already exist for the same provider reference.

        Returns the number of rows actually inserted.
        """
        if not records:
            return 0
        placeholders = ", ".join(["%s"] * len(EVENT_COLUMNS))
        query = f"""
            INSERT INTO events ({", ".join(EVENT_COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT (user_id, provider_calendar_id, provider_event_id) DO NOTHING
        """
        params_seq = [tuple(getattr(record, column) for column in EVENT_COLUMNS) for record in records]
        inserted = await execute_many(query, params_seq)
        await self._invalidate(record.user_id for record in records)
        logger.debug("Events bulk inserted", requested=len(records), inserted=inserted)
        return inserted

    async def update_many(self, user_id: str, updates: list[EventUpdate]) -> int:
        """Apply field updates for one user in a single transaction."""
        statements = [
            (_update_statement(update.fields), (*update.fields.values(), update.id, user_id))
            for update in updates
            if update.fields
        ]
        if not statements:
            return 0
        updated = await execute_transaction(statements)
        await self._invalidate([user_id])
        return updated

    async def delete_by_external_ids(
        self, user_id: str, calendar_id: str, provider_event_ids: list[str]
    ) -> int:
        if not provider_event_ids:
            return 0
        deleted = await execute_query(
            """
            DELETE FROM events
            WHERE user_id = %s
              AND provider_calendar_id = %s
              AND provider_event_id = ANY(%s)
            """,
            (user_id, calendar_id, list(provider_event_ids)),
        )
        await self._invalidate([user_id])
        return deleted

    async def find_by_id(self, user_id: str, event_id: str) -> LocalEvent | None:
        if not _is_uuid(event_id):
            return None
        row = await fetch_one(
            f"SELECT {SELECT_COLUMNS} FROM events WHERE id = %s AND user_id = %s",
            (event_id, user_id),
        )
        return _row_to_event(row)

    async def create(self, record: EventRecord) -> LocalEvent:
        placeholders = ", ".join(["%s"] * len(EVENT_COLUMNS))
        row = await fetch_one(
            f"""
            INSERT INTO events ({", ".join(EVENT_COLUMNS)})
            VALUES ({placeholders})
            RETURNING {SELECT_COLUMNS}
            """,
            tuple(getattr(record, column) for column in EVENT_COLUMNS),
        )
        await self._invalidate([record.user_id])
        return _row_to_event(row)

    async def update(self, user_id: str, event_id: str, fields: dict[str, Any]) -> LocalEvent | None:
        if not _is_uuid(event_id):
            return None
        if not fields:
            return await self.find_by_id(user_id, event_id)
        query = _update_statement(fields) + sql.SQL(f" RETURNING {SELECT_COLUMNS}")
        row = await fetch_one(query, (*fields.values(), event_id, user_id))
        await self._invalidate([user_id])
        return _row_to_event(row)

    async def delete(self, user_id: str, event_id: str) -> bool:
        if not _is_uuid(event_id):
            return False
        deleted = await execute_query(
            "DELETE FROM events WHERE id = %s AND user_id = %s", (event_id, user_id)
        )
        await self._invalidate([user_id])
        return deleted > 0

    async def count(self, user_id: str) -> int:
        return int(await fetch_val("SELECT COUNT(*) FROM events WHERE user_id = %s", (user_id,)) or 0)

    async def find_page(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        limit: int,
        cursor: PageCursor | None = None,
        status: str = "confirmed",
    ) -> list[LocalEvent]:
        """
        Keyset page ordered by (start_date, id).

        Fetches limit + 1 rows; the extra row only signals that a next page exists.
        """
        conditions = ["user_id = %s", "status = %s", "start_date >= %s", "start_date <= %s"]
        params: list[Any] = [user_id, status, start, end]
        if cursor and _is_uuid(cursor.last_id):
            conditions.append("(start_date, id) > (%s, %s)")
            params.extend([cursor.last_sort_value, cursor.last_id])
        params.append(limit + 1)

        query = f"""
            SELECT {SELECT_COLUMNS}
            FROM events
            WHERE {" AND ".join(conditions)}
            ORDER BY start_date ASC, id ASC
            LIMIT %s
        """
        rows = await fetch_all(query, tuple(params))
        return [_row_to_event(row) for row in rows]


# Global instance
events_repository = EventsRepository()
