"""
Keyset pagination cursors.

A cursor is the (start_date, id) pair of the last row on a page, serialized
to URL-safe base64 JSON. Tokens are opaque to clients.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class PageCursor:
    last_sort_value: datetime
    last_id: str


def encode_cursor(cursor: PageCursor) -> str:
    payload = json.dumps(
        {"id": cursor.last_id, "sort": cursor.last_sort_value.isoformat()},
        separators=(",", ":"),
    )
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(token: str | None) -> PageCursor | None:
    """Decode a cursor token; any malformed input yields None instead of an error."""
    if not token or not isinstance(token, str):
        return None
    try:
        raw = base64.urlsafe_b64decode(token.encode("ascii"))
        data = json.loads(raw.decode("utf-8"))
        if not isinstance(data, dict):
            return None
        last_id = data.get("id")
        sort_value = data.get("sort")
        if not isinstance(last_id, str) or not last_id or not isinstance(sort_value, str):
            return None
        sort_moment = datetime.fromisoformat(sort_value)
        if sort_moment.tzinfo is None:
            sort_moment = sort_moment.replace(tzinfo=UTC)
        return PageCursor(last_sort_value=sort_moment, last_id=last_id)
    except (binascii.Error, UnicodeError, ValueError):
        return None


@dataclass
class Page(Generic[T]):
    items: list[T]
    has_next_page: bool
    next_cursor: str | None = None
    has_previous_page: bool = False
    previous_cursor: str | None = None

    def to_dict(self, serialize=None) -> dict[str, Any]:
        items = [serialize(item) for item in self.items] if serialize else self.items
        return {
            "items": items,
            "page_info": {
                "has_next_page": self.has_next_page,
                "next_cursor": self.next_cursor,
                "has_previous_page": self.has_previous_page,
                "previous_cursor": self.previous_cursor,
            },
        }


def build_page(
    rows: list[T],
    limit: int,
    cursor_of,
    previous_cursor: str | None = None,
) -> Page[T]:
    """
    Turn a LIMIT n+1 result into a page.

    Args:
        rows: rows fetched with limit + 1, in (sort value, id) order
        limit: requested page size
        cursor_of: callable mapping a row to its PageCursor
        previous_cursor: the cursor the caller used to reach this page
    """
    has_next_page = len(rows) > limit
    items = rows[:limit]
    next_cursor = encode_cursor(cursor_of(items[-1])) if has_next_page and items else None
    return Page(
        items=items,
        has_next_page=has_next_page,
        next_cursor=next_cursor,
        has_previous_page=previous_cursor is not None,
        previous_cursor=previous_cursor,
    )
