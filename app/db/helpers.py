"""
Query helpers used by the repositories.

Every psycopg error is re-raised as DatabaseError so callers deal with a
single exception type; ``with_db_retry`` retries the ones caused by a lost
connection.
"""

import asyncio
import functools
from collections.abc import Sequence
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql

from app.db.pool import get_db_connection, get_db_transaction
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@asynccontextmanager
async def _wrap_errors(operation: str, query: str | sql.Composable, **context):
    try:
        yield
    except psycopg.Error as e:
        logger.error(
            "Database operation failed",
            operation=operation,
            query=str(query)[:100],
            error=str(e),
            **context,
        )
        raise DatabaseError(f"{operation} failed: {e}", operation=operation) from e


async def fetch_one(query: str, params: Sequence = ()) -> dict[str, Any] | None:
    async with _wrap_errors("fetch_one", query):
        async with await get_db_connection() as conn:
            cur = await conn.execute(query, params)
            return await cur.fetchone()


async def fetch_all(query: str, params: Sequence = ()) -> list[dict[str, Any]]:
    async with _wrap_errors("fetch_all", query):
        async with await get_db_connection() as conn:
            cur = await conn.execute(query, params)
            return await cur.fetchall()


async def fetch_val(query: str, params: Sequence = ()) -> Any:
    """First column of the first row, or None."""
    row = await fetch_one(query, params)
    return next(iter(row.values())) if row else None


async def execute_query(query: str, params: Sequence = ()) -> int:
    """Run a statement and return the affected row count."""
    async with _wrap_errors("execute", query):
        async with await get_db_connection() as conn:
            cur = await conn.execute(query, params)
            return cur.rowcount


async def execute_many(query: str, params_seq: list[Sequence]) -> int:
    """
    Run one statement for many parameter sets in a single transaction.

    With ON CONFLICT DO NOTHING the returned count excludes skipped rows.
    """
    if not params_seq:
        return 0

    async with _wrap_errors("execute_many", query, batch_size=len(params_seq)):
        async with await get_db_transaction() as conn:
            async with conn.cursor() as cur:
                await cur.executemany(query, params_seq)
                return cur.rowcount if cur.rowcount >= 0 else len(params_seq)


async def execute_transaction(queries_and_params: list[tuple[str, Sequence]]) -> int:
    """Run several (query, params) statements atomically; total affected rows."""
    if not queries_and_params:
        return 0

    affected = 0
    first_query = queries_and_params[0][0]
    async with _wrap_errors("transaction", first_query, query_count=len(queries_and_params)):
        async with await get_db_transaction() as conn:
            for query, params in queries_and_params:
                cur = await conn.execute(query, params)
                affected += max(cur.rowcount, 0)
    return affected


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """Retry a coroutine whose DatabaseError was caused by psycopg.OperationalError."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except DatabaseError as e:
                    if not isinstance(e.__cause__, psycopg.OperationalError) or attempt >= max_retries:
                        raise
                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Database operation failed, retrying",
                        operation=func.__name__,
                        attempt=attempt + 1,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
