"""
PostgreSQL connection pool shared by the API process and the queue worker.

The pool is opened once per process, optionally applies ``schema.sql`` (every
statement is idempotent), and hands out dict-row connections in autocommit
mode; ``transaction()`` scopes a block in an explicit transaction.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

# Utilization above this marks the pool unhealthy in readiness checks
POOL_SATURATION_PERCENT = 90


class DatabasePoolManager:
    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._initialized = False
        self._closed = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self, apply_schema: bool | None = None) -> None:
        """
        Open the pool and verify a round trip.

        Raises:
            RuntimeError: pool could not be opened, or was already closed
        """
        if self._initialized:
            logger.warning("Database pool already initialized")
            return
        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        pool_config = settings.get_db_pool_config()
        try:
            self.pool = AsyncConnectionPool(
                conninfo=settings.DATABASE_URL,
                open=False,
                check=AsyncConnectionPool.check_connection,
                configure=self._configure_connection,
                **pool_config,
            )
            await self.pool.open()
            await self.pool.wait()
            self._initialized = True

            await self._round_trip()
            if settings.DB_APPLY_SCHEMA if apply_schema is None else apply_schema:
                await self.apply_schema()
        except Exception as e:
            logger.error("Failed to initialize database pool", error=str(e))
            await self._discard_pool()
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info(
            "Database pool initialized",
            min_size=pool_config["min_size"],
            max_size=pool_config["max_size"],
        )

    async def _discard_pool(self) -> None:
        self._initialized = False
        if self.pool is None:
            return
        try:
            await self.pool.close()
        except Exception as e:
            logger.debug("Error closing half-open pool", error=str(e))
        self.pool = None

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        await conn.execute(
            sql.SQL("SET application_name = {}").format(
                sql.Literal(f"calendar-sync-{settings.environment}")
            )
        )
        # Event timestamps are stored and compared in UTC
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute("SET statement_timeout = '60s'")

    async def _round_trip(self) -> None:
        async with self.connection() as conn:
            cur = await conn.execute("SELECT 1 AS ok")
            row = await cur.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Database connection test returned an unexpected row")

    async def apply_schema(self) -> None:
        """Create the events, oauth_tokens and revoked_tokens tables if missing."""
        ddl = SCHEMA_PATH.read_text(encoding="utf-8")
        async with self.transaction() as conn:
            await conn.execute(ddl)
        logger.info("Database schema applied", path=str(SCHEMA_PATH))

    async def close(self) -> None:
        if not self._initialized or self._closed:
            return
        try:
            if self.pool:
                await asyncio.wait_for(self.pool.close(), timeout=30.0)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out")
        except Exception as e:
            logger.error("Error closing database pool", error=str(e))
        finally:
            self._initialized = False
            self._closed = True

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        if not self._initialized:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        if self._closed:
            raise RuntimeError("Database pool is closed")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Connection inside a transaction: commit on success, roll back on error."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        if not self._initialized or self._closed:
            return {
                "healthy": False,
                "service": "database_pool",
                "error": "Pool closed" if self._closed else "Pool not initialized",
            }

        try:
            started = time.time()
            await self._round_trip()
            round_trip_ms = round((time.time() - started) * 1000, 2)
        except Exception as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        stats = self.pool.get_stats()
        size = stats.get("pool_size", 0)
        available = stats.get("pool_available", 0)
        utilization = round((size - available) / size * 100, 2) if size else 0.0
        return {
            "healthy": utilization < POOL_SATURATION_PERCENT,
            "service": "database_pool",
            "connection_time_ms": round_trip_ms,
            "pool_stats": {
                "pool_size": size,
                "pool_available": available,
                "pool_utilization_percent": utilization,
                "requests_waiting": stats.get("requests_waiting", 0),
            },
        }


db_pool = DatabasePoolManager()


async def get_db_connection():
    return db_pool.connection()


async def get_db_transaction():
    return db_pool.transaction()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
