# app/services/infrastructure/redis_client.py
"""
Pooled async Redis client shared by the cache, the job store and the
notification bridge.

Cache-style operations (get, set, delete, publish) never raise: a Redis
outage degrades them to a miss, False or 0. The job store needs failures to
propagate and takes the raw client from ``get_client()`` instead.
"""

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class FastRedisClient:
    def __init__(self):
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        if self._initialized:
            return

        try:
            self.pool = ConnectionPool.from_url(
                settings.REDIS_URL,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)
            await self.client.ping()
        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            raise RuntimeError("Redis initialization failed") from e

        self._initialized = True
        logger.info("Redis client initialized", max_connections=settings.REDIS_MAX_CONNECTIONS)

    async def close(self):
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))
        finally:
            self._initialized = False

    async def get_client(self) -> redis.Redis:
        """Raw client; connects lazily and lets errors propagate."""
        if not self._initialized:
            logger.warning("Redis not initialized, connecting lazily")
            await self.initialize()
        return self.client

    async def _degrade(self, operation: str, fallback, call, **context):
        """Run ``call(client)``; on any Redis failure log and return ``fallback``."""
        try:
            return await call(await self.get_client())
        except Exception as e:
            logger.error("Redis operation failed", operation=operation, error=str(e), **context)
            return fallback

    async def ping(self) -> bool:
        return bool(await self._degrade("ping", False, lambda c: c.ping()))

    async def get(self, key: str) -> str | None:
        result = await self._degrade("get", None, lambda c: c.get(key), key=key[:50])
        return result or None

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        result = await self._degrade(
            "set",
            False,
            lambda c: c.setex(key, ttl_s, value) if ttl_s else c.set(key, value),
            key=key[:50],
        )
        return bool(result)

    async def delete(self, key: str) -> bool:
        deleted = await self._degrade("delete", 0, lambda c: c.delete(key), key=key[:50])
        return deleted > 0

    async def delete_pattern(self, pattern: str, batch_size: int = 500) -> int:
        """Delete every key matching a glob via SCAN; number deleted, 0 on failure."""

        async def scan_and_delete(client) -> int:
            deleted = 0
            batch: list[str] = []
            async for key in client.scan_iter(match=pattern, count=batch_size):
                batch.append(key)
                if len(batch) >= batch_size:
                    deleted += await client.delete(*batch)
                    batch = []
            if batch:
                deleted += await client.delete(*batch)
            return deleted

        return await self._degrade("delete_pattern", 0, scan_and_delete, pattern=pattern[:50])

    async def publish(self, channel: str, message: str) -> int:
        """Receiver count, 0 on failure."""
        receivers = await self._degrade(
            "publish", 0, lambda c: c.publish(channel, message), channel=channel[:50]
        )
        return int(receivers)


fast_redis = FastRedisClient()
