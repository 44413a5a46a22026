# app/services/cache_service.py
"""
Read-through cache for listing queries.

Keys are derived from (type, user, normalized params) so identical queries
share one entry. Every operation degrades to a miss or a no-op on failure.
"""

import hashlib
import json
import re
from typing import Any

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.services.infrastructure.redis_client import fast_redis

logger = get_logger(__name__)

# Params never hashed into a key. Only the first page of a filter is cached.
EXCLUDED_PARAMS = frozenset({"cursor"})

EVENT_CACHE_TYPES = ("events", "event")

_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def escape_glob(value: str) -> str:
    """Escape Redis glob metacharacters so ``value`` only matches itself."""
    return _GLOB_SPECIAL.sub(r"\\\1", value)


class CacheService:
    def __init__(self, redis_client=None, prefix: str | None = None, default_ttl: int | None = None):
        self.redis = redis_client or fast_redis
        self.prefix = prefix if prefix is not None else settings.CACHE_KEY_PREFIX
        self.default_ttl = default_ttl or settings.CACHE_DEFAULT_TTL

    @staticmethod
    def _hash_params(params: dict[str, Any]) -> str:
        normalized = {
            key: value
            for key, value in params.items()
            if key not in EXCLUDED_PARAMS and value is not None
        }
        encoded = json.dumps(normalized, sort_keys=True, default=str)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]

    def build_key(self, cache_type: str, user_id: str, params: dict[str, Any] | None = None) -> str:
        """e.g. ht-cal:events:user:u1:params:3f2a9c0d1e4b5a6f"""
        return f"{self.prefix}{cache_type}:user:{user_id}:params:{self._hash_params(params or {})}"

    def user_pattern(self, user_id: str, cache_type: str | None = None) -> str:
        if cache_type:
            return f"{escape_glob(self.prefix)}{escape_glob(cache_type)}:user:{escape_glob(user_id)}:*"
        return f"{escape_glob(self.prefix)}*:user:{escape_glob(user_id)}:*"

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self.redis.get(key)
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as e:
            logger.warning("Cache read failed, treating as miss", key=key[:60], error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        try:
            payload = json.dumps(value, default=str)
            return bool(await self.redis.set_with_ttl(key, payload, ttl_seconds or self.default_ttl))
        except Exception as e:
            logger.warning("Cache write failed", key=key[:60], error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self.redis.delete(key))
        except Exception as e:
            logger.warning("Cache delete failed", key=key[:60], error=str(e))
            return False

    async def delete_pattern(self, pattern: str) -> int:
        try:
            return int(await self.redis.delete_pattern(pattern))
        except Exception as e:
            logger.warning("Cache pattern delete failed", pattern=pattern[:60], error=str(e))
            return 0

    async def invalidate_user_events(self, user_id: str) -> int:
        """Drop every cached event listing and single-event entry for a user."""
        deleted = 0
        for cache_type in EVENT_CACHE_TYPES:
            deleted += await self.delete_pattern(self.user_pattern(user_id, cache_type))
        logger.debug("Invalidated event cache", user_id=user_id, deleted=deleted)
        return deleted


# Global instance
cache_service = CacheService()
