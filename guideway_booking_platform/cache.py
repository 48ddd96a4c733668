"""
Redis caching layer for derived read models.

The cache is best effort: every operation degrades to a miss when Redis is
not configured or unreachable, and nothing that guards money or booking state
depends on it.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from .config import Settings, get_settings

logger = logging.getLogger(__name__)


class CacheKeyBuilder:
    """Helper class for building consistent cache keys."""

    @staticmethod
    def guide_earnings(guide_id: str, months: int) -> str:
        return f"earnings:guide:{guide_id}:{months}"

    @staticmethod
    def guide_review_summary(guide_id: str) -> str:
        return f"reviews:summary:guide:{guide_id}"

    @staticmethod
    def webhook_event(event_id: str) -> str:
        """Marker for a gateway webhook event that was already applied."""
        return f"webhook:event:{event_id}"


class CacheTTL:
    """Cache TTL constants (in seconds)."""

    GUIDE_EARNINGS = 300  # 5 minutes
    REVIEW_SUMMARY = 600  # 10 minutes
    WEBHOOK_EVENT = 3 * 24 * 3600  # gateway retries for up to three days


class RedisCache:
    """Redis cache manager with connection handling and operations."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.client: Optional[Redis] = None
        self.pool: Optional[redis.ConnectionPool] = None

    async def initialize(self) -> None:
        """Initialize Redis connection pool and client.

        A failed ping leaves the cache disabled instead of aborting startup.
        """
        if not self.settings.cache_enabled:
            logger.info("Redis cache disabled by configuration")
            return

        self.pool = redis.ConnectionPool.from_url(
            self.settings.redis_url,
            max_connections=self.settings.redis_max_connections,
            retry_on_timeout=True,
            health_check_interval=30
        )
        self.client = Redis(connection_pool=self.pool)

        try:
            await self.client.ping()
            logger.info("Redis cache initialized successfully")
        except RedisError as e:
            logger.warning("Redis unavailable, continuing without cache: %s", e)
            await self.close()

    async def close(self) -> None:
        """Close Redis connections."""
        if self.client:
            await self.client.aclose()
            self.client = None
        if self.pool:
            await self.pool.disconnect()
            self.pool = None
        logger.info("Redis cache connections closed")

    @property
    def available(self) -> bool:
        return self.client is not None

    async def get(self, key: str) -> Optional[Any]:
        """Get a JSON value from cache, or None on miss or error."""
        if not self.client:
            return None

        try:
            value = await self.client.get(key)
            if value:
                return json.loads(value)
            return None
        except (RedisError, ValueError) as e:
            logger.warning("Failed to get cache key %s: %s", key, e)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Store a JSON-serialisable value."""
        if not self.client:
            return False

        try:
            serialized_value = json.dumps(value, default=str)
            if ttl:
                await self.client.setex(key, ttl, serialized_value)
            else:
                await self.client.set(key, serialized_value)
            return True
        except (RedisError, TypeError) as e:
            logger.warning("Failed to set cache key %s: %s", key, e)
            return False

    async def exists(self, key: str) -> bool:
        if not self.client:
            return False

        try:
            return bool(await self.client.exists(key))
        except RedisError as e:
            logger.warning(f"Failed to check existence of key {key}: {e}")
            return False

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching a pattern.

        Args:
            pattern: Pattern to match (e.g., "earnings:guide:<id>:*")

        Returns:
            Number of keys deleted
        """
        if not self.client:
            return 0

        try:
            keys = [key async for key in self.client.scan_iter(match=pattern)]
            if keys:
                await self.client.delete(*keys)
            return len(keys)
        except RedisError as e:
            logger.warning(f"Failed to delete keys with pattern {pattern}: {e}")
            return 0


class CacheInvalidator:
    """Invalidation helpers keyed by the entities a write touched."""

    def __init__(self, cache: Optional[RedisCache]):
        self.cache = cache

    async def guide_earnings(self, guide_id) -> None:
        if self.cache is None:
            return
        await self.cache.delete_pattern(f"earnings:guide:{guide_id}:*")

    async def guide_reviews(self, guide_id) -> None:
        if self.cache is None:
            return
        await self.cache.delete_pattern(CacheKeyBuilder.guide_review_summary(str(guide_id)))
