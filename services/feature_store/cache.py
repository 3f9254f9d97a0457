"""Read-through cache for online feature vectors."""

import json
import time
from collections import OrderedDict
from typing import Any

import redis.asyncio as redis
import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)


class FeatureCache:
    """Online vector cache with Redis and in-memory fallback.

    Entries are JSON documents keyed by entity type and id. A TTL of zero
    disables caching.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        default_ttl: int = 300,
        max_memory_size: int = 10000,
    ) -> None:
        self.redis_client: Redis | None = None
        self.default_ttl = default_ttl
        self.max_memory_size = max_memory_size
        self._memory_cache: OrderedDict[str, tuple[float, dict[str, Any]]] = (
            OrderedDict()
        )

        if redis_url:
            self.redis_client = redis.from_url(redis_url)
            logger.info("Redis cache initialized")

    @property
    def enabled(self) -> bool:
        return self.default_ttl > 0

    async def get_vector(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        """Get a cached vector document, or None on miss."""
        if not self.enabled:
            return None
        cache_key = self._vector_key(entity_type, entity_id)

        if self.redis_client:
            try:
                cached_data = await self.redis_client.get(cache_key)
                if cached_data:
                    return json.loads(cached_data)
                return None
            except RedisError as e:
                logger.warning("Redis get error", key=cache_key, error=str(e))

        return self._get_memory_cache(cache_key)

    async def set_vector(
        self,
        entity_type: str,
        entity_id: str,
        document: dict[str, Any],
        ttl: int | None = None,
    ) -> None:
        """Cache a vector document."""
        if not self.enabled:
            return
        cache_key = self._vector_key(entity_type, entity_id)
        ttl = ttl or self.default_ttl

        if self.redis_client:
            try:
                await self.redis_client.setex(
                    cache_key, ttl, json.dumps(document, default=str)
                )
                return
            except RedisError as e:
                logger.warning("Redis set error", key=cache_key, error=str(e))

        self._set_memory_cache(cache_key, document, ttl)

    async def invalidate_vector(self, entity_type: str, entity_id: str) -> None:
        """Drop the cached vector of one entity."""
        cache_key = self._vector_key(entity_type, entity_id)
        self._memory_cache.pop(cache_key, None)

        if self.redis_client:
            try:
                await self.redis_client.delete(cache_key)
            except RedisError as e:
                logger.warning("Redis invalidation error", key=cache_key, error=str(e))

    async def clear_all(self) -> None:
        """Clear all cached vectors."""
        self._memory_cache.clear()

        if self.redis_client:
            try:
                async for key in self.redis_client.scan_iter(match="online_vector:*"):
                    await self.redis_client.delete(key)
                logger.info("Cleared Redis cache")
            except RedisError as e:
                logger.warning("Redis clear error", error=str(e))

    async def health_check(self) -> dict[str, Any]:
        """Check cache health status."""
        status: dict[str, Any] = {
            "redis": {"available": False, "latency_ms": None},
            "memory": {"available": True, "size": len(self._memory_cache)},
        }

        if self.redis_client:
            try:
                start_time = time.perf_counter()
                await self.redis_client.ping()
                status["redis"]["available"] = True
                status["redis"]["latency_ms"] = round(
                    (time.perf_counter() - start_time) * 1000, 2
                )
            except RedisError as e:
                logger.warning("Redis health check failed", error=str(e))

        return status

    async def close(self) -> None:
        if self.redis_client:
            await self.redis_client.aclose()

    @staticmethod
    def _vector_key(entity_type: str, entity_id: str) -> str:
        return f"online_vector:{entity_type}:{entity_id}"

    def _get_memory_cache(self, key: str) -> dict[str, Any] | None:
        entry = self._memory_cache.get(key)
        if entry is None:
            return None

        expires_at, data = entry
        if time.monotonic() >= expires_at:
            del self._memory_cache[key]
            return None

        self._memory_cache.move_to_end(key)
        return data

    def _set_memory_cache(self, key: str, data: dict[str, Any], ttl: int) -> None:
        # LRU eviction when full
        if key not in self._memory_cache and len(self._memory_cache) >= self.max_memory_size:
            self._memory_cache.popitem(last=False)

        self._memory_cache[key] = (time.monotonic() + ttl, data)
        self._memory_cache.move_to_end(key)
