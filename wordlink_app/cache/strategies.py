"""
Cache strategies using Strategy Pattern.
Allows switching between different cache backends (Redis, In-Memory, Null).

The resolution store uses the cache for the hot redirect lookup
(cache-aside): values are JSON documents describing a resolved link.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, Tuple
import json
import threading
import time

import structlog

logger = structlog.get_logger(__name__)


class CacheStrategy(ABC):
    """
    Abstract base class for cache strategies.

    All methods are async because cache operations involve I/O (network for Redis).
    A cache failure is never fatal: callers fall back to the database.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get value from cache, None on miss."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int = 3600) -> bool:
        """
        Set value in cache with TTL (Time To Live).

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time to live in seconds (default: 1 hour)

        Returns:
            True if successful, False otherwise
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key from cache. True if it existed."""
        pass

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        """Get and decode a JSON document; undecodable entries count as a miss."""
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry", key=key)
            await self.delete(key)
            return None

    async def set_json(self, key: str, value: Dict[str, Any], ttl: int = 3600) -> bool:
        return await self.set(key, json.dumps(value, default=str), ttl=ttl)


class RedisCache(CacheStrategy):
    """
    Redis cache implementation.

    Shared between API processes, so a deactivation invalidates the
    redirect entry for every server at once.
    """

    def __init__(self, redis_client):
        """
        Args:
            redis_client: Redis client instance (redis.Redis)
        """
        self.redis = redis_client

    async def get(self, key: str) -> Optional[str]:
        try:
            value = self.redis.get(key)
            return value.decode('utf-8') if value else None
        except Exception as e:
            logger.warning("Redis cache get failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: str, ttl: int = 3600) -> bool:
        try:
            return bool(self.redis.setex(key, ttl, value))
        except Exception as e:
            logger.warning("Redis cache set failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        try:
            return bool(self.redis.delete(key))
        except Exception as e:
            logger.warning("Redis cache delete failed", key=key, error=str(e))
            return False


class InMemoryCache(CacheStrategy):
    """
    In-memory cache implementation using a dict of (value, expires_at).

    Per-process only; TTLs are enforced lazily on read.
    Used in development/testing environments.
    """

    def __init__(self, clock=time.monotonic):
        self._cache: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._cache[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    async def set(self, key: str, value: str, ttl: int = 3600) -> bool:
        with self._lock:
            self._cache[key] = (value, self._clock() + ttl)
        return True

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None


class NullCache(CacheStrategy):
    """
    Null Object Pattern - cache that does nothing.

    Every lookup goes to the database. Used in tests and when caching is disabled.
    """

    async def get(self, key: str) -> Optional[str]:
        return None

    async def set(self, key: str, value: str, ttl: int = 3600) -> bool:
        return True

    async def delete(self, key: str) -> bool:
        return True
