"""
Factory for the resolution cache.
Singleton per process; Redis falls back to in-memory when unreachable.
"""

from enum import Enum

import structlog
from redis.exceptions import RedisError

from .strategies import CacheStrategy, RedisCache, InMemoryCache, NullCache
from wordlink_app.redis_client import connect_redis

logger = structlog.get_logger(__name__)


class CacheBackend(Enum):
    """Available cache backends"""
    REDIS = "redis"
    MEMORY = "memory"
    NULL = "null"


class CacheFactory:
    """Builds the cache named by settings.cache_backend once and reuses it."""

    _instance: CacheStrategy = None

    @classmethod
    def create(cls, backend: CacheBackend) -> CacheStrategy:
        if cls._instance is not None:
            return cls._instance

        if backend == CacheBackend.REDIS:
            try:
                cls._instance = RedisCache(connect_redis())
                logger.info("Redis cache initialized")
            except (RedisError, ValueError) as e:
                logger.warning("Redis connection failed, falling back to in-memory cache",
                               error=str(e))
                cls._instance = InMemoryCache()

        elif backend == CacheBackend.MEMORY:
            cls._instance = InMemoryCache()
            logger.info("In-memory cache initialized")

        elif backend == CacheBackend.NULL:
            cls._instance = NullCache()
            logger.info("Null cache initialized")

        else:
            raise ValueError(f"Unknown cache backend: {backend}")

        return cls._instance

    @classmethod
    def clear_instance(cls):
        """Forget the cached instance (tests)"""
        cls._instance = None
