"""
Factory for the visitor dedup window.
Singleton per process; Redis falls back to in-memory when unreachable.
"""

from enum import Enum

import structlog
from redis.exceptions import RedisError

from .strategies import VisitorWindowStrategy, InMemoryVisitorWindow, RedisVisitorWindow
from wordlink_app.config import settings
from wordlink_app.redis_client import connect_redis

logger = structlog.get_logger(__name__)


class WindowBackend(Enum):
    """Available visitor window backends"""
    REDIS = "redis"
    MEMORY = "memory"


class VisitorWindowFactory:
    """
    Builds the window named by settings.window_backend once and reuses it.

    Falling back to memory keeps redirects counted, but each process then
    dedups on its own; the warning says so.
    """

    _instance: VisitorWindowStrategy = None

    @classmethod
    def create(cls, backend: WindowBackend) -> VisitorWindowStrategy:
        if cls._instance is not None:
            return cls._instance

        ttl_seconds = settings.window_ttl_seconds

        if backend == WindowBackend.REDIS:
            try:
                cls._instance = RedisVisitorWindow(connect_redis(), ttl_seconds=ttl_seconds)
                logger.info("Redis visitor window initialized")
            except (RedisError, ValueError) as e:
                logger.warning("Redis connection failed, falling back to per-process visitor window",
                               error=str(e))
                cls._instance = InMemoryVisitorWindow(ttl_seconds=ttl_seconds)

        elif backend == WindowBackend.MEMORY:
            cls._instance = InMemoryVisitorWindow(ttl_seconds=ttl_seconds)
            logger.info("In-memory visitor window initialized")

        else:
            raise ValueError(f"Unknown visitor window backend: {backend}")

        return cls._instance

    @classmethod
    def clear_instance(cls):
        """Forget the cached instance (tests)"""
        cls._instance = None
