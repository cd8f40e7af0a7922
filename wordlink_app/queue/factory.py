"""
Factory for the click queue.
Singleton per process; Redis Streams falls back to in-memory when unreachable.
"""

from enum import Enum

import structlog
from redis.exceptions import RedisError

from .strategies import QueueStrategy, RedisStreamQueue, InMemoryQueue
from wordlink_app.config import settings
from wordlink_app.redis_client import connect_redis

logger = structlog.get_logger(__name__)


class QueueBackend(Enum):
    """Available queue backends"""
    REDIS_STREAMS = "redis_streams"
    MEMORY = "memory"


class QueueFactory:
    """Builds the queue named by settings.queue_backend once and reuses it."""

    _instance: QueueStrategy = None

    @classmethod
    def create(cls, backend: QueueBackend) -> QueueStrategy:
        if cls._instance is not None:
            return cls._instance

        if backend == QueueBackend.REDIS_STREAMS:
            try:
                # Reads block for queue_block_ms, the socket must outlast that
                redis_client = connect_redis(socket_timeout=settings.queue_block_ms / 1000 + 4)
                cls._instance = RedisStreamQueue(
                    redis_client,
                    settings.queue_consumer_group,
                    max_length=settings.queue_max_length,
                    max_deliveries=settings.queue_max_deliveries,
                    reclaim_idle_ms=settings.queue_reclaim_idle_ms,
                )
                logger.info("Redis click queue initialized", stream=settings.queue_name)
            except (RedisError, ValueError) as e:
                logger.warning("Redis connection failed, falling back to in-memory queue",
                               error=str(e))
                cls._instance = InMemoryQueue(max_length=settings.queue_max_length)

        elif backend == QueueBackend.MEMORY:
            cls._instance = InMemoryQueue(max_length=settings.queue_max_length)
            logger.info("In-memory click queue initialized")

        else:
            raise ValueError(f"Unknown queue backend: {backend}")

        return cls._instance

    @classmethod
    def clear_instance(cls):
        """Forget the cached instance (tests)"""
        cls._instance = None
