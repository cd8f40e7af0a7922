"""
Redis connections shared by the cache, click queue and visitor window factories.

Connecting pings the server, so an unreachable Redis fails here and the
factory can fall back to its in-memory backend.
"""

import redis

from wordlink_app.config import settings

CONNECT_TIMEOUT_SECONDS = 2


def connect_redis(socket_timeout: float = 2) -> redis.Redis:
    """
    Open a client for settings.redis_url and ping it.

    Args:
        socket_timeout: read timeout; the queue needs more than its XREADGROUP block time

    Raises:
        redis.RedisError: server unreachable or refusing commands
    """
    client = redis.from_url(
        settings.redis_url,
        decode_responses=False,
        socket_connect_timeout=CONNECT_TIMEOUT_SECONDS,
        socket_timeout=socket_timeout,
    )
    client.ping()
    return client
