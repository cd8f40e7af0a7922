"""
Visitor dedup window strategies using Strategy Pattern.

The window answers one question for the click recorder: has this visitor
already been counted as unique for this link within the trailing 24 hours?

- InMemory: dict + lock, for development, tests and single-process deployments
- Redis: SET NX EX, shared by every worker process

The window is not authoritative. If it is lost, warm() rebuilds it from the
last 24 hours of non-bot click events.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional, Tuple
import threading

import structlog

from wordlink_app.exceptions import RecordingFailure

logger = structlog.get_logger(__name__)

WindowKey = Tuple[int, str]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class VisitorWindowStrategy(ABC):
    """
    Time-windowed set of (link_id, visitor_id).

    mark() is the only write the recorder relies on for correctness: it is an
    atomic insert-if-absent, so two concurrent first clicks from one visitor
    cannot both come back as new.
    """

    def __init__(self, ttl_seconds: int = 86400):
        self.ttl = timedelta(seconds=ttl_seconds)

    @abstractmethod
    async def seen(self, link_id: int, visitor_id: str, at: Optional[datetime] = None) -> bool:
        """True if the visitor has a live entry for the link at time `at`."""
        pass

    @abstractmethod
    async def mark(self, link_id: int, visitor_id: str, at: Optional[datetime] = None) -> bool:
        """
        Insert or refresh the entry so it expires ttl after `at`.

        Returns:
            True if the visitor was absent (a new unique visitor), False otherwise
        """
        pass

    @abstractmethod
    async def unmark(self, link_id: int, visitor_id: str) -> None:
        """Drop an entry (compensation when the counter update failed)."""
        pass

    @abstractmethod
    async def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Remove expired entries; returns how many were dropped."""
        pass

    async def warm(self, entries: Iterable[Tuple[int, str, datetime]]) -> int:
        """
        Rebuild entries from (link_id, visitor_id, clicked_at) rows of the event log.

        Rows must be ordered by clicked_at so the latest click sets the expiry.
        """
        count = 0
        for link_id, visitor_id, clicked_at in entries:
            await self.mark(link_id, visitor_id, clicked_at)
            count += 1
        return count


class InMemoryVisitorWindow(VisitorWindowStrategy):
    """
    Dict of (link_id, visitor_id) -> expires_at behind a lock.

    Expired entries are evicted lazily when touched and in bulk by
    evict_expired(); an expired entry is always treated as absent.
    """

    def __init__(self, ttl_seconds: int = 86400):
        super().__init__(ttl_seconds)
        self._entries: Dict[WindowKey, datetime] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def seen(self, link_id: int, visitor_id: str, at: Optional[datetime] = None) -> bool:
        at = at or _now()
        with self._lock:
            expires_at = self._entries.get((link_id, visitor_id))
            return expires_at is not None and expires_at > at

    async def mark(self, link_id: int, visitor_id: str, at: Optional[datetime] = None) -> bool:
        at = at or _now()
        key = (link_id, visitor_id)
        with self._lock:
            expires_at = self._entries.get(key)
            is_new = expires_at is None or expires_at <= at
            new_expiry = at + self.ttl
            # Out-of-order clicks never shorten an entry
            if is_new or new_expiry > expires_at:
                self._entries[key] = new_expiry
            return is_new

    async def unmark(self, link_id: int, visitor_id: str) -> None:
        with self._lock:
            self._entries.pop((link_id, visitor_id), None)

    async def evict_expired(self, now: Optional[datetime] = None) -> int:
        now = now or _now()
        with self._lock:
            expired = [key for key, expires_at in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Evicted expired visitor window entries", count=len(expired))
        return len(expired)


class RedisVisitorWindow(VisitorWindowStrategy):
    """
    One Redis key per (link, visitor) with a TTL.

    SET NX EX is the atomic insert-if-absent; a present key gets its TTL
    extended with EXPIRE GT (Redis >= 7), so a late click never shortens it.
    Expiry runs on Redis' own clock; `at` only sets how much of the window
    is left for a click that happened in the past.
    Redis errors are raised as RecordingFailure so the click is retried
    rather than silently miscounted.
    """

    def __init__(self, redis_client, ttl_seconds: int = 86400, prefix: str = "visitor"):
        super().__init__(ttl_seconds)
        self.redis = redis_client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def _key(self, link_id: int, visitor_id: str) -> str:
        return f"{self.prefix}:{link_id}:{visitor_id}"

    def _remaining_seconds(self, at: Optional[datetime]) -> int:
        """TTL for entries rebuilt from past clicks: what is left of their window."""
        if at is None:
            return self.ttl_seconds
        remaining = int((at + self.ttl - _now()).total_seconds())
        return max(1, min(self.ttl_seconds, remaining))

    async def seen(self, link_id: int, visitor_id: str, at: Optional[datetime] = None) -> bool:
        try:
            return bool(self.redis.exists(self._key(link_id, visitor_id)))
        except Exception as e:
            raise RecordingFailure(f"Visitor window unavailable: {e}") from e

    async def mark(self, link_id: int, visitor_id: str, at: Optional[datetime] = None) -> bool:
        ttl = self._remaining_seconds(at)
        key = self._key(link_id, visitor_id)
        try:
            if self.redis.set(key, "1", nx=True, ex=ttl):
                return True
            self.redis.expire(key, ttl, gt=True)
            return False
        except Exception as e:
            raise RecordingFailure(f"Visitor window unavailable: {e}") from e

    async def unmark(self, link_id: int, visitor_id: str) -> None:
        try:
            self.redis.delete(self._key(link_id, visitor_id))
        except Exception as e:
            logger.error("Failed to release visitor window entry",
                         link_id=link_id, error=str(e))

    async def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Redis expires keys itself."""
        return 0
