"""
Queue strategies using Strategy Pattern.
Allows switching between different queue backends (Redis Streams, In-Memory).

Both backends are bounded: a full queue rejects the publish instead of growing
without limit, and the redirect counts the click as dropped.
"""

from abc import ABC, abstractmethod
from typing import List, Dict
import asyncio
import socket
from collections import deque

import structlog

from .models import ClickMessage
from wordlink_app.observability import CLICKS_DROPPED

logger = structlog.get_logger(__name__)


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class QueueStrategy(ABC):
    """
    Abstract base class for queue strategies.

    This is the Strategy Pattern interface - allows multiple queue implementations
    without changing the redirect route or the worker code.
    """

    @abstractmethod
    async def publish(self, queue_name: str, message: ClickMessage) -> bool:
        """
        Publish a message to the queue.

        Returns:
            True if accepted, False if the queue is full or unavailable
        """
        pass

    @abstractmethod
    async def consume(
        self,
        queue_name: str,
        batch_size: int = 1,
        block_time: int = 1000
    ) -> List[ClickMessage]:
        """
        Consume messages from the queue.

        Args:
            queue_name: Name of the queue
            batch_size: Maximum number of messages to retrieve
            block_time: Time to wait for messages (milliseconds)
        """
        pass

    @abstractmethod
    async def ack(self, queue_name: str, message_ids: List[str]) -> bool:
        """Acknowledge messages (mark as processed)."""
        pass

    @abstractmethod
    async def get_queue_length(self, queue_name: str) -> int:
        pass

    async def reclaim(self, queue_name: str, batch_size: int = 100) -> List[ClickMessage]:
        """
        Take back messages another consumer received but never acknowledged.

        Backends that remove messages on consume have nothing to reclaim.
        """
        return []

    async def consume_batch(self, queue_name: str, batch_size: int = 100, block_time: int = 1000) -> List[ClickMessage]:
        """Consume a batch of messages (alias for consume with larger default batch size)."""
        return await self.consume(queue_name, batch_size, block_time)


class RedisStreamQueue(QueueStrategy):
    """
    Redis Streams implementation for the click queue.

    1. Redirect checks XLEN against max_length, then XADDs (no MAXLEN trim,
       which would silently discard clicks nobody has read yet)
    2. Worker reads with XREADGROUP
    3. Worker acknowledges with XACK and deletes the entry with XDEL, so XLEN
       only counts clicks that are still unread or unacknowledged
    4. Entries a crashed worker left pending are claimed back with XCLAIM;
       after max_deliveries attempts they are dropped and counted

    The length check and XADD are two commands, so concurrent redirects can
    overshoot max_length by a few entries.
    """

    def __init__(
        self,
        redis_client,
        consumer_group: str = "click_workers",
        max_length: int = 100_000,
        max_deliveries: int = 5,
        reclaim_idle_ms: int = 60_000,
    ):
        """
        Args:
            redis_client: Redis client instance
            consumer_group: Name of consumer group for workers
            max_length: Upper bound on unprocessed entries
            max_deliveries: Deliveries after which a pending entry is dropped
            reclaim_idle_ms: How long an entry must sit unacknowledged before it is reclaimed
        """
        self.redis = redis_client
        self.consumer_group = consumer_group
        self.max_length = max_length
        self.max_deliveries = max_deliveries
        self.reclaim_idle_ms = reclaim_idle_ms
        self.consumer_name = f"worker-{socket.gethostname()}-{id(self)}"
        self._initialized_streams = set()

    async def _ensure_stream_exists(self, queue_name: str):
        """Create stream and consumer group if missing."""
        if queue_name in self._initialized_streams:
            return

        try:
            self.redis.xgroup_create(
                name=queue_name,
                groupname=self.consumer_group,
                id='0',
                mkstream=True
            )
            logger.info("Created Redis stream", stream=queue_name)
        except Exception as e:
            # Group might already exist, that's OK
            if "BUSYGROUP" not in str(e):
                logger.warning("Stream creation warning", stream=queue_name, error=str(e))

        self._initialized_streams.add(queue_name)

    async def publish(self, queue_name: str, message: ClickMessage) -> bool:
        try:
            await self._ensure_stream_exists(queue_name)
            if self.redis.xlen(queue_name) >= self.max_length:
                logger.warning("Click stream full, rejecting message",
                               stream=queue_name, max_length=self.max_length)
                return False
            self.redis.xadd(queue_name, {'data': message.model_dump_json()})
            return True

        except Exception as e:
            logger.error("Redis publish failed", stream=queue_name, error=str(e))
            return False

    def _discard(self, queue_name: str, message_ids: List[str], reason: str):
        """Acknowledge and delete entries that will never be recorded."""
        self.redis.xack(queue_name, self.consumer_group, *message_ids)
        self.redis.xdel(queue_name, *message_ids)
        CLICKS_DROPPED.labels(reason=reason).inc(len(message_ids))

    def _decode(self, queue_name: str, entries) -> List[ClickMessage]:
        events = []
        for message_id, message_data in entries:
            message_id = _text(message_id)
            try:
                event = ClickMessage.model_validate_json(message_data[b'data'])
                event.message_id = message_id
                events.append(event)
            except Exception as e:
                # Poison message: drop it so it is not redelivered forever
                logger.error("Discarding unparsable click message",
                             message_id=message_id, error=str(e))
                self._discard(queue_name, [message_id], "unparsable")
        return events

    async def consume(
        self,
        queue_name: str,
        batch_size: int = 1,
        block_time: int = 1000
    ) -> List[ClickMessage]:
        try:
            await self._ensure_stream_exists(queue_name)

            # '>' means "messages never delivered to other consumers"
            messages = self.redis.xreadgroup(
                groupname=self.consumer_group,
                consumername=self.consumer_name,
                streams={queue_name: '>'},
                count=batch_size,
                block=block_time or None  # 0 would block forever
            )

            events = []
            for _stream_name, stream_messages in messages or []:
                events.extend(self._decode(queue_name, stream_messages))
            return events

        except Exception as e:
            logger.error("Redis consume failed", stream=queue_name, error=str(e))
            return []

    async def reclaim(self, queue_name: str, batch_size: int = 100) -> List[ClickMessage]:
        try:
            await self._ensure_stream_exists(queue_name)
            pending = self.redis.xpending_range(
                queue_name,
                self.consumer_group,
                min='-',
                max='+',
                count=batch_size,
                idle=self.reclaim_idle_ms,
            )
            if not pending:
                return []

            exhausted = [_text(entry['message_id']) for entry in pending
                         if entry['times_delivered'] >= self.max_deliveries]
            retry = [_text(entry['message_id']) for entry in pending
                     if entry['times_delivered'] < self.max_deliveries]

            if exhausted:
                logger.error("Dropping click messages delivered too often",
                             stream=queue_name, count=len(exhausted),
                             max_deliveries=self.max_deliveries)
                self._discard(queue_name, exhausted, "redelivery_exhausted")

            if not retry:
                return []

            claimed = self.redis.xclaim(
                queue_name,
                self.consumer_group,
                self.consumer_name,
                min_idle_time=self.reclaim_idle_ms,
                message_ids=retry,
            )
            # An entry deleted from the stream comes back without fields
            missing = [_text(message_id) for message_id, data in claimed if not data]
            if missing:
                self._discard(queue_name, missing, "unparsable")
            events = self._decode(queue_name, [(message_id, data) for message_id, data in claimed if data])
            if events:
                logger.warning("Reclaimed pending click messages", stream=queue_name, count=len(events))
            return events

        except Exception as e:
            logger.error("Redis reclaim failed", stream=queue_name, error=str(e))
            return []

    async def ack(self, queue_name: str, message_ids: List[str]) -> bool:
        try:
            if not message_ids:
                return True
            self.redis.xack(queue_name, self.consumer_group, *message_ids)
            self.redis.xdel(queue_name, *message_ids)
            return True

        except Exception as e:
            logger.error("Redis ack failed", stream=queue_name, error=str(e))
            return False

    async def get_queue_length(self, queue_name: str) -> int:
        """Entries not yet acknowledged (unread plus pending)"""
        try:
            return self.redis.xlen(queue_name)
        except Exception:
            return 0


class InMemoryQueue(QueueStrategy):
    """
    In-memory bounded queue using Python deque.

    Not persistent and per-process; used in development/testing and when the
    worker runs embedded in the API process.
    """

    def __init__(self, max_length: int = 100_000):
        self.max_length = max_length
        self._queues: Dict[str, deque] = {}

    def _get_queue(self, queue_name: str) -> deque:
        if queue_name not in self._queues:
            self._queues[queue_name] = deque()
        return self._queues[queue_name]

    async def publish(self, queue_name: str, message: ClickMessage) -> bool:
        queue = self._get_queue(queue_name)
        if len(queue) >= self.max_length:
            logger.warning("Click queue full, rejecting message",
                           queue=queue_name, max_length=self.max_length)
            return False
        queue.append(message)
        return True

    async def consume(
        self,
        queue_name: str,
        batch_size: int = 1,
        block_time: int = 1000
    ) -> List[ClickMessage]:
        """
        Pop up to batch_size messages; when empty, wait block_time before
        returning so a polling worker does not spin.
        """
        queue = self._get_queue(queue_name)
        if not queue:
            await asyncio.sleep(block_time / 1000)
            return []

        messages = []
        while queue and len(messages) < batch_size:
            messages.append(queue.popleft())
        return messages

    async def ack(self, queue_name: str, message_ids: List[str]) -> bool:
        """Messages are removed on consume; nothing to acknowledge."""
        return True

    async def get_queue_length(self, queue_name: str) -> int:
        return len(self._get_queue(queue_name))
