"""
Click Worker

Consumes click messages from the queue, enriches them and hands them to the
click recorder.

Architecture:
- Consumes messages from the queue in batches
- Records each click with bounded retry (linear backoff)
- Drops a click after the retry limit, with an error log and a metric
- Acknowledges a message once it is recorded or dropped
- Claims back messages a crashed worker left unacknowledged

Runs inside the API process (lifespan task) or standalone:

    python -m wordlink_app.hit_processor.click_worker
"""

import asyncio
import signal
import sys
import time
from typing import List, Optional

import structlog

from wordlink_app.config import settings
from wordlink_app.exceptions import NotFound, RecordingFailure
from wordlink_app.observability import CLICK_RECORD_RETRIES, CLICKS_DROPPED
from wordlink_app.queue.models import ClickMessage
from wordlink_app.queue.strategies import QueueStrategy
from wordlink_app.services.click_recorder import ClickRecorder
from wordlink_app.services.enrichment import DefaultVisitEnricher, VisitEnricher

logger = structlog.get_logger(__name__)

EVICT_INTERVAL_SECONDS = 300


class ClickWorker:
    """
    Queue consumer for the click recorder.

    A failed record never blocks the queue: after record_max_attempts the
    click is dropped and counted in wordlink_clicks_dropped_total.
    """

    def __init__(
        self,
        queue: QueueStrategy,
        recorder: ClickRecorder,
        enricher: Optional[VisitEnricher] = None,
        queue_name: Optional[str] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        block_ms: Optional[int] = None,
        reclaim_interval: Optional[float] = None,
    ):
        self.queue = queue
        self.recorder = recorder
        self.enricher = enricher or DefaultVisitEnricher()
        self.queue_name = queue_name or settings.queue_name
        self.batch_size = batch_size or settings.queue_batch_size
        self.max_attempts = max(1, max_attempts or settings.record_max_attempts)
        self.retry_backoff = settings.record_retry_backoff if retry_backoff is None else retry_backoff
        self.block_ms = block_ms or settings.queue_block_ms
        self.reclaim_interval = (settings.queue_reclaim_idle_ms / 1000
                                 if reclaim_interval is None else reclaim_interval)

        self.running = False
        self.recorded_count = 0
        self.dropped_count = 0
        self._last_evict = time.monotonic()
        self._last_reclaim: Optional[float] = None  # first pass reclaims at once

    async def start(self, warm: bool = False):
        """Run until stop() is called."""
        self.running = True
        logger.info("Click worker started", queue=self.queue_name,
                    batch_size=self.batch_size, max_attempts=self.max_attempts)

        if warm:
            try:
                await self.recorder.warm_window()
            except RecordingFailure as e:
                # Dedup may over-count until the window refills
                logger.error("Visitor window warm-up failed", error=str(e))

        while self.running:
            try:
                messages = await self.queue.consume_batch(
                    queue_name=self.queue_name,
                    batch_size=self.batch_size,
                    block_time=self.block_ms,
                )
                if messages:
                    await self.process_batch(messages)
                await self._housekeeping()

            except asyncio.CancelledError:
                logger.info("Click worker task cancelled")
                break
            except Exception as e:
                logger.exception("Click worker loop error", error=str(e))
                await asyncio.sleep(1)

        self.running = False
        logger.info("Click worker stopped", recorded=self.recorded_count, dropped=self.dropped_count)

    def stop(self):
        """Stop after the current batch."""
        self.running = False

    async def process_batch(self, messages: List[ClickMessage]) -> int:
        """Record every message, then ack the batch. Returns how many were recorded."""
        recorded = 0
        for message in messages:
            if await self.handle(message):
                recorded += 1

        message_ids = [msg.message_id for msg in messages if msg.message_id]
        if message_ids:
            await self.queue.ack(self.queue_name, message_ids)

        if recorded:
            logger.debug("Processed click batch", size=len(messages), recorded=recorded)
        return recorded

    async def handle(self, message: ClickMessage) -> bool:
        """Enrich and record one click. True if recorded, False if dropped."""
        visit = self.enricher.enrich(message)

        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.recorder.record(message.link_id, visit)
                self.recorded_count += 1
                return True

            except NotFound:
                self._drop(message, "link_missing")
                return False

            except RecordingFailure as e:
                if attempt >= self.max_attempts:
                    logger.error("Dropping click after retries", link_id=message.link_id,
                                 attempts=attempt, error=str(e))
                    self._drop(message, "retries_exhausted")
                    return False

                CLICK_RECORD_RETRIES.inc()
                logger.warning("Click record failed, retrying", link_id=message.link_id,
                               attempt=attempt, error=str(e))
                await asyncio.sleep(self.retry_backoff * attempt)

        return False

    def _drop(self, message: ClickMessage, reason: str):
        self.dropped_count += 1
        CLICKS_DROPPED.labels(reason=reason).inc()
        if reason == "link_missing":
            logger.warning("Dropping click for unknown link", link_id=message.link_id)

    async def reclaim_pending(self) -> int:
        """Record messages a crashed consumer left unacknowledged. Returns how many were recorded."""
        messages = await self.queue.reclaim(self.queue_name, self.batch_size)
        if not messages:
            return 0
        return await self.process_batch(messages)

    async def drain(self) -> int:
        """
        Process whatever is queued right now, without blocking on an empty queue,
        then wait for transactions that outlived a cancelled record call.
        """
        total = 0
        while await self.queue.get_queue_length(self.queue_name) > 0:
            messages = await self.queue.consume_batch(
                queue_name=self.queue_name,
                batch_size=self.batch_size,
                block_time=0,
            )
            if not messages:
                break
            total += await self.process_batch(messages)
        await self.recorder.settle()
        return total

    async def _housekeeping(self):
        now = time.monotonic()
        if now - self._last_evict >= EVICT_INTERVAL_SECONDS:
            self._last_evict = now
            await self.recorder.window.evict_expired()
        if self._last_reclaim is None or now - self._last_reclaim >= self.reclaim_interval:
            self._last_reclaim = now
            await self.reclaim_pending()


def build_worker() -> ClickWorker:
    """Wire a worker from settings (same singletons the API uses)."""
    from wordlink_app.dependencies import get_queue, get_recorder
    return ClickWorker(queue=get_queue(), recorder=get_recorder())


async def main():
    """
    Standalone entry point.

    Usage:
        python -m wordlink_app.hit_processor.click_worker
    """
    from wordlink_app.database.connection import get_database
    from wordlink_app.observability import configure_logging

    configure_logging()
    logger.info("Starting click worker", environment=settings.environment,
                queue_backend=settings.queue_backend, window_backend=settings.window_backend)

    get_database().create_all()
    worker = build_worker()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, worker.stop)

    try:
        await worker.start(warm=settings.window_warm_on_start)
    except Exception as e:
        logger.exception("Click worker crashed", error=str(e))
        sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
