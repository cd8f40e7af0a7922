"""
Click recorder.

Turns one enriched visit into durable state:

1. non-bot visits mark the visitor dedup window (atomic insert-if-absent)
2. one UPDATE bumps click_count, unique_visitors (when new) and last_clicked_at
3. the ClickEvent row is appended in the same transaction

Steps 2 and 3 run in a worker thread behind asyncio.shield, so a cancelled
caller cannot leave the transaction half applied. If that transaction then
fails, the window mark from step 1 is still released; settle() waits for it.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import List, Optional, Set, Tuple

import structlog
from sqlalchemy import case, literal, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from wordlink_app.database.connection import Database
from wordlink_app.database.types import UTCDateTime
from wordlink_app.exceptions import NotFound, RecordingFailure
from wordlink_app.models import ClickEvent, Link
from wordlink_app.observability import (
    CLICK_RECORD_LATENCY,
    CLICKS_RECORDED,
    UNIQUE_VISITORS_COUNTED,
)
from wordlink_app.schemas.click import RecordResult, VisitContext
from wordlink_app.window.strategies import VisitorWindowStrategy

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ClickRecorder:
    """Records visits against links. Safe to call concurrently."""

    def __init__(self, database: Database, window: VisitorWindowStrategy):
        self.database = database
        self.window = window
        # Transactions whose caller was cancelled while they ran
        self._detached: Set[asyncio.Future] = set()

    async def record(self, link_id: int, visit: VisitContext) -> RecordResult:
        """
        Record one visit.

        Raises:
            NotFound: unknown link id
            RecordingFailure: window or database unavailable
        """
        started = time.perf_counter()
        clicked_at = _as_utc(visit.clicked_at)

        is_new = False
        if not visit.is_bot:
            is_new = await self.window.mark(link_id, visit.visitor_id, clicked_at)

        transaction = asyncio.ensure_future(
            asyncio.to_thread(self._apply, link_id, visit, clicked_at, is_new)
        )
        try:
            event_id = await asyncio.shield(transaction)
        except asyncio.CancelledError:
            # The transaction still runs to completion; settle it when it does
            self._detach(transaction, link_id, visit, is_new, started)
            raise
        except NotFound:
            if is_new:
                await self.window.unmark(link_id, visit.visitor_id)
            raise
        except SQLAlchemyError as e:
            # Release the mark so a retry counts this visitor again
            if is_new:
                await self.window.unmark(link_id, visit.visitor_id)
            raise RecordingFailure(f"Could not record click for link {link_id}: {e}") from e

        self._recorded(link_id, event_id, visit, is_new, started)
        return RecordResult(event_id=event_id, link_id=link_id, is_unique=is_new)

    def _recorded(self, link_id: int, event_id: int, visit: VisitContext, is_new: bool, started: float):
        CLICKS_RECORDED.inc()
        if is_new:
            UNIQUE_VISITORS_COUNTED.inc()
        CLICK_RECORD_LATENCY.observe(time.perf_counter() - started)

        logger.debug("Click recorded", link_id=link_id, event_id=event_id,
                     unique=is_new, bot=visit.is_bot)

    def _detach(self, transaction: asyncio.Future, link_id: int, visit: VisitContext,
                is_new: bool, started: float):
        self._detached.add(transaction)

        def finished(future: asyncio.Future):
            self._detached.discard(future)
            if future.cancelled():
                return
            error = future.exception()
            if error is None:
                self._recorded(link_id, future.result(), visit, is_new, started)
                return
            logger.error("Click transaction failed after its caller was cancelled",
                         link_id=link_id, error=str(error))
            if is_new:
                release = asyncio.ensure_future(self.window.unmark(link_id, visit.visitor_id))
                self._detached.add(release)
                release.add_done_callback(self._detached.discard)

        transaction.add_done_callback(finished)

    async def settle(self) -> None:
        """Wait for transactions (and window releases) left running by cancelled callers."""
        while self._detached:
            await asyncio.gather(*list(self._detached), return_exceptions=True)

    def _apply(self, link_id: int, visit: VisitContext, clicked_at: datetime, is_new: bool) -> int:
        """Counter update + event insert in one transaction (runs in a thread)."""
        at = literal(clicked_at, UTCDateTime())

        with self.database.session_scope() as session:
            result = session.execute(
                update(Link)
                .where(Link.id == link_id)
                .values(
                    click_count=Link.click_count + 1,
                    unique_visitors=Link.unique_visitors + (1 if is_new else 0),
                    last_clicked_at=case(
                        (or_(Link.last_clicked_at.is_(None), Link.last_clicked_at < at), at),
                        else_=Link.last_clicked_at,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFound(f"Link {link_id}")

            event = ClickEvent(
                link_id=link_id,
                clicked_at=clicked_at,
                visitor_id=visit.visitor_id,
                country_code=visit.country_code,
                country_name=visit.country_name,
                city=visit.city,
                region=visit.region,
                device_type=visit.device_type,
                browser_name=visit.browser_name,
                os_name=visit.os_name,
                is_bot=visit.is_bot,
                referrer=visit.referrer,
                referrer_type=visit.referrer_type,
                referrer_source=visit.referrer_source,
                utm_source=visit.utm_source,
                utm_medium=visit.utm_medium,
                utm_campaign=visit.utm_campaign,
                utm_term=visit.utm_term,
                utm_content=visit.utm_content,
                response_time_ms=visit.response_time_ms,
            )
            session.add(event)
            session.flush()
            return event.id

    def recent_visits(self, now: Optional[datetime] = None) -> List[Tuple[int, str, datetime]]:
        """Non-bot (link_id, visitor_id, clicked_at) rows inside the dedup window, oldest first."""
        now = _as_utc(now or datetime.now(timezone.utc))
        since = now - self.window.ttl
        with self.database.session_scope() as session:
            rows = session.execute(
                select(ClickEvent.link_id, ClickEvent.visitor_id, ClickEvent.clicked_at)
                .where(ClickEvent.clicked_at > since, ClickEvent.is_bot.is_(False))
                .order_by(ClickEvent.clicked_at)
            ).all()
        return [(row.link_id, row.visitor_id, row.clicked_at) for row in rows]

    async def warm_window(self, now: Optional[datetime] = None) -> int:
        """Rebuild the dedup window from the event log (after a restart)."""
        try:
            entries = await asyncio.to_thread(self.recent_visits, now)
        except SQLAlchemyError as e:
            raise RecordingFailure(f"Could not load recent visits: {e}") from e
        count = await self.window.warm(entries)
        logger.info("Visitor window warmed", entries=count)
        return count
