import asyncio
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from wordlink_app.exceptions import NotFound, RecordingFailure
from wordlink_app.models import ClickEvent, Link, make_path_key
from wordlink_app.services.click_recorder import ClickRecorder

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def link_id(db_session):
    link = Link(
        keywords=["launch"],
        path_key=make_path_key(None, ["launch"]),
        destination_url="https://example.com/launch",
        click_count=0,
        unique_visitors=0,
    )
    db_session.add(link)
    db_session.commit()
    return link.id


def load_link(database, link_id):
    with database.session_scope() as session:
        return session.get(Link, link_id)


def load_events(database, link_id):
    with database.session_scope() as session:
        return list(session.execute(
            select(ClickEvent).where(ClickEvent.link_id == link_id).order_by(ClickEvent.id)
        ).scalars())


class TestCounters:
    """click_count / unique_visitors / last_clicked_at"""

    def test_first_click(self, recorder, database, link_id, make_visit):
        result = asyncio.run(recorder.record(link_id, make_visit("a", T0)))

        assert result.is_unique is True
        link = load_link(database, link_id)
        assert link.click_count == 1
        assert link.unique_visitors == 1
        assert link.last_clicked_at == T0

    def test_launch_example(self, recorder, database, link_id, make_visit):
        """Visitor A twice within an hour, visitor B once"""
        asyncio.run(recorder.record(link_id, make_visit("a", T0)))
        asyncio.run(recorder.record(link_id, make_visit("a", T0 + timedelta(minutes=40))))
        asyncio.run(recorder.record(link_id, make_visit("b", T0 + timedelta(minutes=50))))

        link = load_link(database, link_id)
        assert link.click_count == 3
        assert link.unique_visitors == 2
        assert len(load_events(database, link_id)) == 3

    def test_same_visitor_more_than_24h_apart_counts_twice(self, recorder, database, link_id, make_visit):
        asyncio.run(recorder.record(link_id, make_visit("a", T0)))
        second = asyncio.run(recorder.record(link_id, make_visit("a", T0 + timedelta(hours=25))))

        assert second.is_unique is True
        assert load_link(database, link_id).unique_visitors == 2

    def test_window_slides_with_each_visit(self, recorder, database, link_id, make_visit):
        # No midnight reset: every visit pushes the window out again
        asyncio.run(recorder.record(link_id, make_visit("a", T0)))
        asyncio.run(recorder.record(link_id, make_visit("a", T0 + timedelta(hours=20))))
        third = asyncio.run(recorder.record(link_id, make_visit("a", T0 + timedelta(hours=30))))

        assert third.is_unique is False
        assert load_link(database, link_id).unique_visitors == 1

    def test_bot_click_counts_click_not_visitor(self, recorder, database, window, link_id, make_visit):
        result = asyncio.run(recorder.record(link_id, make_visit("crawler", T0, is_bot=True)))

        assert result.is_unique is False
        link = load_link(database, link_id)
        assert link.click_count == 1
        assert link.unique_visitors == 0
        events = load_events(database, link_id)
        assert len(events) == 1 and events[0].is_bot is True
        assert asyncio.run(window.seen(link_id, "crawler", T0)) is False

    def test_last_clicked_at_never_moves_backwards(self, recorder, database, link_id, make_visit):
        asyncio.run(recorder.record(link_id, make_visit("a", T0 + timedelta(hours=2))))
        asyncio.run(recorder.record(link_id, make_visit("b", T0)))

        assert load_link(database, link_id).last_clicked_at == T0 + timedelta(hours=2)

    def test_event_fields_persisted(self, recorder, database, link_id, make_visit):
        visit = make_visit(
            "a", T0,
            country_code="DE", city="Berlin", device_type="mobile",
            referrer="https://www.google.com/search?q=x", utm_source="newsletter",
            response_time_ms=4,
        )
        asyncio.run(recorder.record(link_id, visit))

        event = load_events(database, link_id)[0]
        assert event.visitor_id == "a"
        assert event.clicked_at == T0
        assert event.country_code == "DE"
        assert event.city == "Berlin"
        assert event.referrer_type == "search"
        assert event.utm_source == "newsletter"
        assert event.response_time_ms == 4


class TestConcurrency:
    """Many clicks at once"""

    def test_concurrent_first_clicks_from_one_visitor(self, recorder, database, link_id, make_visit):
        n = 10

        async def burst():
            return await asyncio.gather(*[
                recorder.record(link_id, make_visit("a", T0 + timedelta(seconds=i)))
                for i in range(n)
            ])

        results = asyncio.run(burst())

        assert sum(1 for r in results if r.is_unique) == 1
        link = load_link(database, link_id)
        assert link.click_count == n
        assert link.unique_visitors == 1
        assert len(load_events(database, link_id)) == n

    def test_concurrent_distinct_visitors(self, recorder, database, link_id, make_visit):
        async def burst():
            await asyncio.gather(*[
                recorder.record(link_id, make_visit(f"v{i}", T0)) for i in range(8)
            ])

        asyncio.run(burst())

        link = load_link(database, link_id)
        assert link.click_count == 8
        assert link.unique_visitors == 8


class TestFailures:
    """Errors raised by the recorder"""

    def test_unknown_link(self, recorder, window, make_visit):
        with pytest.raises(NotFound):
            asyncio.run(recorder.record(9999, make_visit("a", T0)))
        # The mark was released
        assert asyncio.run(window.seen(9999, "a", T0)) is False

    def test_database_error_releases_window_mark(self, recorder, window, link_id, make_visit):
        recorder._apply = MagicMock(side_effect=OperationalError("UPDATE links", {}, Exception("db down")))

        with pytest.raises(RecordingFailure):
            asyncio.run(recorder.record(link_id, make_visit("a", T0)))

        assert asyncio.run(window.seen(link_id, "a", T0)) is False

    def test_retry_after_failure_counts_visitor_once(self, recorder, database, link_id, make_visit):
        real_apply = recorder._apply
        recorder._apply = MagicMock(side_effect=OperationalError("UPDATE links", {}, Exception("db down")))
        with pytest.raises(RecordingFailure):
            asyncio.run(recorder.record(link_id, make_visit("a", T0)))

        recorder._apply = real_apply
        result = asyncio.run(recorder.record(link_id, make_visit("a", T0)))

        assert result.is_unique is True
        link = load_link(database, link_id)
        assert link.click_count == 1
        assert link.unique_visitors == 1


class TestWarmWindow:
    def test_rebuilds_from_recent_non_bot_events(self, recorder, database, link_id, make_visit):
        now = datetime.now(timezone.utc)
        asyncio.run(recorder.record(link_id, make_visit("recent", now - timedelta(hours=2))))
        asyncio.run(recorder.record(link_id, make_visit("old", now - timedelta(hours=30))))
        asyncio.run(recorder.record(link_id, make_visit("bot", now - timedelta(hours=1), is_bot=True)))

        from wordlink_app.window.strategies import InMemoryVisitorWindow

        fresh = ClickRecorder(database=database, window=InMemoryVisitorWindow())
        assert asyncio.run(fresh.warm_window(now)) == 1

        assert asyncio.run(fresh.window.seen(link_id, "recent", now)) is True
        assert asyncio.run(fresh.window.seen(link_id, "old", now)) is False
        assert asyncio.run(fresh.window.seen(link_id, "bot", now)) is False


class GatedRecorder(ClickRecorder):
    """Holds every transaction inside its worker thread until the gate opens."""

    def __init__(self, database, window, error=None):
        super().__init__(database=database, window=window)
        self.entered = threading.Event()
        self.gate = threading.Event()
        self.error = error

    def _apply(self, *args):
        self.entered.set()
        self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return super()._apply(*args)


def cancel_mid_transaction(recorder, link_id, visit):
    async def scenario():
        task = asyncio.create_task(recorder.record(link_id, visit))
        await asyncio.to_thread(recorder.entered.wait, 5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        recorder.gate.set()
        await recorder.settle()

    asyncio.run(scenario())


class TestCancellation:
    """A cancelled caller never leaves a click half recorded"""

    def test_transaction_completes_after_cancel(self, database, window, link_id, make_visit):
        recorder = GatedRecorder(database, window)

        cancel_mid_transaction(recorder, link_id, make_visit("a", T0))

        link = load_link(database, link_id)
        assert link.click_count == 1
        assert link.unique_visitors == 1
        assert link.last_clicked_at == T0
        assert len(load_events(database, link_id)) == 1
        assert asyncio.run(window.seen(link_id, "a", T0)) is True

    def test_failure_after_cancel_releases_window_mark(self, database, window, link_id, make_visit):
        error = OperationalError("UPDATE links", {}, Exception("db down"))
        recorder = GatedRecorder(database, window, error=error)

        cancel_mid_transaction(recorder, link_id, make_visit("a", T0))

        assert asyncio.run(window.seen(link_id, "a", T0)) is False
        assert load_link(database, link_id).click_count == 0
        assert load_events(database, link_id) == []

    def test_settle_with_nothing_detached(self, recorder):
        asyncio.run(recorder.settle())
