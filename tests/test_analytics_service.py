import asyncio
import csv
import io
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from wordlink_app.exceptions import AggregationFailure, NotFound
from wordlink_app.models import Link, make_path_key
from wordlink_app.schemas.analytics import AnalyticsPeriod
from wordlink_app.services.analytics_service import AnalyticsService, bucket_start, change_percent, export_to_csv

NOW = datetime(2026, 6, 10, 15, 30, tzinfo=timezone.utc)  # a Wednesday


@pytest.fixture
def link_id(db_session):
    link = Link(
        keywords=["launch"],
        path_key=make_path_key(None, ["launch"]),
        destination_url="https://example.com/",
        click_count=0,
        unique_visitors=0,
    )
    db_session.add(link)
    db_session.commit()
    return link.id


@pytest.fixture
def analytics(db_session):
    return AnalyticsService(db_session)


def record_all(recorder, link_id, visits):
    async def run():
        for visit in visits:
            await recorder.record(link_id, visit)
    asyncio.run(run())


class TestBuckets:
    def test_hour(self):
        assert bucket_start(NOW, "hour") == datetime(2026, 6, 10, 15, tzinfo=timezone.utc)

    def test_day(self):
        assert bucket_start(NOW, "day") == datetime(2026, 6, 10, tzinfo=timezone.utc)

    def test_iso_week_starts_monday(self):
        assert bucket_start(NOW, "week") == datetime(2026, 6, 8, tzinfo=timezone.utc)

    def test_month(self):
        assert bucket_start(NOW, "month") == datetime(2026, 6, 1, tzinfo=timezone.utc)

    def test_period_granularity(self):
        assert AnalyticsPeriod("24h").granularity == "hour"
        assert AnalyticsPeriod("30d").granularity == "day"
        assert AnalyticsPeriod("90d").granularity == "week"
        assert AnalyticsPeriod("1y").granularity == "month"


class TestAggregate:
    """Timeline and breakdowns"""

    def test_empty_link(self, analytics, link_id):
        result = analytics.aggregate(link_id, AnalyticsPeriod.WEEK, now=NOW)

        assert result.overview.total_clicks == 0
        assert result.overview.period_clicks == 0
        assert result.overview.period_unique_visitors == 0
        assert result.overview.first_click is None
        assert result.timeline == []
        assert result.countries == []
        assert result.devices.devices == {}
        assert set(result.referrers) == {"direct", "social", "search", "other"}
        assert all(group.clicks == 0 for group in result.referrers.values())

    def test_ten_clicks_over_three_days(self, analytics, recorder, link_id, make_visit):
        days = [NOW - timedelta(days=3), NOW - timedelta(days=2), NOW - timedelta(hours=1)]
        visits = []
        for i in range(10):
            day = days[i % 3]
            visits.append(make_visit(f"v{i}", day + timedelta(minutes=i)))
        record_all(recorder, link_id, visits)

        result = analytics.aggregate(link_id, AnalyticsPeriod.WEEK, now=NOW)

        assert len(result.timeline) == 3
        assert sum(bucket.clicks for bucket in result.timeline) == 10
        assert [bucket.clicks for bucket in result.timeline] == [4, 3, 3]
        assert result.timeline == sorted(result.timeline, key=lambda bucket: bucket.timestamp)
        assert result.overview.days_active == 3
        assert result.overview.total_clicks == 10

    def test_hourly_buckets_for_24h(self, analytics, recorder, link_id, make_visit):
        record_all(recorder, link_id, [
            make_visit("a", NOW - timedelta(minutes=5)),
            make_visit("b", NOW - timedelta(minutes=10)),
            make_visit("a", NOW - timedelta(hours=3)),
            make_visit("c", NOW - timedelta(hours=30)),  # outside the period
        ])

        result = analytics.aggregate(link_id, AnalyticsPeriod.DAY, now=NOW)

        assert [bucket.clicks for bucket in result.timeline] == [1, 2]
        assert result.timeline[-1].unique_visitors == 2
        assert result.overview.period_clicks == 3
        assert result.overview.period_unique_visitors == 2

    def test_bots_excluded_unless_requested(self, analytics, recorder, link_id, make_visit):
        record_all(recorder, link_id, [
            make_visit("human", NOW - timedelta(hours=1)),
            make_visit("bot", NOW - timedelta(hours=1), is_bot=True, device_type="bot"),
        ])

        without = analytics.aggregate(link_id, AnalyticsPeriod.WEEK, now=NOW)
        assert without.overview.period_clicks == 1
        assert without.overview.bot_clicks == 1
        assert "bot" not in without.devices.devices

        including = analytics.aggregate(link_id, AnalyticsPeriod.WEEK, include_bots=True, now=NOW)
        assert including.overview.period_clicks == 2
        assert including.devices.devices["bot"] == 1

    def test_top_countries_ordering(self, analytics, recorder, link_id, make_visit):
        at = NOW - timedelta(hours=2)
        record_all(recorder, link_id, [
            make_visit("1", at, country_code="US", city="Boston"),
            make_visit("2", at, country_code="US", city="Austin"),
            make_visit("3", at, country_code="FR", city="Paris"),
            make_visit("4", at, country_code="DE"),
            make_visit("5", at, country_code="DE"),
            make_visit("6", at, country_code="FR"),
            make_visit("7", at, country_code="FR"),
        ])

        result = analytics.aggregate(link_id, AnalyticsPeriod.WEEK, top_n=2, now=NOW)

        assert [c.country_code for c in result.countries] == ["FR", "DE"]
        assert result.countries[0].clicks == 3
        assert result.countries[0].cities == ["Paris"]

        everything = analytics.aggregate(link_id, AnalyticsPeriod.WEEK, now=NOW)
        assert [c.country_code for c in everything.countries] == ["FR", "DE", "US"]
        assert everything.countries[2].cities == ["Austin", "Boston"]

    def test_referrer_groups(self, analytics, recorder, link_id, make_visit):
        at = NOW - timedelta(hours=2)
        record_all(recorder, link_id, [
            make_visit("a", at),
            make_visit("b", at, referrer="https://www.google.com/search?q=launch"),
            make_visit("c", at, referrer="https://t.co/xyz"),
            make_visit("d", at, referrer="https://www.facebook.com/"),
            make_visit("d", at, referrer="https://www.facebook.com/groups"),
            make_visit("e", at, referrer="https://blog.example.org/post"),
        ])

        referrers = analytics.aggregate(link_id, AnalyticsPeriod.WEEK, now=NOW).referrers

        assert referrers["direct"].clicks == 1
        assert referrers["search"].sources[0].source == "google.com"
        assert referrers["social"].clicks == 3
        assert referrers["social"].unique_visitors == 2
        assert referrers["social"].sources[0].source == "facebook.com"
        assert referrers["social"].sources[0].clicks == 2
        assert referrers["other"].sources[0].source == "blog.example.org"

    def test_devices_and_campaigns(self, analytics, recorder, link_id, make_visit):
        at = NOW - timedelta(hours=2)
        record_all(recorder, link_id, [
            make_visit("a", at, device_type="mobile", browser_name="Safari", os_name="iOS",
                       utm_source="newsletter", utm_campaign="spring"),
            make_visit("b", at, device_type="mobile", browser_name="Chrome", os_name="Android",
                       utm_source="newsletter", utm_campaign="spring"),
            make_visit("c", at, device_type="desktop", browser_name="Chrome", os_name="Windows"),
        ])

        result = analytics.aggregate(link_id, AnalyticsPeriod.WEEK, now=NOW)

        assert result.devices.devices == {"mobile": 2, "desktop": 1}
        assert result.devices.browsers["Chrome"] == 2
        assert len(result.campaigns) == 1
        assert result.campaigns[0].clicks == 2
        assert result.overview.campaign_clicks == 2

    def test_response_time_average(self, analytics, recorder, link_id, make_visit):
        at = NOW - timedelta(hours=2)
        record_all(recorder, link_id, [
            make_visit("a", at, response_time_ms=2),
            make_visit("b", at, response_time_ms=4),
            make_visit("c", at),
        ])

        result = analytics.aggregate(link_id, AnalyticsPeriod.WEEK, now=NOW)
        assert result.overview.avg_response_time_ms == 3.0

    def test_inactive_link_is_still_reported(self, analytics, db_session, link_id):
        link = db_session.get(Link, link_id)
        link.is_active = False
        db_session.commit()

        assert analytics.aggregate(link_id, now=NOW).link_id == link_id


class TestAggregateErrors:
    def test_unknown_link(self, analytics):
        with pytest.raises(NotFound):
            analytics.aggregate(4242, now=NOW)

    def test_storage_error(self):
        session = MagicMock()
        session.get.side_effect = OperationalError("SELECT", {}, Exception("replica down"))

        with pytest.raises(AggregationFailure):
            AnalyticsService(session).aggregate(1, now=NOW)


class TestQueryShape:
    """Reports are computed by the database, not by loading event rows"""

    def test_full_event_rows_are_never_selected(self, analytics, recorder, database, link_id, make_visit):
        record_all(recorder, link_id, [
            make_visit("a", NOW - timedelta(hours=1), utm_source="mail", utm_term="never-read"),
            make_visit("b", NOW - timedelta(hours=2), country_code="FR", city="Paris"),
        ])
        statements = []

        def capture(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(database.engine, "before_cursor_execute", capture)
        try:
            result = analytics.aggregate(link_id, AnalyticsPeriod.WEEK, now=NOW)
        finally:
            event.remove(database.engine, "before_cursor_execute", capture)

        assert result.overview.period_clicks == 2
        event_queries = [statement for statement in statements if "click_events" in statement]
        assert event_queries
        assert not any("utm_term" in statement for statement in event_queries)
        assert any("GROUP BY" in statement for statement in event_queries)

    def test_first_and_last_click_from_timeline_pass(self, analytics, recorder, link_id, make_visit):
        record_all(recorder, link_id, [
            make_visit("a", NOW - timedelta(days=2)),
            make_visit("b", NOW - timedelta(hours=1)),
            make_visit("c", NOW - timedelta(days=1)),
        ])

        overview = analytics.aggregate(link_id, AnalyticsPeriod.WEEK, now=NOW).overview

        assert overview.first_click == NOW - timedelta(days=2)
        assert overview.last_click == NOW - timedelta(hours=1)
        assert overview.days_active == 3


def add_link(db_session, keywords, owner_id, created_at, title=None):
    link = Link(
        keywords=keywords,
        path_key=make_path_key(None, keywords),
        destination_url=f"https://example.com/{keywords[0]}",
        title=title,
        owner_id=owner_id,
        click_count=0,
        unique_visitors=0,
        created_at=created_at,
    )
    db_session.add(link)
    db_session.commit()
    return link.id


@pytest.fixture
def account(db_session, recorder, make_visit):
    """owner-1 has a new link (launch) and an older one (docs); owner-2 has one link."""
    launch = add_link(db_session, ["launch"], "owner-1", NOW - timedelta(days=2), title="Launch")
    docs = add_link(db_session, ["docs"], "owner-1", NOW - timedelta(days=40))
    other = add_link(db_session, ["other"], "owner-2", NOW - timedelta(days=1))

    hour_ago = NOW - timedelta(hours=1)
    record_all(recorder, launch, [
        make_visit("a", hour_ago, device_type="mobile", country_code="US"),
        make_visit("b", hour_ago, device_type="desktop", country_code="FR"),
        make_visit("a", hour_ago, device_type="mobile", country_code="US", response_time_ms=4),
        make_visit("crawler", hour_ago, is_bot=True, device_type="bot"),
    ])
    record_all(recorder, docs, [
        make_visit("c", NOW - timedelta(days=3), referrer="https://www.google.com/", response_time_ms=2),
        make_visit("d", NOW - timedelta(days=45)),  # previous period
    ])
    record_all(recorder, other, [make_visit("e", hour_ago)])
    return {"launch": launch, "docs": docs, "other": other}


class TestOwnerSummary:
    """Account-wide figures"""

    def test_totals_exclude_bots_and_other_owners(self, analytics, account):
        summary = analytics.summary("owner-1", AnalyticsPeriod.MONTH, now=NOW)

        assert summary.overview.total_links == 2
        assert summary.overview.period_clicks == 4
        assert summary.overview.unique_visitors == 3
        assert summary.overview.countries == 2
        assert summary.overview.avg_response_time_ms == 3.0
        assert summary.overview.devices == {"mobile": 2, "desktop": 1, "unknown": 1}
        assert summary.overview.traffic_sources == {"direct": 3, "social": 0, "search": 1, "other": 0}

    def test_top_links(self, analytics, account):
        top = analytics.summary("owner-1", AnalyticsPeriod.MONTH, now=NOW).top_links

        assert [link.link_id for link in top] == [account["launch"], account["docs"]]
        assert top[0].path == "launch"
        assert top[0].title == "Launch"
        assert top[0].clicks == 3
        assert top[0].unique_visitors == 2

        assert len(analytics.summary("owner-1", AnalyticsPeriod.MONTH, top_n=1, now=NOW).top_links) == 1

    def test_growth_against_previous_period(self, analytics, account):
        growth = analytics.summary("owner-1", AnalyticsPeriod.MONTH, now=NOW).growth

        assert (growth.links_created.current, growth.links_created.previous) == (1, 1)
        assert growth.links_created.change_percent == 0
        assert (growth.clicks.current, growth.clicks.previous) == (4, 1)
        assert growth.clicks.change_percent == 300

    def test_owner_without_links(self, analytics):
        summary = analytics.summary("nobody", now=NOW)

        assert summary.overview.total_links == 0
        assert summary.overview.period_clicks == 0
        assert summary.top_links == []
        assert summary.growth.clicks.change_percent == 0

    @pytest.mark.parametrize("current, previous, expected", [
        (0, 0, 0),
        (5, 0, 100),
        (5, 10, -50),
        (15, 10, 50),
    ])
    def test_change_percent(self, current, previous, expected):
        assert change_percent(current, previous) == expected


class TestExport:
    def test_links_newest_first_with_their_clicks(self, analytics, account):
        export = analytics.export("owner-1", AnalyticsPeriod.MONTH, now=NOW)

        assert [link.link_id for link in export.links] == [account["launch"], account["docs"]]
        launch, docs = export.links
        assert len(launch.clicks) == 4
        assert sum(click.is_bot for click in launch.clicks) == 1
        assert launch.click_count == 4
        assert [click.referrer for click in docs.clicks] == ["https://www.google.com/"]

    def test_csv_has_one_row_per_click(self, analytics, account):
        export = analytics.export("owner-1", AnalyticsPeriod.DAY, now=NOW)

        rows = list(csv.DictReader(io.StringIO(export_to_csv(export))))

        # Four clicks on launch, plus one empty row for docs (no clicks in the last day)
        assert len(rows) == 5
        assert rows[0]["path"] == "launch"
        assert rows[0]["clicked_at"].startswith("2026-06-10T14:30")
        assert rows[-1]["path"] == "docs"
        assert rows[-1]["clicked_at"] == ""

    def test_unknown_owner(self, analytics):
        assert analytics.export("nobody", now=NOW).links == []


class TestOwnerReportErrors:
    def test_summary_storage_error(self):
        session = MagicMock()
        session.scalar.side_effect = OperationalError("SELECT", {}, Exception("replica down"))

        with pytest.raises(AggregationFailure):
            AnalyticsService(session).summary("owner-1", now=NOW)

    def test_export_storage_error(self):
        session = MagicMock()
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("replica down"))

        with pytest.raises(AggregationFailure):
            AnalyticsService(session).export("owner-1", now=NOW)
