"""
Analytics aggregator.

Folds the click event log into per-link reports (timeline plus geography,
device, referrer and campaign breakdowns) and into per-owner summaries and
exports.

Counting and grouping run in SQL through the (link_id, clicked_at) index.
Only the timeline streams rows, and only the columns it buckets: truncating
to hour / day / ISO week / month is done in Python so SQLite and PostgreSQL
share one code path.
"""

import csv
import io
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wordlink_app.exceptions import AggregationFailure, NotFound
from wordlink_app.models import ClickEvent, Link
from wordlink_app.observability import AGGREGATION_FAILURES
from wordlink_app.schemas.analytics import (
    AnalyticsExport,
    AnalyticsOverview,
    AnalyticsPeriod,
    CampaignStat,
    CountryStat,
    DeviceBreakdown,
    ExportedClick,
    ExportedLink,
    Growth,
    GrowthFigure,
    LinkAnalytics,
    OwnerOverview,
    OwnerSummary,
    PeriodInfo,
    ReferrerGroup,
    ReferrerSource,
    TimelineBucket,
    TopLink,
)

logger = structlog.get_logger(__name__)

REFERRER_TYPES = ("direct", "social", "search", "other")
TOP_REFERRER_SOURCES = 20
STREAM_BATCH_SIZE = 1000

EXPORT_COLUMNS = (
    "link_id", "path", "destination_url", "clicked_at", "country_code", "country_name",
    "city", "device_type", "browser_name", "os_name", "referrer", "is_bot",
)


def bucket_start(moment: datetime, granularity: str) -> datetime:
    """Truncate a UTC timestamp to the start of its hour / day / ISO week / month."""
    if granularity == "hour":
        return moment.replace(minute=0, second=0, microsecond=0)
    day = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == "day":
        return day
    if granularity == "week":
        return day - timedelta(days=day.weekday())
    if granularity == "month":
        return day.replace(day=1)
    raise ValueError(f"Unknown granularity: {granularity}")


def change_percent(current: int, previous: int) -> int:
    """Whole-percent change; anything after an empty period counts as +100."""
    if previous == 0:
        return 100 if current > 0 else 0
    return round((current - previous) * 100 / previous)


def _mean(value) -> Optional[float]:
    # AVG comes back as Decimal on PostgreSQL
    return None if value is None else round(float(value), 2)


class _Bucket:
    __slots__ = ("clicks", "visitors", "countries", "response_total", "response_count")

    def __init__(self):
        self.clicks = 0
        self.visitors = set()
        self.countries = set()
        self.response_total = 0
        self.response_count = 0

    def add(self, visitor_id: str, country_code: Optional[str], response_time_ms: Optional[int]):
        self.clicks += 1
        self.visitors.add(visitor_id)
        if country_code:
            self.countries.add(country_code)
        if response_time_ms is not None:
            self.response_total += response_time_ms
            self.response_count += 1

    def to_schema(self, moment: datetime) -> TimelineBucket:
        return TimelineBucket(
            timestamp=moment,
            clicks=self.clicks,
            unique_visitors=len(self.visitors),
            countries=len(self.countries),
            avg_response_time_ms=(round(self.response_total / self.response_count, 2)
                                  if self.response_count else None),
        )


class AnalyticsService:
    """
    Builds LinkAnalytics for one link, and OwnerSummary / AnalyticsExport
    for everything an owner created.

    The session may point at a read replica; nothing here writes.
    """

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _window(period: AnalyticsPeriod, now: Optional[datetime]) -> Tuple[datetime, datetime]:
        end = now or datetime.now(timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        return end - period.delta, end

    def _failed(self, what: str, error: SQLAlchemyError, **context) -> AggregationFailure:
        AGGREGATION_FAILURES.inc()
        logger.error("Analytics query failed", report=what, error=str(error), **context)
        return AggregationFailure(f"Analytics unavailable ({what})")

    def aggregate(
        self,
        link_id: int,
        period: AnalyticsPeriod = AnalyticsPeriod.WEEK,
        include_bots: bool = False,
        top_n: int = 10,
        now: Optional[datetime] = None,
    ) -> LinkAnalytics:
        """
        Raises:
            NotFound: unknown link id (inactive and expired links are still reported)
            AggregationFailure: storage unavailable
        """
        period = AnalyticsPeriod(period)
        start, end = self._window(period, now)

        try:
            link = self.db.get(Link, link_id, populate_existing=True)
            if link is None:
                raise NotFound(f"Link {link_id}")

            scope = [
                ClickEvent.link_id == link_id,
                ClickEvent.clicked_at > start,
                ClickEvent.clicked_at <= end,
            ]
            bot_clicks = self._count(scope + [ClickEvent.is_bot.is_(True)])
            if not include_bots:
                scope.append(ClickEvent.is_bot.is_(False))

            overview = self._overview(link, scope, bot_clicks)
            timeline = self._timeline(scope, period.granularity, overview)
            result = LinkAnalytics(
                link_id=link.id,
                path=link.path,
                period=PeriodInfo(type=period, granularity=period.granularity, start=start, end=end),
                include_bots=include_bots,
                overview=overview,
                timeline=timeline,
                countries=self._countries(scope, top_n),
                devices=DeviceBreakdown(
                    devices=self._tally(ClickEvent.device_type, scope),
                    browsers=self._tally(ClickEvent.browser_name, scope),
                    operating_systems=self._tally(ClickEvent.os_name, scope),
                ),
                referrers=self._referrers(scope),
                campaigns=self._campaigns(scope, top_n),
            )
        except SQLAlchemyError as e:
            raise self._failed("link", e, link_id=link_id) from e

        return result

    def _count(self, scope) -> int:
        return self.db.scalar(select(func.count(ClickEvent.id)).where(*scope)) or 0

    def _overview(self, link: Link, scope, bot_clicks: int) -> AnalyticsOverview:
        clicks, visitors, countries, campaign_clicks, avg_response = self.db.execute(
            select(
                func.count(ClickEvent.id),
                func.count(distinct(ClickEvent.visitor_id)),
                func.count(distinct(ClickEvent.country_code)),
                func.count(ClickEvent.utm_source),
                func.avg(ClickEvent.response_time_ms),
            ).where(*scope)
        ).one()

        return AnalyticsOverview(
            total_clicks=link.click_count or 0,
            unique_visitors=link.unique_visitors or 0,
            last_clicked_at=link.last_clicked_at,
            period_clicks=clicks,
            period_unique_visitors=visitors,
            countries=countries,
            bot_clicks=bot_clicks,
            campaign_clicks=campaign_clicks,
            avg_response_time_ms=_mean(avg_response),
        )

    def _timeline(self, scope, granularity: str, overview: AnalyticsOverview) -> List[TimelineBucket]:
        """
        Non-empty buckets only, oldest first. Also fills the overview's
        days_active and first/last click from the same pass.
        """
        buckets: Dict[datetime, _Bucket] = defaultdict(_Bucket)
        days = set()
        rows = self.db.execute(
            select(
                ClickEvent.clicked_at,
                ClickEvent.visitor_id,
                ClickEvent.country_code,
                ClickEvent.response_time_ms,
            )
            .where(*scope)
            .order_by(ClickEvent.clicked_at)
            .execution_options(yield_per=STREAM_BATCH_SIZE)
        )
        for clicked_at, visitor_id, country_code, response_time_ms in rows:
            buckets[bucket_start(clicked_at, granularity)].add(visitor_id, country_code, response_time_ms)
            days.add(clicked_at.date())
            if overview.first_click is None:
                overview.first_click = clicked_at
            overview.last_click = clicked_at

        overview.days_active = len(days)
        return [bucket.to_schema(moment) for moment, bucket in sorted(buckets.items())]

    def _countries(self, scope, top_n: int) -> List[CountryStat]:
        rows = self.db.execute(
            select(
                ClickEvent.country_code,
                func.max(ClickEvent.country_name),
                func.count(ClickEvent.id),
                func.count(distinct(ClickEvent.visitor_id)),
            )
            .where(*scope)
            .group_by(ClickEvent.country_code)
        ).all()

        stats = [
            CountryStat(country_code=code, country_name=name, clicks=clicks, unique_visitors=visitors)
            for code, name, clicks, visitors in rows
        ]
        # Ties: more unique visitors first, then country code (unknown last)
        stats.sort(key=lambda s: (-s.clicks, -s.unique_visitors, s.country_code is None, s.country_code or ""))
        stats = stats[:top_n]

        cities = defaultdict(set)
        for code, city in self.db.execute(
            select(ClickEvent.country_code, ClickEvent.city)
            .where(*scope, ClickEvent.city.is_not(None))
            .distinct()
        ):
            cities[code].add(city)
        for stat in stats:
            stat.cities = sorted(cities[stat.country_code])
        return stats

    def _tally(self, column, scope) -> Dict[str, int]:
        """Clicks per value of one column, most clicked first; NULL counts as "unknown"."""
        counts = Counter()
        for value, clicks in self.db.execute(
            select(column, func.count(ClickEvent.id)).where(*scope).group_by(column)
        ):
            counts[value or "unknown"] += clicks
        return dict(sorted(counts.items(), key=lambda item: (-item[1], item[0])))

    def _referrers(self, scope) -> Dict[str, ReferrerGroup]:
        groups = {kind: ReferrerGroup() for kind in REFERRER_TYPES}

        for kind, clicks, visitors in self.db.execute(
            select(
                ClickEvent.referrer_type,
                func.count(ClickEvent.id),
                func.count(distinct(ClickEvent.visitor_id)),
            )
            .where(*scope)
            .group_by(ClickEvent.referrer_type)
        ):
            group = groups[kind if kind in groups else "other"]
            group.clicks += clicks
            group.unique_visitors += visitors

        sources = defaultdict(list)
        for kind, source, clicks, visitors in self.db.execute(
            select(
                ClickEvent.referrer_type,
                ClickEvent.referrer_source,
                func.count(ClickEvent.id),
                func.count(distinct(ClickEvent.visitor_id)),
            )
            .where(*scope)
            .group_by(ClickEvent.referrer_type, ClickEvent.referrer_source)
        ):
            sources[kind if kind in groups else "other"].append(
                ReferrerSource(source=source, clicks=clicks, unique_visitors=visitors)
            )

        for kind, group in groups.items():
            ranked = sorted(sources[kind], key=lambda s: (-s.clicks, s.source))
            group.sources = ranked[:TOP_REFERRER_SOURCES]
        return groups

    def _campaigns(self, scope, top_n: int) -> List[CampaignStat]:
        rows = self.db.execute(
            select(
                ClickEvent.utm_source,
                ClickEvent.utm_medium,
                ClickEvent.utm_campaign,
                func.count(ClickEvent.id),
                func.count(distinct(ClickEvent.visitor_id)),
            )
            .where(*scope, ClickEvent.utm_source.is_not(None))
            .group_by(ClickEvent.utm_source, ClickEvent.utm_medium, ClickEvent.utm_campaign)
        ).all()

        stats = [
            CampaignStat(source=source, medium=medium, campaign=campaign,
                         clicks=clicks, unique_visitors=visitors)
            for source, medium, campaign, clicks, visitors in rows
        ]
        stats.sort(key=lambda s: (-s.clicks, s.source, s.medium or "", s.campaign or ""))
        return stats[:top_n]

    # Owner-wide reports

    def summary(
        self,
        owner_id: str,
        period: AnalyticsPeriod = AnalyticsPeriod.MONTH,
        top_n: int = 10,
        now: Optional[datetime] = None,
    ) -> OwnerSummary:
        """
        Totals, top links and growth for everything an owner created.

        Bot traffic is left out. An owner with no links gets an all-zero summary.

        Raises:
            AggregationFailure: storage unavailable
        """
        period = AnalyticsPeriod(period)
        start, end = self._window(period, now)
        previous_start = start - period.delta
        owned = select(Link.id).where(Link.owner_id == owner_id)

        def clicks_between(after: datetime, until: datetime) -> list:
            return [
                ClickEvent.link_id.in_(owned),
                ClickEvent.clicked_at > after,
                ClickEvent.clicked_at <= until,
                ClickEvent.is_bot.is_(False),
            ]

        try:
            scope = clicks_between(start, end)
            total_links = self.db.scalar(select(func.count(Link.id)).where(Link.owner_id == owner_id)) or 0
            clicks, visitors, countries, avg_response = self.db.execute(
                select(
                    func.count(ClickEvent.id),
                    func.count(distinct(ClickEvent.visitor_id)),
                    func.count(distinct(ClickEvent.country_code)),
                    func.avg(ClickEvent.response_time_ms),
                ).where(*scope)
            ).one()

            overview = OwnerOverview(
                total_links=total_links,
                period_clicks=clicks,
                unique_visitors=visitors,
                countries=countries,
                avg_response_time_ms=_mean(avg_response),
                devices=self._tally(ClickEvent.device_type, scope),
                traffic_sources={kind: group.clicks for kind, group in self._referrers(scope).items()},
            )

            previous_clicks = self._count(clicks_between(previous_start, start))
            growth = Growth(
                links_created=self._growth(
                    self._links_created(owner_id, start, end),
                    self._links_created(owner_id, previous_start, start),
                ),
                clicks=self._growth(clicks, previous_clicks),
            )
            top_links = self._top_links(scope, top_n)
        except SQLAlchemyError as e:
            raise self._failed("summary", e, owner_id=owner_id) from e

        return OwnerSummary(
            owner_id=owner_id,
            period=PeriodInfo(type=period, granularity=period.granularity, start=start, end=end),
            overview=overview,
            top_links=top_links,
            growth=growth,
        )

    @staticmethod
    def _growth(current: int, previous: int) -> GrowthFigure:
        return GrowthFigure(current=current, previous=previous, change_percent=change_percent(current, previous))

    def _links_created(self, owner_id: str, after: datetime, until: datetime) -> int:
        return self.db.scalar(
            select(func.count(Link.id)).where(
                Link.owner_id == owner_id,
                Link.created_at > after,
                Link.created_at <= until,
            )
        ) or 0

    def _top_links(self, scope, top_n: int) -> List[TopLink]:
        """Links with clicks in the period, most clicked first (ties: lower id)."""
        clicks = func.count(ClickEvent.id)
        rows = self.db.execute(
            select(ClickEvent.link_id, clicks, func.count(distinct(ClickEvent.visitor_id)))
            .where(*scope)
            .group_by(ClickEvent.link_id)
            .order_by(clicks.desc(), ClickEvent.link_id)
            .limit(top_n)
        ).all()
        if not rows:
            return []

        links = {
            link.id: link
            for link in self.db.execute(
                select(Link).where(Link.id.in_([link_id for link_id, _, _ in rows]))
            ).scalars()
        }
        return [
            TopLink(
                link_id=link_id,
                path=links[link_id].path,
                title=links[link_id].title,
                clicks=link_clicks,
                unique_visitors=visitors,
            )
            for link_id, link_clicks, visitors in rows
            if link_id in links
        ]

    def export(
        self,
        owner_id: str,
        period: AnalyticsPeriod = AnalyticsPeriod.MONTH,
        now: Optional[datetime] = None,
    ) -> AnalyticsExport:
        """
        Every link an owner created, newest first, with its raw clicks in the
        period (newest first, bots included and flagged).

        Raises:
            AggregationFailure: storage unavailable
        """
        period = AnalyticsPeriod(period)
        start, end = self._window(period, now)

        try:
            links = self.db.execute(
                select(Link)
                .where(Link.owner_id == owner_id)
                .order_by(Link.created_at.desc(), Link.id.desc())
            ).scalars().all()

            clicks = defaultdict(list)
            rows = self.db.execute(
                select(
                    ClickEvent.link_id,
                    ClickEvent.clicked_at,
                    ClickEvent.country_code,
                    ClickEvent.country_name,
                    ClickEvent.city,
                    ClickEvent.device_type,
                    ClickEvent.browser_name,
                    ClickEvent.os_name,
                    ClickEvent.referrer,
                    ClickEvent.is_bot,
                )
                .where(
                    ClickEvent.link_id.in_(select(Link.id).where(Link.owner_id == owner_id)),
                    ClickEvent.clicked_at > start,
                    ClickEvent.clicked_at <= end,
                )
                .order_by(ClickEvent.link_id, ClickEvent.clicked_at.desc())
                .execution_options(yield_per=STREAM_BATCH_SIZE)
            )
            for row in rows:
                fields = row._asdict()
                clicks[fields.pop("link_id")].append(ExportedClick(**fields))
        except SQLAlchemyError as e:
            raise self._failed("export", e, owner_id=owner_id) from e

        logger.info("Analytics exported", owner_id=owner_id, links=len(links),
                    clicks=sum(len(bucket) for bucket in clicks.values()))
        return AnalyticsExport(
            owner_id=owner_id,
            exported_at=datetime.now(timezone.utc),
            period=PeriodInfo(type=period, granularity=period.granularity, start=start, end=end),
            links=[
                ExportedLink(
                    link_id=link.id,
                    path=link.path,
                    destination_url=link.destination_url,
                    title=link.title,
                    click_count=link.click_count or 0,
                    unique_visitors=link.unique_visitors or 0,
                    created_at=link.created_at,
                    clicks=clicks.get(link.id, []),
                )
                for link in links
            ],
        )


def export_to_csv(export: AnalyticsExport) -> str:
    """
    One row per click. A link without clicks in the period still gets one
    row, with the click columns left empty.
    """
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
    writer.writeheader()
    for link in export.links:
        base = {"link_id": link.link_id, "path": link.path, "destination_url": link.destination_url}
        if not link.clicks:
            writer.writerow(base)
            continue
        for click in link.clicks:
            row = dict(base, **click.model_dump())
            row["clicked_at"] = click.clicked_at.isoformat()
            writer.writerow(row)
    return buffer.getvalue()
