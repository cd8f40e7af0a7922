from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class AnalyticsPeriod(str, Enum):
    """Reporting window and the bucket size used for its timeline."""
    DAY = "24h"
    WEEK = "7d"
    MONTH = "30d"
    QUARTER = "90d"
    YEAR = "1y"

    @property
    def delta(self) -> timedelta:
        return {
            AnalyticsPeriod.DAY: timedelta(hours=24),
            AnalyticsPeriod.WEEK: timedelta(days=7),
            AnalyticsPeriod.MONTH: timedelta(days=30),
            AnalyticsPeriod.QUARTER: timedelta(days=90),
            AnalyticsPeriod.YEAR: timedelta(days=365),
        }[self]

    @property
    def granularity(self) -> str:
        return {
            AnalyticsPeriod.DAY: "hour",
            AnalyticsPeriod.WEEK: "day",
            AnalyticsPeriod.MONTH: "day",
            AnalyticsPeriod.QUARTER: "week",
            AnalyticsPeriod.YEAR: "month",
        }[self]


class TimelineBucket(BaseModel):
    timestamp: datetime
    clicks: int = 0
    unique_visitors: int = 0
    countries: int = 0
    avg_response_time_ms: Optional[float] = None


class AnalyticsOverview(BaseModel):
    # Running counters from the link itself
    total_clicks: int = 0
    unique_visitors: int = 0
    last_clicked_at: Optional[datetime] = None

    # Figures for the requested period
    period_clicks: int = 0
    period_unique_visitors: int = 0
    days_active: int = 0
    countries: int = 0
    bot_clicks: int = 0
    campaign_clicks: int = 0
    avg_response_time_ms: Optional[float] = None
    first_click: Optional[datetime] = None
    last_click: Optional[datetime] = None


class CountryStat(BaseModel):
    country_code: Optional[str] = None
    country_name: Optional[str] = None
    clicks: int
    unique_visitors: int
    cities: List[str] = Field(default_factory=list)


class DeviceBreakdown(BaseModel):
    devices: Dict[str, int] = Field(default_factory=dict)
    browsers: Dict[str, int] = Field(default_factory=dict)
    operating_systems: Dict[str, int] = Field(default_factory=dict)


class ReferrerSource(BaseModel):
    source: str
    clicks: int
    unique_visitors: int


class ReferrerGroup(BaseModel):
    clicks: int = 0
    unique_visitors: int = 0
    sources: List[ReferrerSource] = Field(default_factory=list)


class CampaignStat(BaseModel):
    source: str
    medium: Optional[str] = None
    campaign: Optional[str] = None
    clicks: int
    unique_visitors: int


class PeriodInfo(BaseModel):
    type: AnalyticsPeriod
    granularity: str
    start: datetime
    end: datetime


class LinkAnalytics(BaseModel):
    link_id: int
    path: str
    period: PeriodInfo
    include_bots: bool = False
    overview: AnalyticsOverview
    timeline: List[TimelineBucket] = Field(default_factory=list)
    countries: List[CountryStat] = Field(default_factory=list)
    devices: DeviceBreakdown = Field(default_factory=DeviceBreakdown)
    referrers: Dict[str, ReferrerGroup] = Field(default_factory=dict)
    campaigns: List[CampaignStat] = Field(default_factory=list)


class GrowthFigure(BaseModel):
    current: int = 0
    previous: int = 0
    change_percent: int = 0


class Growth(BaseModel):
    """Requested period against the one right before it"""
    links_created: GrowthFigure = Field(default_factory=GrowthFigure)
    clicks: GrowthFigure = Field(default_factory=GrowthFigure)


class TopLink(BaseModel):
    link_id: int
    path: str
    title: Optional[str] = None
    clicks: int
    unique_visitors: int


class OwnerOverview(BaseModel):
    total_links: int = 0
    period_clicks: int = 0
    unique_visitors: int = 0
    countries: int = 0
    avg_response_time_ms: Optional[float] = None
    devices: Dict[str, int] = Field(default_factory=dict)
    traffic_sources: Dict[str, int] = Field(default_factory=dict)


class OwnerSummary(BaseModel):
    """Account-wide figures across every link an owner created (bots excluded)."""
    owner_id: str
    period: PeriodInfo
    overview: OwnerOverview
    top_links: List[TopLink] = Field(default_factory=list)
    growth: Growth = Field(default_factory=Growth)


class ExportedClick(BaseModel):
    clicked_at: datetime
    country_code: Optional[str] = None
    country_name: Optional[str] = None
    city: Optional[str] = None
    device_type: Optional[str] = None
    browser_name: Optional[str] = None
    os_name: Optional[str] = None
    referrer: Optional[str] = None
    is_bot: bool = False


class ExportedLink(BaseModel):
    link_id: int
    path: str
    destination_url: str
    title: Optional[str] = None
    click_count: int = 0
    unique_visitors: int = 0
    created_at: Optional[datetime] = None
    clicks: List[ExportedClick] = Field(default_factory=list)


class AnalyticsExport(BaseModel):
    owner_id: str
    exported_at: datetime
    period: PeriodInfo
    links: List[ExportedLink] = Field(default_factory=list)
