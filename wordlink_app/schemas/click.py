from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from wordlink_app.utils import request_utils


class VisitContext(BaseModel):
    """
    Enriched visit, as consumed by the click recorder.

    Produced by the enrichment step from a ClickMessage; the recorder does no
    geolocation or user-agent parsing of its own.
    """

    visitor_id: str
    clicked_at: datetime

    country_code: Optional[str] = Field(None, max_length=2)
    country_name: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None

    device_type: str = "unknown"
    browser_name: str = "unknown"
    os_name: str = "unknown"
    is_bot: bool = False

    referrer: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None

    response_time_ms: Optional[int] = None

    @property
    def referrer_type(self) -> str:
        return request_utils.classify_referrer(self.referrer)

    @property
    def referrer_source(self) -> str:
        return request_utils.referrer_source(self.referrer)[:255]


class RecordResult(BaseModel):
    event_id: int
    link_id: int
    is_unique: bool
