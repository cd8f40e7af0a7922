"""
Data models for queue messages.
"""

from pydantic import BaseModel, Field
from datetime import datetime, timezone
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClickMessage(BaseModel):
    """
    One redirect that still has to be recorded.

    Published by the redirect route after the link resolved; consumed by the
    click worker, which enriches it into a VisitContext and hands it to the
    click recorder. The raw IP travels only as far as the enrichment step.
    """

    link_id: int = Field(..., description="Internal id of the resolved link")
    timestamp: datetime = Field(default_factory=_utcnow, description="When the redirect happened")
    visitor_id: str = Field(..., description="Salted visitor fingerprint")

    # Request metadata (input for enrichment)
    ip_address: Optional[str] = Field(None, description="Client IP address, not persisted")
    user_agent: Optional[str] = Field(None, description="User agent string")
    referrer: Optional[str] = Field(None, description="HTTP referer")
    country_hint: Optional[str] = Field(None, description="CDN geo header (CF-IPCountry)")
    mobile_hint: Optional[bool] = Field(None, description="Sec-CH-UA-Mobile client hint")

    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None

    response_time_ms: Optional[int] = Field(None, description="Time spent resolving the redirect")

    # Set by the queue backend on consume, used for acknowledgment
    message_id: Optional[str] = Field(None, exclude=True)

    model_config = {
        "json_schema_extra": {
            "example": {
                "link_id": 42,
                "timestamp": "2025-10-29T10:30:00Z",
                "visitor_id": "5f1d3a9c0b7e2d44",
                "ip_address": "203.0.113.7",
                "user_agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0",
                "referrer": "https://twitter.com",
                "country_hint": "US",
                "utm_source": "newsletter",
                "response_time_ms": 3,
            }
        }
    }
