from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text

from wordlink_app.database.connection import Base
from wordlink_app.database.types import UTCDateTime


class ClickEvent(Base):
    """
    One recorded visit. Append-only: rows are inserted by the click recorder
    and never updated or deleted.

    visitor_id is a salted hash; the raw client IP is not stored.
    """
    __tablename__ = "click_events"
    __table_args__ = (
        Index("ix_click_events_link_clicked_at", "link_id", "clicked_at"),
        Index("ix_click_events_link_visitor", "link_id", "visitor_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    link_id = Column(Integer, ForeignKey("links.id"), nullable=False)
    clicked_at = Column(UTCDateTime(), nullable=False)
    visitor_id = Column(String(64), nullable=False)

    # Geography (from enrichment)
    country_code = Column(String(2), nullable=True)
    country_name = Column(String(100), nullable=True)
    city = Column(String(100), nullable=True)
    region = Column(String(100), nullable=True)

    # Device (from enrichment)
    device_type = Column(String(50), nullable=True)
    browser_name = Column(String(50), nullable=True)
    os_name = Column(String(50), nullable=True)
    is_bot = Column(Boolean, default=False, nullable=False)

    # Traffic source
    referrer = Column(Text, nullable=True)
    referrer_type = Column(String(16), nullable=False, default="direct")
    referrer_source = Column(String(255), nullable=False, default="direct")  # Referrer host, grouped by analytics
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)
    utm_term = Column(String(255), nullable=True)
    utm_content = Column(String(255), nullable=True)

    response_time_ms = Column(Integer, nullable=True)
