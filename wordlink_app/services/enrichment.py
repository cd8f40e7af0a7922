"""
Enrichment boundary: ClickMessage -> VisitContext.

Geolocation and user-agent classification are external concerns. The default
enricher only uses what the edge already tells us (CDN country header,
client-hint mobile flag) plus a crude crawler check; a real classifier plugs
in by implementing VisitEnricher.
"""

from abc import ABC, abstractmethod
from typing import Optional

import structlog

from wordlink_app.queue.models import ClickMessage
from wordlink_app.schemas.click import VisitContext

logger = structlog.get_logger(__name__)

BOT_MARKERS = ("bot", "crawler", "spider", "slurp", "facebookexternalhit", "headless")

# Non-country values CDNs send in CF-IPCountry
UNKNOWN_COUNTRIES = {"XX", "T1"}


def _base_context(message: ClickMessage) -> dict:
    return {
        "visitor_id": message.visitor_id,
        "clicked_at": message.timestamp,
        "referrer": message.referrer,
        "utm_source": message.utm_source,
        "utm_medium": message.utm_medium,
        "utm_campaign": message.utm_campaign,
        "utm_term": message.utm_term,
        "utm_content": message.utm_content,
        "response_time_ms": message.response_time_ms,
    }


def looks_like_bot(user_agent: Optional[str]) -> bool:
    if not user_agent:
        return True
    ua = user_agent.lower()
    return any(marker in ua for marker in BOT_MARKERS)


class VisitEnricher(ABC):
    """Interface for the geo / device classification step."""

    @abstractmethod
    def classify(self, message: ClickMessage) -> dict:
        """Return VisitContext fields derived from the message."""
        pass

    def enrich(self, message: ClickMessage) -> VisitContext:
        """Never fails: a broken classifier yields an un-enriched context."""
        base = _base_context(message)
        try:
            return VisitContext(**base, **self.classify(message))
        except Exception as e:
            logger.warning("Enrichment failed, recording un-enriched click",
                           link_id=message.link_id, error=str(e))
            return VisitContext(**base)


class DefaultVisitEnricher(VisitEnricher):
    """Edge headers only."""

    def classify(self, message: ClickMessage) -> dict:
        fields = {"is_bot": looks_like_bot(message.user_agent)}

        country = (message.country_hint or "").strip().upper()
        if len(country) == 2 and country not in UNKNOWN_COUNTRIES:
            fields["country_code"] = country

        if message.mobile_hint is True:
            fields["device_type"] = "mobile"
        elif message.mobile_hint is False:
            fields["device_type"] = "desktop"

        return fields
