"""Logging and metrics: structlog configuration and Prometheus counters."""

import logging

import structlog
from prometheus_client import Counter, Histogram

from wordlink_app.config import settings

# Redirect path
REDIRECTS = Counter(
    "wordlink_redirects_total",
    "Redirect requests by outcome",
    ["outcome"],  # found, not_found, malformed
)

# Click recording
CLICKS_QUEUED = Counter(
    "wordlink_clicks_queued_total",
    "Click messages published to the click queue",
)

CLICKS_RECORDED = Counter(
    "wordlink_clicks_recorded_total",
    "Click events persisted by the recorder",
)

UNIQUE_VISITORS_COUNTED = Counter(
    "wordlink_unique_visitors_counted_total",
    "Clicks that counted as a new unique visitor",
)

CLICK_RECORD_RETRIES = Counter(
    "wordlink_click_record_retries_total",
    "Failed record attempts that were retried",
)

CLICKS_DROPPED = Counter(
    "wordlink_clicks_dropped_total",
    "Clicks lost after the retry limit or because the queue rejected them",
    ["reason"],  # queue_unavailable, retries_exhausted, link_missing, unparsable, redelivery_exhausted
)

CLICK_RECORD_LATENCY = Histogram(
    "wordlink_click_record_duration_seconds",
    "Time to apply one click (window + counters + event)",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)

# Reporting
AGGREGATION_FAILURES = Counter(
    "wordlink_aggregation_failures_total",
    "Analytics queries that failed on storage errors",
)


def configure_logging() -> None:
    """Configure structlog on top of stdlib logging."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", level=level)
