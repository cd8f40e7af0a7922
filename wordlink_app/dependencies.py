"""
FastAPI dependencies for dependency injection.

This module provides singleton instances of the cache, click queue, visitor
window and click recorder, and per-request services built on top of them.

Pattern: Dependency Injection
- Routes depend on services, services on infrastructure
- Tests swap any of these through app.dependency_overrides
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from wordlink_app.cache.factory import CacheFactory, CacheBackend
from wordlink_app.cache.strategies import CacheStrategy
from wordlink_app.config import settings
from wordlink_app.database.connection import get_analytics_db, get_database, get_db
from wordlink_app.queue.factory import QueueFactory, QueueBackend
from wordlink_app.queue.strategies import QueueStrategy
from wordlink_app.schemas.link import Quota
from wordlink_app.services.analytics_service import AnalyticsService
from wordlink_app.services.click_recorder import ClickRecorder
from wordlink_app.services.identifier_service import IdentifierService
from wordlink_app.services.link_service import LinkService
from wordlink_app.window.factory import VisitorWindowFactory, WindowBackend
from wordlink_app.window.strategies import VisitorWindowStrategy


@lru_cache()
def get_cache() -> CacheStrategy:
    """Resolution cache (singleton, backend from settings)."""
    backend = CacheBackend(settings.cache_backend)
    return CacheFactory.create(backend)


@lru_cache()
def get_queue() -> QueueStrategy:
    """Click queue (singleton, backend from settings)."""
    backend = QueueBackend(settings.queue_backend)
    return QueueFactory.create(backend)


@lru_cache()
def get_window() -> VisitorWindowStrategy:
    """Visitor dedup window (singleton, backend from settings)."""
    backend = WindowBackend(settings.window_backend)
    return VisitorWindowFactory.create(backend)


@lru_cache()
def get_recorder() -> ClickRecorder:
    """
    Click recorder (singleton).

    Owns no session: it opens one per recorded click on the primary database.
    """
    return ClickRecorder(database=get_database(), window=get_window())


def get_link_service(
    db: Session = Depends(get_db),
    cache: CacheStrategy = Depends(get_cache),
) -> LinkService:
    return LinkService(db=db, cache=cache)


def get_identifier_service(db: Session = Depends(get_db)) -> IdentifierService:
    return IdentifierService(db=db)


def get_analytics_service(db: Session = Depends(get_analytics_db)) -> AnalyticsService:
    """Reads go to the replica when one is configured."""
    return AnalyticsService(db=db)


def get_quota() -> Quota:
    """
    Limits for the calling account.

    Accounts and subscriptions live outside this service; until they are wired
    in, every caller gets the configured defaults.
    """
    return Quota(
        max_keywords=settings.max_keywords,
        max_identifiers=settings.max_identifiers_per_owner,
    )
