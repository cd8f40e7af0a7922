"""
Database handles for the link store and the click event log.

A Database object owns one engine and its session factory. Components receive
the handle explicitly and open a scoped session per request, per recorded click
or per analytics query. The only module-level state is the pair of handles built
from settings, cached in the same way dependencies.py caches the other
infrastructure singletons.
"""

from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from wordlink_app.config import settings

Base = declarative_base()


class Database:
    """Engine + session factory for one database URL."""

    def __init__(self, url: str, echo: bool = False):
        connect_args = {}
        if url.startswith("sqlite"):
            # Sessions are used from the click recorder's worker threads
            connect_args = {"check_same_thread": False, "timeout": 30}

        self.url = url
        self.engine = create_engine(url, echo=echo, connect_args=connect_args, future=True)
        self.session_factory = sessionmaker(
            bind=self.engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )

    def create_all(self) -> None:
        """Create tables (migrations are out of scope for the demo stack)."""
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """
        Transactional scope: commit on success, rollback on any error.

        Usage:
            with database.session_scope() as session:
                session.execute(...)
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


@lru_cache()
def get_database() -> Database:
    """Primary database (links, identifiers, click events)."""
    return Database(settings.database_url, echo=False)


@lru_cache()
def get_analytics_database() -> Database:
    """Reporting database; falls back to the primary when no replica is configured."""
    if not settings.analytics_database_url:
        return get_database()
    return Database(settings.analytics_database_url, echo=False)


def get_db() -> Iterator[Session]:
    """FastAPI dependency: one session per request."""
    db = get_database().session_factory()
    try:
        yield db
    finally:
        db.close()


def get_analytics_db() -> Iterator[Session]:
    """FastAPI dependency: one reporting session per request."""
    db = get_analytics_database().session_factory()
    try:
        yield db
    finally:
        db.close()
