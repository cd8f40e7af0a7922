"""
Test configuration and fixtures for the keyword link service.
This centralizes all test setup, making individual tests clean.

Every test gets its own file-backed SQLite database (the click recorder
writes from worker threads, which an in-memory SQLite cannot share) and
in-memory cache / queue / visitor window.
"""

import os
import tempfile

# Settings are read at import time: pin in-process backends before importing the app
_TEST_DIR = tempfile.mkdtemp(prefix="wordlink-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_DIR}/app.db")
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("QUEUE_BACKEND", "memory")
os.environ.setdefault("WINDOW_BACKEND", "memory")
os.environ.setdefault("EMBEDDED_WORKER", "false")
os.environ.setdefault("SECRET_KEY", "test-salt")
os.environ.setdefault("TRUSTED_PROXIES", '["testclient"]')

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from main import app
from wordlink_app.cache.strategies import InMemoryCache
from wordlink_app.database.connection import Database, get_analytics_db, get_db
from wordlink_app.dependencies import get_cache, get_queue
from wordlink_app.hit_processor.click_worker import ClickWorker
from wordlink_app.queue.strategies import InMemoryQueue
from wordlink_app.schemas.click import VisitContext
from wordlink_app.services.click_recorder import ClickRecorder
from wordlink_app.services.link_service import LinkService
from wordlink_app.window.strategies import InMemoryVisitorWindow


@pytest.fixture(scope="function")
def database(tmp_path):
    """
    Create a fresh database for each test.
    This ensures tests are isolated and don't affect each other.
    """
    db = Database(f"sqlite:///{tmp_path}/test.db")
    db.create_all()
    try:
        yield db
    finally:
        db.drop_all()
        db.dispose()


@pytest.fixture(scope="function")
def db_session(database):
    session = database.session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def queue():
    return InMemoryQueue(max_length=1000)


@pytest.fixture
def window():
    return InMemoryVisitorWindow(ttl_seconds=86400)


@pytest.fixture
def link_service(db_session, cache):
    return LinkService(db=db_session, cache=cache)


@pytest.fixture
def recorder(database, window):
    return ClickRecorder(database=database, window=window)


@pytest.fixture
def worker(queue, recorder):
    return ClickWorker(queue=queue, recorder=recorder, retry_backoff=0, block_ms=10)


@pytest.fixture
def make_visit():
    """Factory for VisitContext with sensible defaults."""
    def _make(visitor_id="visitor-a", clicked_at=None, **fields):
        return VisitContext(
            visitor_id=visitor_id,
            clicked_at=clicked_at or datetime.now(timezone.utc),
            **fields,
        )
    return _make


@pytest.fixture(scope="function")
def client(database, cache, queue):
    """
    Create a test client with database, cache and queue dependencies overridden.
    This is the main fixture that HTTP tests will use.
    """
    def override_get_db():
        session = database.session_factory()
        try:
            yield session
        finally:
            session.close()

    # Override the infrastructure dependencies
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_analytics_db] = override_get_db
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_queue] = lambda: queue

    # Create test client
    with TestClient(app) as test_client:
        yield test_client

    # Clean up overrides
    app.dependency_overrides.clear()
