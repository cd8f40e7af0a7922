import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from wordlink_app.config import settings
from wordlink_app.database.connection import get_database
from wordlink_app.api.v1 import analytics, links, identifiers, redirect
from wordlink_app.observability import configure_logging

# Import models to ensure they're registered with Base
from wordlink_app.models import Link, Identifier, ClickEvent  # noqa: F401

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and, when configured, run the click worker in-process."""
    configure_logging()
    get_database().create_all()

    worker = None
    worker_task = None
    if settings.embedded_worker:
        from wordlink_app.hit_processor.click_worker import build_worker
        worker = build_worker()
        worker_task = asyncio.create_task(worker.start(warm=settings.window_warm_on_start))

    logger.info("Application started", app=settings.app_name, environment=settings.environment,
                embedded_worker=settings.embedded_worker)
    yield

    if worker is not None:
        worker.stop()
        try:
            await asyncio.wait_for(worker_task, timeout=settings.queue_block_ms / 1000 + 5)
        except asyncio.TimeoutError:
            logger.warning("Click worker did not stop in time, cancelling")
            worker_task.cancel()
        # Record what is still queued in-process before going away
        await worker.drain()

    logger.info("Application stopped")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Keyword links: redirect resolution and click analytics",
    debug=settings.debug,
    lifespan=lifespan,
)


@app.get("/")
def read_root():
    """Root endpoint with API information"""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "docs": "/docs",
    }


@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "environment": settings.environment}


@app.get("/metrics", include_in_schema=False)
def metrics():
    """Prometheus scrape endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


######## Include routers (the keyword redirect catch-all must stay last)
app.include_router(links.router, prefix="/api/v1")
app.include_router(identifiers.router, prefix="/api/v1")
app.include_router(analytics.router, prefix="/api/v1")
app.include_router(redirect.router)
