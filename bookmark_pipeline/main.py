"""Bookmark Pipeline - FastAPI application (enqueue API, health, metrics)."""

import traceback
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI

from bookmark_pipeline import __version__
from bookmark_pipeline.config import get_settings
from bookmark_pipeline.core.logging import configure_logging
from bookmark_pipeline.core.sentry import init_sentry
from bookmark_pipeline.db import create_pool
from bookmark_pipeline.jobs.broker import get_job_queue, reset_job_queue
from bookmark_pipeline.routers import health, metrics, queues
from bookmark_pipeline.services.search_index import SearchIndexClient

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()
    logger.info(
        "service_starting",
        version=__version__,
        host=settings.service_host,
        port=settings.service_port,
        queue_mode=settings.job_queue_mode,
    )

    db_pool = None
    if settings.database_url:
        try:
            db_pool = await create_pool(settings)
        except Exception as e:
            logger.error(
                "database_pool_failed",
                error=str(e),
                traceback=traceback.format_exc(),
            )
    else:
        logger.warning("database_not_configured")

    health.set_db_pool(db_pool)
    queues.set_db_pool(db_pool)

    if db_pool is not None or settings.job_queue_mode == "memory":
        get_job_queue(db_pool)

    search_client = SearchIndexClient.from_settings(settings)
    health.set_search_client(search_client)

    yield

    logger.info("service_shutting_down")
    await search_client.close()
    health.set_search_client(None)
    reset_job_queue()
    if db_pool is not None:
        await db_pool.close()
        logger.info("database_pool_closed")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    init_sentry(settings, component="api")

    app = FastAPI(
        title="Bookmark Pipeline",
        description="Job submission and monitoring for the bookmark content pipeline",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(health.router, tags=["health"])
    app.include_router(metrics.router, tags=["metrics"])
    app.include_router(queues.router)
    return app


app = create_app()
