"""asyncpg pool creation shared by the API, workers and CLI."""

import asyncpg
import structlog

from bookmark_pipeline.config import Settings

logger = structlog.get_logger(__name__)


async def create_pool(settings: Settings) -> asyncpg.Pool:
    """
    Create the connection pool for the bookmark store and job tables.

    Raises:
        ValueError: If DATABASE_URL is not set
    """
    if not settings.database_url:
        raise ValueError("DATABASE_URL is not set")

    pool = await asyncpg.create_pool(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        command_timeout=settings.db_command_timeout,
    )
    logger.info(
        "database_pool_initialized",
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    return pool
