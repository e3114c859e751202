"""Health check endpoint."""

import asyncio
import time
from typing import Optional

import structlog
from fastapi import APIRouter, Depends

from bookmark_pipeline import __version__
from bookmark_pipeline.config import Settings, get_settings
from bookmark_pipeline.core.resilience import get_circuit_status
from bookmark_pipeline.schemas import DependencyHealth, HealthResponse
from bookmark_pipeline.services.search_index import SearchIndexClient

router = APIRouter()
logger = structlog.get_logger(__name__)

_db_pool = None
_search_client: Optional[SearchIndexClient] = None


def set_db_pool(pool) -> None:
    """Set the database pool for this router."""
    global _db_pool
    _db_pool = pool


def set_search_client(client: Optional[SearchIndexClient]) -> None:
    global _search_client
    _search_client = client


async def check_database_health() -> DependencyHealth:
    """Round-trip one query through the pool."""
    if _db_pool is None:
        return DependencyHealth(status="unconfigured")
    start = time.perf_counter()
    try:
        async with _db_pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return DependencyHealth(status="ok", latency_ms=(time.perf_counter() - start) * 1000)
    except Exception as e:
        latency = (time.perf_counter() - start) * 1000
        return DependencyHealth(status="error", latency_ms=latency, error=str(e))


async def check_search_health() -> DependencyHealth:
    if _search_client is None:
        return DependencyHealth(status="unconfigured")
    start = time.perf_counter()
    healthy = await _search_client.health()
    latency = (time.perf_counter() - start) * 1000
    if healthy:
        return DependencyHealth(status="ok", latency_ms=latency)
    return DependencyHealth(status="error", latency_ms=latency, error="search engine unavailable")


@router.get("/health", response_model=HealthResponse)
async def health_check(settings: Settings = Depends(get_settings)) -> HealthResponse:
    """
    Check health of the service and its dependencies.

    Reports database and search engine reachability plus circuit breaker
    state. The service is "degraded" when any configured dependency fails.
    """
    database, search = await asyncio.gather(check_database_health(), check_search_health())

    database_required = settings.job_queue_mode == "postgres"
    failing = [
        name
        for name, health in (("database", database), ("search", search))
        if health.status == "error"
        or (name == "database" and database_required and health.status != "ok")
    ]
    if failing:
        logger.warning("health_degraded", failing=failing)

    return HealthResponse(
        status="degraded" if failing else "ok",
        database=database,
        search=search,
        queue_mode=settings.job_queue_mode,
        circuits=get_circuit_status(),
        version=__version__,
    )
