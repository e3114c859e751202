"""Connection resilience utilities for the database and the search engine.

Short in-process retries with exponential backoff for transient connection
failures, plus a circuit breaker per downstream service. These sit below the
job queue's own retry policy: a stage only fails its job once the in-process
budget here is exhausted.

Usage:
    from bookmark_pipeline.core.resilience import with_db_retry, with_search_retry

    row = await with_db_retry(pool, lambda conn: conn.fetchrow(query, *args))
    await with_search_retry(lambda: client.post(path, json=docs))
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

import asyncpg
import httpx
import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.25  # Add up to 25% random jitter


@dataclass
class CircuitState:
    """Track circuit breaker state for a service."""

    failures: int = 0
    last_failure: Optional[datetime] = None
    is_open: bool = False
    open_until: Optional[datetime] = None

    # Circuit opens after this many consecutive failures
    failure_threshold: int = 5
    # Circuit stays open for this many seconds before half-open test
    reset_timeout_seconds: float = 30.0


class CircuitOpenError(RuntimeError):
    """Downstream service is in its cool-down window."""

    def __init__(self, service: str):
        super().__init__(f"{service} circuit breaker is open - service recovering from outage")
        self.service = service


_db_circuit = CircuitState()
_search_circuit = CircuitState()


def _calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds before next retry
    """
    delay = config.base_delay_seconds * (config.exponential_base**attempt)
    delay = min(delay, config.max_delay_seconds)
    jitter = delay * config.jitter_factor * random.random()
    return delay + jitter


_TRANSIENT_SQLSTATES = {
    "08000",  # connection_exception
    "08003",  # connection_does_not_exist
    "08006",  # connection_failure
    "08001",  # sqlclient_unable_to_establish_sqlconnection
    "08004",  # sqlserver_rejected_establishment_of_sqlconnection
    "57P01",  # admin_shutdown
    "57P02",  # crash_shutdown
    "57P03",  # cannot_connect_now
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
}


def _is_transient_db_error(error: Exception) -> bool:
    """Check if a database error is transient and worth retrying.

    Connection errors, timeouts and pool exhaustion are transient. Query
    errors and constraint violations are not.
    """
    if isinstance(error, asyncpg.TooManyConnectionsError):
        return True

    if isinstance(
        error,
        (
            asyncpg.InterfaceError,
            asyncpg.InternalClientError,
            ConnectionRefusedError,
            ConnectionResetError,
            TimeoutError,
            asyncio.TimeoutError,
            OSError,
        ),
    ):
        return True

    if isinstance(error, asyncpg.PostgresError):
        return getattr(error, "sqlstate", None) in _TRANSIENT_SQLSTATES

    return False


def _is_transient_search_error(error: Exception) -> bool:
    """Check if a search-engine error is transient and worth retrying."""
    if isinstance(error, httpx.TransportError):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500

    return isinstance(
        error,
        (ConnectionRefusedError, ConnectionResetError, TimeoutError, asyncio.TimeoutError),
    )


def _check_circuit(circuit: CircuitState, service_name: str) -> bool:
    """Check if circuit breaker allows the request.

    Returns True if request should proceed, False if circuit is open.
    """
    if not circuit.is_open:
        return True

    now = datetime.now(timezone.utc)
    if circuit.open_until and now >= circuit.open_until:
        logger.info("circuit_half_open", service=service_name, failures=circuit.failures)
        return True
    return False


def _record_success(circuit: CircuitState, service_name: str) -> None:
    """Record successful operation, reset circuit breaker."""
    if circuit.failures > 0 or circuit.is_open:
        logger.info(
            "circuit_closed",
            service=service_name,
            previous_failures=circuit.failures,
        )
    circuit.failures = 0
    circuit.last_failure = None
    circuit.is_open = False
    circuit.open_until = None


def _record_failure(circuit: CircuitState, service_name: str) -> None:
    """Record failed operation, possibly open circuit breaker."""
    now = datetime.now(timezone.utc)
    circuit.failures += 1
    circuit.last_failure = now

    if circuit.failures >= circuit.failure_threshold:
        circuit.is_open = True
        circuit.open_until = datetime.fromtimestamp(
            now.timestamp() + circuit.reset_timeout_seconds,
            tz=timezone.utc,
        )
        logger.warning(
            "circuit_opened",
            service=service_name,
            failures=circuit.failures,
            reset_at=circuit.open_until.isoformat(),
        )


async def _run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    circuit: CircuitState,
    service: str,
    is_transient: Callable[[Exception], bool],
    config: Optional[RetryConfig],
) -> T:
    if config is None:
        config = RetryConfig()

    if not _check_circuit(circuit, service):
        raise CircuitOpenError(service)

    last_error: Optional[Exception] = None

    for attempt in range(config.max_attempts):
        try:
            result = await operation()
            _record_success(circuit, service)
            return result

        except Exception as e:
            last_error = e

            if not is_transient(e):
                logger.warning(
                    f"{service}_non_transient_error",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            delay = _calculate_backoff(attempt, config)
            logger.warning(
                f"{service}_retry_attempt",
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__,
            )

            if attempt < config.max_attempts - 1:
                await asyncio.sleep(delay)

    _record_failure(circuit, service)
    logger.error(
        f"{service}_retries_exhausted",
        attempts=config.max_attempts,
        error=str(last_error),
    )
    raise last_error  # type: ignore


async def with_db_retry(
    pool: asyncpg.Pool,
    operation: Callable[[asyncpg.Connection], Awaitable[T]],
    config: Optional[RetryConfig] = None,
) -> T:
    """Execute a database operation with retry on transient failures.

    Args:
        pool: asyncpg connection pool
        operation: Async callable that takes a connection and returns result
        config: Optional retry configuration

    Raises:
        Exception: If all retries exhausted or non-transient error
    """

    async def _attempt() -> T:
        async with pool.acquire() as conn:
            return await operation(conn)

    return await _run_with_retry(
        _attempt,
        circuit=_db_circuit,
        service="db",
        is_transient=_is_transient_db_error,
        config=config,
    )


async def with_search_retry(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
) -> T:
    """Execute a search-engine request with retry on transient failures."""
    return await _run_with_retry(
        operation,
        circuit=_search_circuit,
        service="search",
        is_transient=_is_transient_search_error,
        config=config,
    )


def get_circuit_status() -> dict:
    """Get current circuit breaker status for health checks."""

    def _describe(circuit: CircuitState) -> dict:
        return {
            "failures": circuit.failures,
            "is_open": circuit.is_open,
            "last_failure": (
                circuit.last_failure.isoformat() if circuit.last_failure else None
            ),
        }

    return {"db": _describe(_db_circuit), "search": _describe(_search_circuit)}


def reset_circuits() -> None:
    """Reset all circuit breakers. Used for testing."""
    global _db_circuit, _search_circuit
    _db_circuit = CircuitState()
    _search_circuit = CircuitState()
