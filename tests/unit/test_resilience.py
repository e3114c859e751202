"""Tests for in-process retries and circuit breakers."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import httpx
import pytest

from bookmark_pipeline.core.resilience import (
    CircuitOpenError,
    RetryConfig,
    _calculate_backoff,
    _is_transient_db_error,
    _is_transient_search_error,
    get_circuit_status,
    with_db_retry,
    with_search_retry,
)

FAST = RetryConfig(max_attempts=2, base_delay_seconds=0.01)


def pool_with(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    return pool


def status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://search:7700/indexes/bookmarks/documents")
    return httpx.HTTPStatusError(
        "error", request=request, response=httpx.Response(code, request=request)
    )


class TestBackoff:
    def test_exponential_and_capped(self):
        config = RetryConfig(base_delay_seconds=1.0, max_delay_seconds=5.0, jitter_factor=0)
        assert [_calculate_backoff(n, config) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_bounded(self):
        config = RetryConfig(jitter_factor=0.25)
        assert all(1.0 <= _calculate_backoff(1, config) <= 1.25 for _ in range(20))


class TestTransientClassification:
    @pytest.mark.parametrize(
        "error",
        [ConnectionRefusedError(), ConnectionResetError(), TimeoutError(), asyncio.TimeoutError()],
    )
    def test_network_errors_are_transient(self, error):
        assert _is_transient_db_error(error)
        assert _is_transient_search_error(error)

    def test_postgres_sqlstate(self):
        assert _is_transient_db_error(asyncpg.exceptions.DeadlockDetectedError())
        assert not _is_transient_db_error(asyncpg.exceptions.UniqueViolationError())

    @pytest.mark.parametrize("code,transient", [(429, True), (502, True), (400, False), (404, False)])
    def test_search_status_codes(self, code, transient):
        assert _is_transient_search_error(status_error(code)) is transient

    def test_transport_error_is_transient(self):
        assert _is_transient_search_error(httpx.ConnectError("refused"))

    def test_value_error_is_not_transient(self):
        assert not _is_transient_db_error(ValueError("bad"))
        assert not _is_transient_search_error(ValueError("bad"))


class TestWithDbRetry:
    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(side_effect=[ConnectionResetError(), {"id": "b1"}])

        row = await with_db_retry(pool_with(conn), lambda c: c.fetchrow("SELECT 1"), FAST)

        assert row == {"id": "b1"}
        assert get_circuit_status()["db"]["failures"] == 0

    @pytest.mark.asyncio
    async def test_non_transient_raises_immediately(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(side_effect=ValueError("bad query"))

        with pytest.raises(ValueError):
            await with_db_retry(pool_with(conn), lambda c: c.fetchrow("SELECT 1"), FAST)
        assert conn.fetchrow.await_count == 1

    @pytest.mark.asyncio
    async def test_prolonged_outage_opens_circuit(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(side_effect=ConnectionRefusedError())
        pool = pool_with(conn)

        for _ in range(5):
            with pytest.raises(ConnectionRefusedError):
                await with_db_retry(pool, lambda c: c.fetchrow("SELECT 1"), FAST)

        assert get_circuit_status()["db"]["is_open"] is True
        with pytest.raises(CircuitOpenError):
            await with_db_retry(pool, lambda c: c.fetchrow("SELECT 1"), FAST)


class TestWithSearchRetry:
    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        operation = AsyncMock(side_effect=[status_error(503), "ok"])
        assert await with_search_retry(operation, FAST) == "ok"
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        operation = AsyncMock(side_effect=status_error(400))
        with pytest.raises(httpx.HTTPStatusError):
            await with_search_retry(operation, FAST)
        assert operation.await_count == 1
