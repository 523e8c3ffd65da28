"""Tests for error classification and the retry manager."""

from __future__ import annotations

import asyncio
import unittest
from unittest.mock import AsyncMock

import httpx
import pytest

from highlight_sync.core.backoff import MAX_JITTER_RATIO, compute_backoff_delay
from highlight_sync.domain.exceptions import (
    AuthenticationError,
    ErrorType,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
    ValidationError,
)
from highlight_sync.utils.retry_utils import (
    RetryManager,
    classify_error,
    classify_status_code,
    is_retriable_error,
)


class TestClassification(unittest.TestCase):
    def test_status_codes(self):
        assert classify_status_code(429) == ErrorType.RATE_LIMIT
        assert classify_status_code(401) == ErrorType.AUTH_ERROR
        assert classify_status_code(403) == ErrorType.AUTH_ERROR
        assert classify_status_code(400) == ErrorType.VALIDATION
        assert classify_status_code(422) == ErrorType.VALIDATION
        assert classify_status_code(503) == ErrorType.SERVER_ERROR
        assert classify_status_code(418) == ErrorType.UNKNOWN

    def test_domain_errors_carry_their_type(self):
        assert classify_error(NetworkError("x")) == ErrorType.NETWORK
        assert classify_error(RequestTimeoutError("x")) == ErrorType.NETWORK
        assert classify_error(RateLimitError()) == ErrorType.RATE_LIMIT
        assert classify_error(AuthenticationError("x")) == ErrorType.AUTH_ERROR

    def test_builtin_and_httpx_errors(self):
        request = httpx.Request("GET", "https://example.test")
        response = httpx.Response(502, request=request)
        status_error = httpx.HTTPStatusError("bad gateway", request=request, response=response)

        assert classify_error(status_error) == ErrorType.SERVER_ERROR
        assert classify_error(httpx.ConnectError("refused")) == ErrorType.NETWORK
        assert classify_error(TimeoutError()) == ErrorType.NETWORK
        assert classify_error(ConnectionResetError()) == ErrorType.NETWORK
        assert classify_error(KeyError("x")) == ErrorType.UNKNOWN

    def test_retriability(self):
        assert is_retriable_error(ServerError("x"))
        assert is_retriable_error(RateLimitError())
        assert is_retriable_error(TimeoutError())
        assert not is_retriable_error(ValidationError("x"))
        assert not is_retriable_error(AuthenticationError("x"))
        assert not is_retriable_error(ValueError("x"))


class TestBackoff(unittest.TestCase):
    def test_exponential_growth_is_capped(self):
        delays = [
            compute_backoff_delay(attempt, initial_delay=1.0, max_delay=5.0, jitter=False)
            for attempt in range(5)
        ]
        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_within_bounds(self):
        for _ in range(50):
            delay = compute_backoff_delay(2, initial_delay=1.0, max_delay=30.0)
            assert 4.0 <= delay <= 4.0 * (1 + MAX_JITTER_RATIO)


class TestRetryManager:
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        operation = AsyncMock(side_effect=[ServerError("boom"), NetworkError("reset"), "ok"])
        manager = RetryManager(max_retries=3, initial_delay=0.0, jitter=False)

        assert await manager.execute(operation) == "ok"
        assert operation.await_count == 3
        assert manager.get_stats()["successful_retries"] == 1

    @pytest.mark.asyncio
    async def test_fatal_errors_are_not_retried(self):
        operation = AsyncMock(side_effect=ValidationError("bad payload"))
        manager = RetryManager(max_retries=3, initial_delay=0.0)

        with pytest.raises(ValidationError):
            await manager.execute(operation)
        assert operation.await_count == 1
        assert manager.stats.fatal == 1

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self):
        operation = AsyncMock(side_effect=ServerError("still down"))
        manager = RetryManager(max_retries=2, initial_delay=0.0, jitter=False)

        with pytest.raises(ServerError, match="still down"):
            await manager.execute(operation)
        assert operation.await_count == 3
        assert manager.stats.exhausted == 1

    @pytest.mark.asyncio
    async def test_retry_after_overrides_backoff(self):
        delays = []
        operation = AsyncMock(side_effect=[RateLimitError(retry_after=0.05), "ok"])
        manager = RetryManager(
            max_retries=1,
            initial_delay=10.0,
            jitter=False,
            on_retry=lambda exc, attempt, delay: delays.append(delay),
        )

        assert await manager.execute(operation) == "ok"
        assert delays == [0.05]

    @pytest.mark.asyncio
    async def test_attempt_timeout_becomes_timeout_error(self):
        async def _hang():
            await asyncio.sleep(1)

        manager = RetryManager(max_retries=1, initial_delay=0.0, jitter=False, attempt_timeout=0.02)

        with pytest.raises(RequestTimeoutError):
            await manager.execute(_hang)
        assert manager.stats.attempts == 2

    @pytest.mark.asyncio
    async def test_custom_predicate(self):
        operation = AsyncMock(side_effect=[KeyError("flaky"), "ok"])
        manager = RetryManager(max_retries=1, initial_delay=0.0)

        result = await manager.execute(operation, lambda exc: isinstance(exc, KeyError))
        assert result == "ok"
