"""Retry utilities for remote operations.

Errors are classified once (``classify_error``) and the retry decision follows
from the class: network, rate-limit and 5xx failures are retried with
exponential backoff; authentication, validation and unknown failures surface
immediately without consuming retry budget.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from highlight_sync.core.backoff import compute_backoff_delay
from highlight_sync.domain.exceptions import (
    ErrorType,
    RateLimitError,
    RemoteServiceError,
    RequestTimeoutError,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRIABLE_ERROR_TYPES = frozenset(
    {ErrorType.NETWORK, ErrorType.RATE_LIMIT, ErrorType.SERVER_ERROR}
)


def classify_status_code(status_code: int) -> ErrorType:
    """Map an HTTP status code onto the error taxonomy."""
    if status_code == 429:
        return ErrorType.RATE_LIMIT
    if status_code in (401, 403):
        return ErrorType.AUTH_ERROR
    if status_code in (400, 404, 409, 422):
        return ErrorType.VALIDATION
    if 500 <= status_code < 600:
        return ErrorType.SERVER_ERROR
    return ErrorType.UNKNOWN


def classify_error(error: BaseException) -> ErrorType:
    """Determine the error class of ``error``.

    Domain errors carry their own classification. Raw ``httpx`` errors and
    builtin timeouts/connection errors are mapped for callers that bypass the
    remote client. Anything else is ``UNKNOWN``.
    """
    if isinstance(error, RemoteServiceError):
        return error.error_type
    if isinstance(error, httpx.HTTPStatusError):
        return classify_status_code(error.response.status_code)
    if isinstance(error, httpx.TransportError):
        return ErrorType.NETWORK
    if isinstance(error, (TimeoutError, ConnectionError)):
        return ErrorType.NETWORK
    return ErrorType.UNKNOWN


def is_retriable_error(error: BaseException) -> bool:
    """Return True when ``error`` is worth another attempt."""
    if isinstance(error, RemoteServiceError):
        return error.retriable
    return classify_error(error) in RETRIABLE_ERROR_TYPES


@dataclass
class RetryStats:
    """Counters accumulated across every ``execute`` call of one manager."""

    attempts: int = 0
    retries: int = 0
    successful_retries: int = 0
    exhausted: int = 0
    fatal: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "attempts": self.attempts,
            "retries": self.retries,
            "successful_retries": self.successful_retries,
            "exhausted": self.exhausted,
            "fatal": self.fatal,
        }


class RetryManager:
    """Bounded exponential-backoff retry for a single async operation."""

    def __init__(
        self,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        backoff_multiplier: float = 2.0,
        jitter: bool = True,
        attempt_timeout: float | None = 60.0,
        on_retry: Callable[[BaseException, int, float], None] | None = None,
    ) -> None:
        """Initialize retry manager.

        Args:
            max_retries: Additional attempts after the first one
            initial_delay: Delay before the first retry, in seconds
            max_delay: Cap for the un-jittered delay
            backoff_multiplier: Growth factor per attempt
            jitter: Add up to 25% random delay on top of the backoff
            attempt_timeout: Per-attempt time budget; None disables it
            on_retry: Called with (error, attempt, delay) before each retry sleep
        """
        if max_retries < 0:
            msg = "max_retries must be non-negative"
            raise ValueError(msg)
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.jitter = jitter
        self.attempt_timeout = attempt_timeout
        self.on_retry = on_retry
        self.stats = RetryStats()

    def compute_delay(self, attempt: int, error: BaseException | None = None) -> float:
        """Delay before retrying after ``attempt`` (0-indexed) failed."""
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return max(0.0, float(error.retry_after))
        return compute_backoff_delay(
            attempt,
            initial_delay=self.initial_delay,
            multiplier=self.backoff_multiplier,
            max_delay=self.max_delay,
            jitter=self.jitter,
        )

    async def _run_attempt(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.attempt_timeout is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=self.attempt_timeout)
        except TimeoutError as exc:
            msg = f"Operation timed out after {self.attempt_timeout}s"
            raise RequestTimeoutError(msg) from exc

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        is_retriable: Callable[[BaseException], bool] | None = None,
        *,
        operation_name: str = "remote_call",
        correlation_id: str | None = None,
    ) -> T:
        """Run ``operation`` with retries.

        The final error is re-raised unchanged once the budget is spent.
        Errors rejected by ``is_retriable`` are raised on the first occurrence.
        """
        should_retry = is_retriable or is_retriable_error
        attempt = 0

        while True:
            self.stats.attempts += 1
            try:
                result = await self._run_attempt(operation)
            except Exception as exc:
                if not should_retry(exc):
                    self.stats.fatal += 1
                    logger.debug(
                        "retry_fatal_error",
                        extra={
                            "correlation_id": correlation_id,
                            "operation": operation_name,
                            "attempt": attempt + 1,
                            "error_type": classify_error(exc).value,
                            "error": str(exc),
                        },
                    )
                    raise

                if attempt >= self.max_retries:
                    self.stats.exhausted += 1
                    logger.warning(
                        "retry_exhausted",
                        extra={
                            "correlation_id": correlation_id,
                            "operation": operation_name,
                            "total_attempts": attempt + 1,
                            "error_type": classify_error(exc).value,
                            "error": str(exc),
                        },
                    )
                    raise

                delay = self.compute_delay(attempt, exc)
                logger.debug(
                    "retrying_after_transient_error",
                    extra={
                        "correlation_id": correlation_id,
                        "operation": operation_name,
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "delay_seconds": round(delay, 3),
                        "error": str(exc),
                    },
                )
                if self.on_retry is not None:
                    self.on_retry(exc, attempt + 1, delay)

                self.stats.retries += 1
                await asyncio.sleep(delay)
                attempt += 1
                continue

            if attempt > 0:
                self.stats.successful_retries += 1
                logger.info(
                    "retry_succeeded",
                    extra={
                        "correlation_id": correlation_id,
                        "operation": operation_name,
                        "total_attempts": attempt + 1,
                    },
                )
            return result

    def get_stats(self) -> dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            **self.stats.as_dict(),
        }
