"""Circuit breaker guarding remote calls across a whole sync run."""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failures exceeded threshold, blocking requests
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreakerOpenError(Exception):
    """Raised when an operation is blocked by an open circuit breaker."""

    def __init__(self, message: str, *, state: CircuitState, retry_in: float | None = None):
        super().__init__(message)
        self.state = state
        self.retry_in = retry_in


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    States:
    - CLOSED: calls pass; ``failure_threshold`` consecutive failures open it
    - OPEN: calls are rejected without running until ``reset_timeout`` seconds
      have passed since the last failure; the next call then moves to HALF_OPEN
    - HALF_OPEN: at most ``half_open_max_attempts`` trial calls are admitted;
      any failure reopens, ``success_threshold`` consecutive successes close

    All counter mutations happen under a ``threading.Lock`` so the breaker can
    be shared by concurrent tasks (and threads) safely. Time is measured with
    ``time.monotonic``.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max_attempts: int = 3,
        success_threshold: int = 2,
        name: str = "remote",
    ):
        """Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening the circuit
            reset_timeout: Seconds after the last failure before a trial is allowed
            half_open_max_attempts: Trial calls admitted while half-open
            success_threshold: Consecutive half-open successes needed to close
            name: Label used in log events
        """
        if failure_threshold < 1:
            msg = "failure_threshold must be at least 1"
            raise ValueError(msg)
        if success_threshold < 1:
            msg = "success_threshold must be at least 1"
            raise ValueError(msg)
        if success_threshold > half_open_max_attempts:
            msg = "success_threshold cannot exceed half_open_max_attempts"
            raise ValueError(msg)

        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_attempts = half_open_max_attempts
        self.success_threshold = success_threshold
        self.name = name

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.half_open_attempts = 0
        self.last_failure_time: float | None = None
        self.opened_count = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _transition(self, new_state: CircuitState) -> None:
        previous = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self.opened_count += 1
        if new_state in (CircuitState.HALF_OPEN, CircuitState.CLOSED):
            self.success_count = 0
            self.half_open_attempts = 0
        if new_state == CircuitState.CLOSED:
            self.failure_count = 0
            self.last_failure_time = None

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"circuit_breaker_{new_state.value}",
            extra={
                "breaker": self.name,
                "previous_state": previous.value,
                "failure_count": self.failure_count,
            },
        )

    def can_proceed(self) -> bool:
        """Check whether a call may run now, claiming a trial slot when half-open.

        Returns:
            True if the call can proceed, False if it must be rejected
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                elapsed = time.monotonic() - (self.last_failure_time or 0.0)
                if elapsed < self.reset_timeout:
                    return False
                self._transition(CircuitState.HALF_OPEN)

            if self.half_open_attempts >= self.half_open_max_attempts:
                return False
            self.half_open_attempts += 1
            return True

    def record_success(self) -> None:
        """Record a successful operation."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self._transition(CircuitState.CLOSED)
                return
            # Only consecutive failures count towards opening
            self.failure_count = 0

    def record_failure(self) -> None:
        """Record a failed operation, opening the circuit when warranted."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.monotonic()

            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
                return

            if self._state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
                self._transition(CircuitState.OPEN)

    def retry_in(self) -> float | None:
        """Seconds until an open circuit admits a trial call, None when not open."""
        with self._lock:
            if self._state != CircuitState.OPEN or self.last_failure_time is None:
                return None
            elapsed = time.monotonic() - self.last_failure_time
            return max(0.0, self.reset_timeout - elapsed)

    def reset(self) -> None:
        """Reset circuit breaker to initial state."""
        with self._lock:
            logger.info(
                "circuit_breaker_reset",
                extra={
                    "breaker": self.name,
                    "previous_state": self._state.value,
                    "failure_count": self.failure_count,
                },
            )
            self._state = CircuitState.CLOSED
            self.failure_count = 0
            self.success_count = 0
            self.half_open_attempts = 0
            self.last_failure_time = None

    def get_stats(self) -> dict[str, Any]:
        """Get current circuit breaker statistics."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self.failure_count,
                "success_count": self.success_count,
                "half_open_attempts": self.half_open_attempts,
                "failure_threshold": self.failure_threshold,
                "success_threshold": self.success_threshold,
                "half_open_max_attempts": self.half_open_max_attempts,
                "reset_timeout": self.reset_timeout,
                "last_failure_time": self.last_failure_time,
                "opened_count": self.opened_count,
            }

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Execute ``operation`` protected by the circuit breaker.

        Raises:
            CircuitBreakerOpenError: If the circuit rejects the call; the
                operation is not invoked
            Exception: Whatever ``operation`` raised (the failure is recorded)
        """
        if not self.can_proceed():
            state = self.state
            msg = f"Circuit breaker '{self.name}' is {state.value}"
            raise CircuitBreakerOpenError(msg, state=state, retry_in=self.retry_in())

        try:
            result = await operation()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result
