"""Sliding-window rate limiting for outbound remote calls."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Shared, FIFO rate limiter with a sliding time window.

    One instance is shared by every concurrent upload task of an engine so the
    request budget is enforced globally. Waiters queue on an ``asyncio.Lock``
    and are served in arrival order; the lock is held while sleeping so a late
    caller can never overtake one that is already waiting.
    """

    def __init__(self, max_requests: int = 240, window_seconds: float = 60.0) -> None:
        """Initialize rate limiter.

        Args:
            max_requests: Maximum requests allowed inside the trailing window
            window_seconds: Length of the window in seconds
        """
        if max_requests < 1:
            msg = "max_requests must be at least 1"
            raise ValueError(msg)
        if window_seconds <= 0:
            msg = "window_seconds must be positive"
            raise ValueError(msg)

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._timestamps: deque[float] = deque(maxlen=max_requests)
        self._lock = asyncio.Lock()
        self._total_waits = 0
        self._total_wait_seconds = 0.0

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    async def wait_for_slot(self) -> None:
        """Suspend until a request slot is free, then claim it."""
        async with self._lock:
            while True:
                now = time.monotonic()
                self._prune(now)
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return

                wait_seconds = self.window_seconds - (now - self._timestamps[0])
                self._total_waits += 1
                self._total_wait_seconds += max(wait_seconds, 0.0)
                logger.debug(
                    "rate_limit_wait",
                    extra={
                        "wait_seconds": round(wait_seconds, 3),
                        "max_requests": self.max_requests,
                        "window_seconds": self.window_seconds,
                    },
                )
                await asyncio.sleep(max(wait_seconds, 0.001))

    def available_slots(self) -> int:
        """Return how many requests could start right now without waiting."""
        self._prune(time.monotonic())
        return self.max_requests - len(self._timestamps)

    def reset(self) -> None:
        """Forget all recorded requests."""
        self._timestamps.clear()
        logger.debug("rate_limit_reset")

    def get_stats(self) -> dict[str, float | int]:
        return {
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
            "in_window": len(self._timestamps),
            "total_waits": self._total_waits,
            "total_wait_seconds": round(self._total_wait_seconds, 3),
        }
