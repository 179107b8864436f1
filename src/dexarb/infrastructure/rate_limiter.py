"""Rolling-window rate limiter for outbound price requests."""
import time
import asyncio
from collections import deque
from threading import Lock
from typing import Any, Callable, Deque, Dict
from loguru import logger

from dexarb.infrastructure.error_handling import RateLimitExceeded


class RateLimiter:
    """Allows at most `max_requests` starts within any trailing `time_window`."""

    def __init__(
        self,
        max_requests: int,
        time_window: float = 60.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize rate limiter.

        Args:
            max_requests: Maximum number of requests allowed in the window
            time_window: Window length in seconds
            name: Limiter name for logging
            clock: Monotonic time source
        """
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")

        self.max_requests = max_requests
        self.time_window = time_window
        self.name = name
        self._clock = clock
        self.requests: Deque[float] = deque()
        self.lock = Lock()

    def _evict(self, now: float):
        # a timestamp exactly one window old no longer counts
        while self.requests and now - self.requests[0] >= self.time_window:
            self.requests.popleft()

    def try_acquire(self) -> bool:
        """Take a permit if one is free right now. Never blocks."""
        with self.lock:
            now = self._clock()
            self._evict(now)

            if len(self.requests) < self.max_requests:
                self.requests.append(now)
                return True

            return False

    async def acquire(
        self,
        timeout: float = 5.0,
        poll_interval: float = 0.1,
        raise_on_timeout: bool = False,
    ) -> bool:
        """
        Wait up to `timeout` seconds for a permit.

        Returns:
            True once a permit was taken, False on timeout

        Raises:
            RateLimitExceeded: on timeout when raise_on_timeout is set
        """
        if self.try_acquire():
            return True

        logger.debug(f"Rate limited: {self.name} - waiting for availability")
        deadline = self._clock() + timeout

        while True:
            remaining_time = deadline - self._clock()
            if remaining_time <= 0:
                break

            wait = min(max(self.time_until_available(), 0.001), poll_interval, remaining_time)
            await asyncio.sleep(wait)

            if self.try_acquire():
                return True

        if raise_on_timeout:
            raise RateLimitExceeded(f"Rate limit timeout exceeded for {self.name}")
        return False

    def remaining(self) -> int:
        """Permits still available in the current window."""
        with self.lock:
            self._evict(self._clock())
            return self.max_requests - len(self.requests)

    def time_until_available(self) -> float:
        """Seconds until the next permit frees up (0 if one is free now)."""
        with self.lock:
            now = self._clock()
            self._evict(now)

            if len(self.requests) < self.max_requests:
                return 0.0

            return max(0.0, self.requests[0] + self.time_window - now)

    def reset(self):
        with self.lock:
            self.requests.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get rate limiter statistics."""
        with self.lock:
            self._evict(self._clock())

            return {
                'name': self.name,
                'current_requests': len(self.requests),
                'max_requests': self.max_requests,
                'time_window': self.time_window,
                'utilization': len(self.requests) / self.max_requests,
            }
