import time
import asyncio
import threading
from typing import Callable, Dict, Tuple


class TokenBucketRateLimiter:
    """Throttles outbound sends per delivery engine. Only ever delays, never drops."""

    def __init__(self, rate_limit_per_minute: int):
        self.rate_limit = rate_limit_per_minute
        self.tokens = rate_limit_per_minute
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()

    async def acquire(self, tokens: int = 1):
        """
        Acquires `tokens` from the bucket. Blocks until tokens are available.
        """
        if self.rate_limit <= 0:
            return  # No limit

        while True:
            async with self.lock:
                now = time.monotonic()
                time_passed = now - self.last_refill
                if time_passed > 60:  # Reset every minute
                    self.tokens = self.rate_limit
                    self.last_refill = now
                    time_passed = 0

                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return

                wait_time = 60 - time_passed

            # Wait outside lock
            if wait_time > 0:
                await asyncio.sleep(wait_time)


class FixedWindowRateLimiter:
    """
    Request quota per client key at the HTTP boundary: `max_requests`
    per `window_seconds`, counted in fixed windows.
    """

    def __init__(self, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def try_acquire(self, key: str) -> int:
        """
        Counts one request for `key`. Returns 0 when allowed, otherwise the
        number of seconds until the window resets.
        """
        if self.max_requests <= 0:
            return 0

        with self._lock:
            now = self.clock()
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0

            if count >= self.max_requests:
                self._windows[key] = (started, count)
                return max(1, int(round(started + self.window_seconds - now)))

            self._windows[key] = (started, count + 1)
            return 0

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
