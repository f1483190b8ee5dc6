"""Sliding-window rate limiting.

Used by the HTTP transport to throttle clients by address.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from collections.abc import Callable


class RateLimitExceeded(Exception):
    """Raised when rate limit is exceeded."""

    pass


class RateLimiter:
    """Sliding window rate limiter.

    Tracks request timestamps per key and enforces a maximum number of
    requests within the window.

    Example:
        limiter = RateLimiter(window_seconds=60.0)
        try:
            limiter.check("10.0.0.7", limit=120)
        except RateLimitExceeded:
            print("Too many requests!")
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            window_seconds: Size of the sliding window in seconds.
            clock: Time source, seconds as float.

        Raises:
            ValueError: If window_seconds is not positive.
        """
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self._window_seconds = window_seconds
        self._clock = clock
        self._buckets: dict[str, list[float]] = defaultdict(list)
        self._lock = threading.Lock()

    @property
    def window_seconds(self) -> float:
        """Get the window size in seconds."""
        return self._window_seconds

    def check(self, key: str, limit: int) -> None:
        """Record a request for ``key`` if it is within the limit.

        Args:
            key: Client identifier.
            limit: Maximum requests allowed in the window.

        Raises:
            RateLimitExceeded: If the rate limit has been exceeded.
        """
        now = self._clock()
        window_start = now - self._window_seconds

        with self._lock:
            bucket = [t for t in self._buckets[key] if t > window_start]
            self._buckets[key] = bucket
            if len(bucket) >= limit:
                raise RateLimitExceeded(
                    f"Rate limit exceeded for {key}: {limit} requests per {self._window_seconds}s"
                )
            bucket.append(now)

    def count(self, key: str) -> int:
        """Get the number of requests for ``key`` within the window."""
        window_start = self._clock() - self._window_seconds
        with self._lock:
            return len([t for t in self._buckets.get(key, []) if t > window_start])

    def reset(self, key: str | None = None) -> None:
        """Reset rate limit buckets.

        Args:
            key: If provided, only reset this key's bucket.
                 If None, reset all buckets.
        """
        with self._lock:
            if key is not None:
                self._buckets.pop(key, None)
            else:
                self._buckets.clear()
