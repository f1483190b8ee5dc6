"""Tests for the sliding window rate limiter."""

from __future__ import annotations

import pytest

from mcp_engine.ratelimiter import RateLimiter, RateLimitExceeded


class FakeClock:
    """Manually advanced clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestRateLimiterInit:
    """Tests for RateLimiter initialization."""

    def test_creates_with_default_window(self) -> None:
        """RateLimiter uses 60s window by default."""
        assert RateLimiter().window_seconds == 60.0

    def test_rejects_zero_window(self) -> None:
        """RateLimiter rejects zero window size."""
        with pytest.raises(ValueError, match="window_seconds must be positive"):
            RateLimiter(window_seconds=0)


class TestRateLimiterCheck:
    """Tests for check."""

    def test_allows_exactly_at_limit(self) -> None:
        """Exactly limit number of requests are allowed."""
        limiter = RateLimiter()
        for _ in range(10):
            limiter.check("10.0.0.1", limit=10)
        assert limiter.count("10.0.0.1") == 10

    def test_blocks_over_limit(self) -> None:
        """The request after the limit raises."""
        limiter = RateLimiter()
        for _ in range(3):
            limiter.check("10.0.0.1", limit=3)
        with pytest.raises(RateLimitExceeded, match="10.0.0.1"):
            limiter.check("10.0.0.1", limit=3)

    def test_keys_are_independent(self) -> None:
        """Each key has its own bucket."""
        limiter = RateLimiter()
        limiter.check("a", limit=1)
        limiter.check("b", limit=1)
        with pytest.raises(RateLimitExceeded):
            limiter.check("a", limit=1)

    def test_window_slides(self) -> None:
        """Requests older than the window no longer count."""
        clock = FakeClock()
        limiter = RateLimiter(window_seconds=10.0, clock=clock)
        limiter.check("a", limit=1)
        clock.now += 10.5
        limiter.check("a", limit=1)
        assert limiter.count("a") == 1


class TestRateLimiterReset:
    """Tests for reset."""

    def test_reset_single_key(self) -> None:
        """Resetting one key leaves others alone."""
        limiter = RateLimiter()
        limiter.check("a", limit=5)
        limiter.check("b", limit=5)
        limiter.reset("a")
        assert limiter.count("a") == 0
        assert limiter.count("b") == 1

    def test_reset_all(self) -> None:
        """Resetting without a key clears everything."""
        limiter = RateLimiter()
        limiter.check("a", limit=5)
        limiter.reset()
        assert limiter.count("a") == 0
