"""
Unit tests for the rate limiter and per-user cooldown.
"""

import pytest

from memory_mesh.core.cooldown import UserCooldown
from memory_mesh.core.rate_limiter import RateLimiter


class TestRateLimiter:

    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            RateLimiter(max_requests_per_minute=0)

    def test_budget_per_minute(self):
        limiter = RateLimiter(max_requests_per_minute=2)
        limiter._get_current_minute = lambda: 42

        limiter.record_request()
        assert limiter.can_make_request() is True
        assert limiter.get_wait_time_until_available() == 0.0

        limiter.record_request()
        assert limiter.can_make_request() is False
        assert 0.0 < limiter.get_wait_time_until_available() <= 60.0

    async def test_acquire_records_request(self):
        limiter = RateLimiter(max_requests_per_minute=10000)
        limiter._get_current_minute = lambda: 42

        await limiter.acquire()
        await limiter.acquire()

        assert limiter.get_requests_this_minute() == 2


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestUserCooldown:

    def test_window_expires(self):
        clock = FakeClock()
        cooldown = UserCooldown(600, clock=clock)

        cooldown.mark("user123")
        assert cooldown.is_cooling("user123") is True
        assert cooldown.is_cooling("user456") is False

        clock.now += 600
        assert cooldown.is_cooling("user123") is False

    def test_clear(self):
        cooldown = UserCooldown(600, clock=FakeClock())
        cooldown.mark("user123")

        cooldown.clear("user123")

        assert cooldown.is_cooling("user123") is False
