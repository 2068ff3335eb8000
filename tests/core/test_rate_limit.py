"""Tests for the signing provider rate-limit guard."""

from datetime import datetime, timedelta, timezone

from esign.core.rate_limit import RateLimitGuard


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def tick(self, seconds):
        self.now += timedelta(seconds=seconds)


class TestRateLimitGuard:
    def test_starts_open(self):
        guard = RateLimitGuard()
        assert not guard.is_limited()
        assert guard.time_remaining() == 0
        assert guard.hit_count == 0

    def test_window_uses_retry_after(self):
        clock = FakeClock()
        guard = RateLimitGuard(clock=clock)

        until = guard.set_rate_limit(120)

        assert until == clock.now + timedelta(seconds=120)
        assert guard.is_limited()
        assert guard.time_remaining() == 120
        clock.tick(30.5)
        assert guard.time_remaining() == 90

    def test_default_window_when_retry_after_missing(self):
        clock = FakeClock()
        guard = RateLimitGuard(default_retry_after=3600, clock=clock)
        guard.set_rate_limit(None)
        assert guard.time_remaining() == 3600
        guard.set_rate_limit(0)
        assert guard.status().retry_after == 3600

    def test_window_closes_lazily(self):
        clock = FakeClock()
        guard = RateLimitGuard(clock=clock)
        guard.set_rate_limit(60)

        clock.tick(61)

        assert not guard.is_limited()
        state = guard.status()
        assert state.is_limited is False
        assert state.retry_after_date is None
        assert state.hit_count == 1

    def test_reset(self):
        guard = RateLimitGuard()
        guard.set_rate_limit(600)
        guard.reset()
        assert not guard.is_limited()
        assert guard.hit_count == 1

    def test_status_to_dict(self):
        clock = FakeClock()
        guard = RateLimitGuard(clock=clock)
        guard.set_rate_limit(10)
        guard.set_rate_limit(20)

        data = guard.status().to_dict()

        assert data["is_limited"] is True
        assert data["hit_count"] == 2
        assert data["retry_after"] == 20
        assert data["seconds_remaining"] == 20
        assert data["last_hit"] == clock.now.isoformat()
