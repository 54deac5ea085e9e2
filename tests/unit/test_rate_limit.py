"""Tests for the per-client rate limiter."""

from halochat.core.rate_limit import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestRateLimiter:

    def test_allows_up_to_limit(self):
        limiter = RateLimiter(3, 60, clock=FakeClock())
        assert [limiter.allow("a") for _ in range(4)] == [True, True, True, False]

    def test_clients_isolated(self):
        limiter = RateLimiter(1, 60, clock=FakeClock())
        assert limiter.allow("a")
        assert limiter.allow("b")
        assert not limiter.allow("a")

    def test_window_expiry(self):
        clock = FakeClock()
        limiter = RateLimiter(1, 60, clock=clock)
        assert limiter.allow("a")
        clock.now += 59
        assert not limiter.allow("a")
        clock.now += 2
        assert limiter.allow("a")

    def test_reset(self):
        limiter = RateLimiter(1, 60, clock=FakeClock())
        limiter.allow("a")
        limiter.reset()
        assert limiter.allow("a")

    def test_idle_clients_forgotten(self):
        clock = FakeClock()
        limiter = RateLimiter(5, 60, clock=clock)
        for n in range(100):
            limiter.allow(f"client-{n}")
        assert limiter.tracked_clients() == 100
        clock.now += 61
        assert limiter.allow("late")
        assert limiter.tracked_clients() == 1
