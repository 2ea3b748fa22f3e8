"""Tests for per-source sliding-window rate limits."""

from trend_engine.config.settings import build_config
from trend_engine.ratelimit import RateLimitRegistry, SlidingWindowLimiter


class TestSlidingWindowLimiter:
    def test_admits_up_to_budget(self, clock):
        limiter = SlidingWindowLimiter(3, 10, clock=clock)

        assert [limiter.try_acquire() for _ in range(4)] == [True, True, True, False]
        assert limiter.remaining() == 0

    def test_window_slides(self, clock):
        limiter = SlidingWindowLimiter(2, 10, clock=clock)
        limiter.try_acquire()
        clock.advance(6)
        limiter.try_acquire()

        assert limiter.try_acquire() is False
        assert limiter.retry_after() == 4

        clock.advance(4)
        assert limiter.remaining() == 1
        assert limiter.try_acquire() is True
        assert limiter.try_acquire() is False

    def test_refused_request_not_recorded(self, clock):
        limiter = SlidingWindowLimiter(1, 10, clock=clock)
        limiter.try_acquire()
        for _ in range(5):
            limiter.try_acquire()

        clock.advance(10)
        assert limiter.remaining() == 1


class TestRateLimitRegistry:
    def test_limits_come_from_config(self, clock):
        registry = RateLimitRegistry(build_config({
            "sources": {"reddit": {"rate_limit": {"requests": 1, "period_seconds": 60}}},
        }), clock=clock)

        assert registry.try_acquire("reddit") is True
        assert registry.try_acquire("reddit") is False
        # No budget configured for wikipedia
        assert all(registry.try_acquire("wikipedia") for _ in range(100))

    def test_sources_limited_independently(self, clock):
        registry = RateLimitRegistry(build_config({
            "sources": {
                "github": {"rate_limit": {"requests": 1, "period_seconds": 60}},
                "reddit": {"rate_limit": {"requests": 1, "period_seconds": 60}},
            },
        }), clock=clock)

        assert registry.try_acquire("github") is True
        assert registry.try_acquire("reddit") is True
        assert registry.try_acquire("github") is False

    def test_status(self, clock):
        registry = RateLimitRegistry(build_config({}), clock=clock)
        registry.try_acquire("bestbuy")

        status = registry.status()

        assert status == {
            "bestbuy": {"requests": 50, "period_seconds": 10, "remaining": 49, "retry_after_seconds": 0.0},
        }
