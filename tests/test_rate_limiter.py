"""Tests for fixed-window rate limiting."""

import pytest

from services.exceptions import RateLimitExceededError
from services.execution import RateLimiter


class TestRateLimiter:
    def test_check_is_side_effect_free(self):
        limiter = RateLimiter("ws", "workflow_execution", max_requests=2, window_seconds=60)
        for _ in range(5):
            assert limiter.can_make_request(100.0)
        assert limiter.current_count == 0
        assert limiter.window_start is None

    def test_window_exhaustion(self):
        limiter = RateLimiter("ws", "workflow_execution", max_requests=2, window_seconds=60)
        limiter.record_request(100.0)
        limiter.record_request(110.0)

        assert not limiter.can_make_request(120.0)
        assert limiter.retry_after(120.0) == pytest.approx(40.0)

    def test_window_resets_lazily_at_boundary(self):
        limiter = RateLimiter("ws", "workflow_execution", max_requests=1, window_seconds=60)
        limiter.record_request(100.0)

        assert not limiter.can_make_request(159.9)
        assert limiter.can_make_request(160.0)

        limiter.record_request(160.0)
        assert limiter.window_start == 160.0
        assert limiter.current_count == 1

    def test_status(self):
        limiter = RateLimiter("ws", "api", max_requests=3, window_seconds=10)
        limiter.record_request(0.0)

        status = limiter.get_status(5.0)
        assert status["current_count"] == 1
        assert status["remaining"] == 2
        assert status["retry_after"] == 0.0

        assert limiter.get_status(10.0)["current_count"] == 0


class TestRateLimiterRegistry:
    async def test_defaults_come_from_settings(self, rate_limiters, settings):
        limiter = await rate_limiters.get("ws-1", "workflow_execution")
        assert limiter.max_requests == settings.rate_limit_requests
        assert limiter.window_seconds == settings.rate_limit_window

    async def test_record_persists_counter(self, rate_limiters, database, clock):
        await rate_limiters.record("ws-1", "workflow_execution")
        await rate_limiters.record("ws-1", "workflow_execution")

        record = await database.get_rate_limit("ws-1", "workflow_execution")
        assert record.current_count == 2
        assert record.window_start == clock.now

    async def test_exhausted_window_raises(self, rate_limiters, clock):
        rate_limiters.configure("ws-1", "workflow_execution", max_requests=2, window_seconds=60)
        await rate_limiters.record("ws-1", "workflow_execution")
        await rate_limiters.record("ws-1", "workflow_execution")

        assert not await rate_limiters.check("ws-1", "workflow_execution")
        with pytest.raises(RateLimitExceededError) as exc_info:
            await rate_limiters.ensure_allowed("ws-1", "workflow_execution")
        assert exc_info.value.retry_after == pytest.approx(60.0)

        clock.advance(60)
        assert await rate_limiters.check("ws-1", "workflow_execution")

    async def test_workspaces_are_isolated(self, rate_limiters):
        rate_limiters.configure("ws-1", "workflow_execution", max_requests=1, window_seconds=60)
        await rate_limiters.record("ws-1", "workflow_execution")

        assert not await rate_limiters.check("ws-1", "workflow_execution")
        assert await rate_limiters.check("ws-2", "workflow_execution")
