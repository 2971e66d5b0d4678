"""Tests for obit_pipeline.execution.token_budget module."""

import pytest

from obit_pipeline.execution.token_budget import (
    BATCH_POOL,
    INTERACTIVE_POOL,
    MAX_CAS_RETRIES,
    TokenBudgetLimiter,
)


def _used(limiter, pool=BATCH_POOL):
    return limiter.stats()["pools"][pool]["used"]


class TestReserve:
    """Test reservation against the weighted window."""

    def test_reserve_within_budget(self, limiter):
        assert limiter.reserve(1100, "rewriter")
        assert limiter.reserve(800, "auditor")
        assert _used(limiter) == 1900

    def test_refuses_over_budget(self, limiter):
        assert limiter.reserve(4350, "rewriter")
        assert not limiter.reserve(1100, "rewriter")
        assert _used(limiter) == 4350

    def test_exact_fit_allowed(self, limiter):
        assert limiter.reserve(4400, "rewriter")
        assert not limiter.reserve(1, "auditor")

    def test_pools_are_independent(self, limiter):
        assert limiter.reserve(4400, "rewriter")
        assert limiter.reserve(1100, "chatbot")
        assert not limiter.reserve(1, "chatbot")
        assert _used(limiter, INTERACTIVE_POOL) == 1100

    def test_unknown_consumer_refused(self, limiter):
        assert not limiter.reserve(10, "scraper")
        assert not limiter.peek(10, "scraper")

    @pytest.mark.parametrize("estimate", [0, -5])
    def test_non_positive_estimate_refused(self, limiter, estimate):
        assert not limiter.reserve(estimate, "rewriter")
        assert not limiter.peek(estimate, "rewriter")

    def test_peek_has_no_side_effects(self, limiter):
        assert limiter.peek(1100, "auditor")
        assert _used(limiter) == 0
        limiter.reserve(4000, "rewriter")
        assert not limiter.peek(800, "auditor")


class TestSlidingWindow:
    """The previous minute counts in proportion to the unexpired part."""

    def test_previous_minute_is_weighted(self, limiter, clock):
        # 12:00:05 → 12:01:30, halfway through the next minute
        limiter.reserve(4000, "rewriter")
        clock.advance(85)
        assert _used(limiter) == 2000
        assert limiter.reserve(2400, "rewriter")
        assert not limiter.reserve(1, "rewriter")

    def test_usage_expires_after_two_minutes(self, limiter, clock):
        limiter.reserve(4400, "rewriter")
        clock.advance(120)
        assert _used(limiter) == 0
        assert limiter.reserve(4400, "rewriter")

    def test_seconds_until_reset(self, limiter, clock):
        assert limiter.seconds_until_reset() == 0
        limiter.reserve(100, "rewriter")
        assert limiter.seconds_until_reset() == 55
        clock.advance(60)
        assert limiter.seconds_until_reset() == 55
        clock.advance(60)
        assert limiter.seconds_until_reset() == 0

    def test_prune_drops_old_buckets(self, limiter, conn, clock):
        limiter.reserve(100, "rewriter")
        clock.advance(180)
        assert limiter.prune() == 1
        conn.execute("SELECT COUNT(*) FROM pipeline_token_window")
        assert conn.fetchone()[0] == 0


class TestAdjustments:
    """Test release and true-up."""

    def test_release_returns_reservation(self, limiter):
        limiter.reserve(1100, "rewriter")
        limiter.release(1100, "rewriter")
        assert _used(limiter) == 0

    def test_record_actual_lower(self, limiter):
        limiter.reserve(1100, "rewriter")
        limiter.record_actual(900, "rewriter", 1100)
        assert _used(limiter) == 900

    def test_record_actual_higher(self, limiter):
        limiter.reserve(1100, "rewriter")
        limiter.record_actual(1500, "rewriter", 1100)
        assert _used(limiter) == 1500

    def test_never_below_zero(self, limiter):
        limiter.reserve(100, "rewriter")
        limiter.release(5000, "rewriter")
        assert _used(limiter) == 0

    def test_release_drains_previous_minute(self, limiter, clock):
        limiter.reserve(1000, "rewriter")
        clock.advance(60)
        limiter.reserve(200, "rewriter")
        limiter.release(500, "rewriter")
        stats = limiter.stats()["pools"][BATCH_POOL]
        # current 0, previous 700 weighted by 55/60
        assert stats["used"] == 642

    def test_counts_calls(self, limiter):
        limiter.reserve(10, "rewriter")
        limiter.reserve(10, "auditor")
        limiter.record_actual(50, "auditor", 10)
        assert limiter.stats()["pools"][BATCH_POOL]["calls_this_minute"] == 2


class TestFailClosed:
    """Reservation refuses when it cannot be sure."""

    def test_cas_exhaustion_refuses(self, limiter, monkeypatch):
        limiter.reserve(10, "rewriter")
        attempts = []

        def losing_update(*args):
            attempts.append(args)
            return False

        monkeypatch.setattr(limiter, "_cas_update", losing_update)
        assert not limiter.reserve(10, "rewriter")
        assert len(attempts) == MAX_CAS_RETRIES

    def test_storage_error_refuses(self, limiter, conn):
        conn.execute("DROP TABLE pipeline_token_window")
        assert not limiter.reserve(10, "rewriter")
        assert not limiter.peek(10, "rewriter")


class TestConfiguration:
    """Test construction."""

    def test_from_settings(self, limiter):
        assert limiter.budgets == {BATCH_POOL: 4400, INTERACTIVE_POOL: 1100}
        assert limiter.consumer_pools["rewriter"] == BATCH_POOL
        assert limiter.consumer_pools["auditor"] == BATCH_POOL
        assert limiter.consumer_pools["chatbot"] == INTERACTIVE_POOL

    def test_custom_pools(self, conn, clock):
        limiter = TokenBudgetLimiter(conn, {"only": 100}, {"job": "only"}, clock=clock.time)
        assert limiter.reserve(100, "job")
        assert not limiter.reserve(1, "job")
        assert not limiter.reserve(1, "rewriter")

    def test_stats_shape(self, limiter):
        stats = limiter.stats()
        assert stats["window_seconds"] == 60
        assert stats["pools"][BATCH_POOL]["consumers"] == ["auditor", "rewriter"]
        assert stats["pools"][BATCH_POOL]["remaining"] == 4400
