"""
Test Rate Limiter Module
========================

Unit tests for per-rule and global trigger limits.
"""

import threading
from pathlib import Path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.rate_limiter import RateLimiter, RateLimitState, SlidingWindowCounter, SuppressionReason
from rules.models import Rule


def make_rule(rule_id="r1", cooldown=0.0, per_hour=0):
    return Rule(id=rule_id, name=rule_id, cooldown_seconds=cooldown, max_triggers_per_hour=per_hour)


class TestSlidingWindowCounter:
    """Tests for the sliding window."""

    def test_prunes_old_events(self):
        """Events older than the window are not counted."""
        window = SlidingWindowCounter(60)
        window.record(0)
        window.record(30)

        assert window.count(59) == 2
        assert window.count(61) == 1
        assert window.count(100) == 0

    def test_reset_at(self):
        """reset_at is when the oldest event leaves the window."""
        window = SlidingWindowCounter(60)
        window.record(10)
        window.record(20)

        assert window.reset_at(30) == 70

    def test_state_builds_its_own_window(self):
        """A fresh RateLimitState gets a window of its own duration."""
        first = RateLimitState(window_seconds=60)
        second = RateLimitState(window_seconds=60)
        first.reserve(10)

        assert first.window.window_seconds == 60
        assert first.window.count(10) == 1
        assert second.window.count(10) == 0
        assert first.last_trigger_at == 10


class TestRuleLimits:
    """Tests for per-rule cooldown and hourly cap."""

    def test_cooldown(self):
        """A second trigger inside the cooldown is denied."""
        limiter = RateLimiter(max_actions_per_minute=0)
        rule = make_rule(cooldown=30)

        assert limiter.check_and_reserve(rule, 1000).allowed

        result = limiter.check_and_reserve(rule, 1001)
        assert not result.allowed
        assert result.reason is SuppressionReason.COOLDOWN
        assert result.retry_after == 29

        assert limiter.check_and_reserve(rule, 1030).allowed

    def test_hourly_cap(self):
        """The trigger past max_triggers_per_hour is denied until the hour passes."""
        limiter = RateLimiter(max_actions_per_minute=0)
        rule = make_rule(per_hour=2)

        assert limiter.check_and_reserve(rule, 0).allowed
        assert limiter.check_and_reserve(rule, 10).allowed

        result = limiter.check_and_reserve(rule, 20)
        assert not result.allowed
        assert result.reason is SuppressionReason.RULE_RATE_LIMIT

        assert limiter.check_and_reserve(rule, 3601).allowed

    def test_denied_check_does_not_reserve(self):
        """A denied check leaves the state untouched."""
        limiter = RateLimiter(max_actions_per_minute=0)
        rule = make_rule(cooldown=10)

        limiter.check_and_reserve(rule, 0)
        limiter.check_and_reserve(rule, 5)

        assert limiter.get_status("r1", now=5)["triggers_last_hour"] == 1
        assert limiter.check_and_reserve(rule, 10).allowed

    def test_rules_are_independent(self):
        """One rule's cooldown does not affect another rule."""
        limiter = RateLimiter(max_actions_per_minute=0)

        assert limiter.check_and_reserve(make_rule("a", cooldown=60), 0).allowed
        assert limiter.check_and_reserve(make_rule("b", cooldown=60), 0).allowed


class TestGlobalLimits:
    """Tests for global cooldown and per-minute cap."""

    def test_per_minute_cap(self):
        """Three rules in the same second with a cap of two: one denied."""
        limiter = RateLimiter(max_actions_per_minute=2)

        results = [limiter.check_and_reserve(make_rule(rule_id), 100) for rule_id in ("a", "b", "c")]

        assert [r.allowed for r in results] == [True, True, False]
        assert results[2].reason is SuppressionReason.GLOBAL_RATE_LIMIT

    def test_per_minute_cap_recovers(self):
        """The cap is a sliding minute."""
        limiter = RateLimiter(max_actions_per_minute=1)

        assert limiter.check_and_reserve(make_rule("a"), 0).allowed
        assert not limiter.check_and_reserve(make_rule("b"), 59).allowed
        assert limiter.check_and_reserve(make_rule("b"), 61).allowed

    def test_global_cooldown(self):
        """Global cooldown spans rules."""
        limiter = RateLimiter(global_cooldown_seconds=5, max_actions_per_minute=0)

        assert limiter.check_and_reserve(make_rule("a"), 0).allowed

        result = limiter.check_and_reserve(make_rule("b"), 3)
        assert not result.allowed
        assert result.reason is SuppressionReason.GLOBAL_RATE_LIMIT

    def test_rule_cooldown_checked_first(self):
        """Rule cooldown wins over the global cap when both apply."""
        limiter = RateLimiter(max_actions_per_minute=1)
        rule = make_rule(cooldown=30)

        limiter.check_and_reserve(rule, 0)
        assert limiter.check_and_reserve(rule, 1).reason is SuppressionReason.COOLDOWN


class TestConcurrency:
    """Tests for atomic check-and-reserve."""

    def test_racing_threads_reserve_once(self):
        """Many threads hitting the same rule at the same instant: one wins."""
        limiter = RateLimiter(max_actions_per_minute=0)
        rule = make_rule(cooldown=60)
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            result = limiter.check_and_reserve(rule, 500)
            with lock:
                results.append(result.allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 7


class TestReset:
    """Tests for reset()."""

    def test_reset_rule(self):
        """Resetting a rule clears its cooldown."""
        limiter = RateLimiter(max_actions_per_minute=0)
        rule = make_rule(cooldown=60)

        limiter.check_and_reserve(rule, 0)
        limiter.reset("r1")

        assert limiter.check_and_reserve(rule, 1).allowed

    def test_reset_all(self):
        """Resetting everything clears the global window too."""
        limiter = RateLimiter(max_actions_per_minute=1)

        limiter.check_and_reserve(make_rule("a"), 0)
        limiter.reset()

        assert limiter.get_status(now=1)["triggers_last_minute"] == 0
        assert limiter.check_and_reserve(make_rule("b"), 1).allowed
