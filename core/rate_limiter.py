"""
Rate Limiter Module - Per-rule and global trigger limits
========================================================

This module decides whether a matched rule may fire:
- Per-rule cooldown (minimum seconds between triggers)
- Per-rule hourly cap (sliding window)
- Global cooldown across all rules
- Global per-minute cap (sliding window)

``check_and_reserve`` is the only entry point that mutates state and it
runs entirely under one lock, so two sessions matching the same rule at
the same instant cannot both pass.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, Optional

from .logging import get_logger

logger = get_logger("rate_limiter")

HOUR_SECONDS = 3600.0
MINUTE_SECONDS = 60.0


class SuppressionReason(str, Enum):
    """Why a matched rule did not fire."""
    COOLDOWN = "cooldown"
    RULE_RATE_LIMIT = "rule_rate_limit"
    GLOBAL_RATE_LIMIT = "global_rate_limit"
    STATE_FILTERED = "state_filtered"


@dataclass
class RateLimitResult:
    """
    Result of a rate limit check.

    Attributes:
        allowed (bool): Whether the trigger was reserved
        reason (SuppressionReason): Why it was denied, None when allowed
        retry_after (float): Seconds until the blocking limit clears
    """
    allowed: bool
    reason: Optional[SuppressionReason] = None
    retry_after: float = 0.0


class SlidingWindowCounter:
    """
    Sliding window of event timestamps.

    Timestamps older than the window are pruned on every access. Not
    thread-safe on its own; the RateLimiter lock guards it.

    Attributes:
        window_seconds (float): Window duration in seconds
    """

    def __init__(self, window_seconds: float):
        self.window_seconds = window_seconds
        self.timestamps: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        window_start = now - self.window_seconds
        while self.timestamps and self.timestamps[0] < window_start:
            self.timestamps.popleft()

    def count(self, now: float) -> int:
        """Number of events inside ``[now - window, now]``."""
        self._prune(now)
        return len(self.timestamps)

    def record(self, now: float) -> None:
        self._prune(now)
        self.timestamps.append(now)

    def reset_at(self, now: float) -> float:
        """Time at which the oldest event leaves the window."""
        self._prune(now)
        if not self.timestamps:
            return now
        return self.timestamps[0] + self.window_seconds


@dataclass
class RateLimitState:
    """
    Trigger history for one rule, or for the engine as a whole.

    Attributes:
        last_trigger_at (float): Unix time of the last trigger, None = never
        window (SlidingWindowCounter): Recent trigger timestamps
    """
    window_seconds: float = HOUR_SECONDS
    last_trigger_at: Optional[float] = None
    window: Optional[SlidingWindowCounter] = None

    def __post_init__(self):
        if self.window is None:
            self.window = SlidingWindowCounter(self.window_seconds)

    def reserve(self, now: float) -> None:
        self.last_trigger_at = now
        self.window.record(now)


class RateLimiter:
    """
    Rate limiter for rule triggers.

    Per-rule limits come from the rule itself (``cooldown_seconds``,
    ``max_triggers_per_hour``); global limits are set at construction.
    State is keyed by rule id and survives rule reloads.

    Example:
        limiter = RateLimiter(max_actions_per_minute=30)

        result = limiter.check_and_reserve(rule, time.time())
        if result.allowed:
            # dispatch actions
        else:
            # log result.reason
    """

    def __init__(
        self,
        global_cooldown_seconds: float = 0.0,
        max_actions_per_minute: int = 30
    ):
        """
        Initialize rate limiter.

        Args:
            global_cooldown_seconds: Minimum seconds between any two triggers
            max_actions_per_minute: Global trigger cap per minute, 0 = unlimited
        """
        self.global_cooldown_seconds = global_cooldown_seconds
        self.max_actions_per_minute = max_actions_per_minute

        self._rules: Dict[str, RateLimitState] = {}
        self._global = RateLimitState(window_seconds=MINUTE_SECONDS)
        self._lock = threading.Lock()

        logger.debug(
            "Rate limiter initialized",
            extra={
                "global_cooldown_seconds": global_cooldown_seconds,
                "max_actions_per_minute": max_actions_per_minute,
            }
        )

    def _rule_state(self, rule_id: str) -> RateLimitState:
        state = self._rules.get(rule_id)
        if state is None:
            state = RateLimitState(window_seconds=HOUR_SECONDS)
            self._rules[rule_id] = state
        return state

    def check_and_reserve(self, rule, now: Optional[float] = None) -> RateLimitResult:
        """
        Check every limit for a rule and, if all pass, record the trigger.

        Checks run in order: rule cooldown, rule hourly cap, global
        cooldown, global per-minute cap. The first failing check decides
        the reason.

        Args:
            rule: Rule about to fire (needs id, cooldown_seconds,
                max_triggers_per_hour)
            now: Unix time of the event (defaults to time.time())

        Returns:
            RateLimitResult
        """
        if now is None:
            now = time.time()

        with self._lock:
            state = self._rule_state(rule.id)

            if state.last_trigger_at is not None:
                elapsed = now - state.last_trigger_at
                if elapsed < rule.cooldown_seconds:
                    return RateLimitResult(
                        allowed=False,
                        reason=SuppressionReason.COOLDOWN,
                        retry_after=rule.cooldown_seconds - elapsed
                    )

            if rule.max_triggers_per_hour > 0:
                if state.window.count(now) >= rule.max_triggers_per_hour:
                    return RateLimitResult(
                        allowed=False,
                        reason=SuppressionReason.RULE_RATE_LIMIT,
                        retry_after=max(0.0, state.window.reset_at(now) - now)
                    )

            if self._global.last_trigger_at is not None:
                elapsed = now - self._global.last_trigger_at
                if elapsed < self.global_cooldown_seconds:
                    return RateLimitResult(
                        allowed=False,
                        reason=SuppressionReason.GLOBAL_RATE_LIMIT,
                        retry_after=self.global_cooldown_seconds - elapsed
                    )

            if self.max_actions_per_minute > 0:
                if self._global.window.count(now) >= self.max_actions_per_minute:
                    return RateLimitResult(
                        allowed=False,
                        reason=SuppressionReason.GLOBAL_RATE_LIMIT,
                        retry_after=max(0.0, self._global.window.reset_at(now) - now)
                    )

            state.reserve(now)
            self._global.reserve(now)

        return RateLimitResult(allowed=True)

    def get_status(self, rule_id: Optional[str] = None, now: Optional[float] = None) -> Dict:
        """
        Get rate limit status for one rule, or the global counters.

        Args:
            rule_id: Rule id, or None for global status
            now: Reference time (defaults to time.time())

        Returns:
            Dictionary with last trigger time and window counts
        """
        if now is None:
            now = time.time()

        with self._lock:
            if rule_id is None:
                return {
                    "last_trigger_at": self._global.last_trigger_at,
                    "triggers_last_minute": self._global.window.count(now),
                    "max_actions_per_minute": self.max_actions_per_minute,
                    "global_cooldown_seconds": self.global_cooldown_seconds,
                    "tracked_rules": len(self._rules),
                }

            state = self._rules.get(rule_id)
            if state is None:
                return {"rule_id": rule_id, "last_trigger_at": None, "triggers_last_hour": 0}

            return {
                "rule_id": rule_id,
                "last_trigger_at": state.last_trigger_at,
                "triggers_last_hour": state.window.count(now),
            }

    def reset(self, rule_id: Optional[str] = None) -> None:
        """
        Reset rate limits for one rule or for everything.

        Args:
            rule_id: Specific rule id, or None for all (global included)
        """
        with self._lock:
            if rule_id:
                self._rules.pop(rule_id, None)
                logger.info(f"Reset rate limits for rule {rule_id}")
            else:
                self._rules.clear()
                self._global = RateLimitState(window_seconds=MINUTE_SECONDS)
                logger.info("Reset all rate limits")
