"""
Rules Engine - Match session output and trigger actions
=======================================================

This module implements the orchestrator that ties the pieces together.
For one output event of one session, every enabled rule is evaluated in
ascending ``order``:

    state filter -> pattern match -> rate limit -> resolve + dispatch -> log

Rules are evaluated independently, so several rules may fire on the same
event. The active rule set is an immutable snapshot; ``load_rules``
validates a complete new set and swaps the reference, and an evaluation
pass that already started keeps the snapshot it read.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.activity_log import ActionRecord, ActionStatus, ActivityLog, ActivityLogEntry
from core.config import EngineConfig
from core.exceptions import RuleValidationError
from core.logging import get_logger, log_context
from core.rate_limiter import RateLimiter, SuppressionReason

from .matcher import RuleMatch, evaluate_rule
from .models import Rule
from .templates import TemplateContext, agent_from_session, resolve, unknown_variables

logger = get_logger("rules.engine")


@dataclass(frozen=True)
class RuleSet:
    """
    Immutable, ordered snapshot of the active rules.

    Attributes:
        rules (tuple): Rules sorted by ``order`` (load order breaks ties)
        version (int): Incremented on every successful load
        loaded_at (datetime): When the snapshot was published
    """
    rules: Tuple[Rule, ...] = ()
    version: int = 0
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def get(self, rule_id: str) -> Optional[Rule]:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    @property
    def enabled_count(self) -> int:
        return sum(1 for rule in self.rules if rule.enabled)


@dataclass
class DryRunResult:
    """
    What a text would trigger, without rate limiting or dispatch.

    Attributes:
        rule_id (str): Matching rule
        rule_name (str): Its display name
        full_match (str): Text exposed as {match}
        captured_groups (list): Groups exposed as {$1}..{$N}
        actions (list): (type, resolved value, delay_ms) per action
        state_filtered (bool): Matched, but not allowed in the given state
    """
    rule_id: str
    rule_name: str
    full_match: str
    captured_groups: List[str]
    actions: List[Dict[str, Any]]
    state_filtered: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ruleId": self.rule_id,
            "ruleName": self.rule_name,
            "fullMatch": self.full_match,
            "capturedGroups": self.captured_groups,
            "actions": self.actions,
            "stateFiltered": self.state_filtered,
        }


def validate_rules(rules: Iterable[Rule]) -> Tuple[Rule, ...]:
    """
    Validate a complete rule set.

    Raises:
        RuleValidationError: For the first invalid rule or duplicate id
    """
    seen = set()
    validated = []
    for rule in rules:
        if not isinstance(rule, Rule):
            raise RuleValidationError(f"Expected a Rule, got {type(rule).__name__}")
        rule.validate()
        if rule.id in seen:
            raise RuleValidationError(f"Duplicate rule id '{rule.id}'", rule.id)
        seen.add(rule.id)
        validated.append(rule)

        for action in rule.actions:
            for token in unknown_variables(action.value):
                logger.warning(
                    f"Rule '{rule.id}' uses unknown variable {{{token}}}; it will be sent verbatim"
                )

    return tuple(validated)


class RuleEngine:
    """
    Rule engine for session output.

    Example:
        engine = RuleEngine(dispatcher, EngineConfig())
        engine.load_rules(rules)

        entries = engine.process_output("jat-FairBay", pane_text, "working")
        for entry in entries:
            print(entry.rule_id, entry.outcome)
    """

    def __init__(
        self,
        dispatcher,
        config: Optional[EngineConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        activity_log: Optional[ActivityLog] = None
    ):
        """
        Initialize the engine.

        Args:
            dispatcher: ActionDispatcher used to deliver actions; None is
                enough for dry runs with evaluate()
            config: Engine settings (limits, log size, session prefix)
            rate_limiter: Shared limiter, built from config when omitted
            activity_log: Shared log, built from config when omitted
        """
        self.config = config or EngineConfig()
        self.dispatcher = dispatcher
        self.rate_limiter = rate_limiter or RateLimiter(
            global_cooldown_seconds=self.config.global_cooldown_seconds,
            max_actions_per_minute=self.config.max_actions_per_minute,
        )
        self.activity_log = activity_log or ActivityLog(self.config.activity_log_size)
        self._snapshot = RuleSet()

    @property
    def snapshot(self) -> RuleSet:
        return self._snapshot

    @property
    def rules(self) -> Tuple[Rule, ...]:
        return self._snapshot.rules

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self._snapshot.get(rule_id)

    def load_rules(self, rules: Iterable[Rule]) -> RuleSet:
        """
        Validate and publish a new rule set.

        Nothing changes if any rule is invalid.

        Raises:
            RuleValidationError: First validation problem found
        """
        validated = validate_rules(rules)
        ordered = tuple(
            rule for _, rule in sorted(enumerate(validated), key=lambda pair: (pair[1].order, pair[0]))
        )

        snapshot = RuleSet(rules=ordered, version=self._snapshot.version + 1)
        self._snapshot = snapshot

        logger.info(
            f"Loaded {len(ordered)} rules ({snapshot.enabled_count} enabled)",
            extra={"rule_set_version": snapshot.version}
        )
        return snapshot

    def process_output(
        self,
        session_id: str,
        text: str,
        session_state: str,
        now: Optional[float] = None,
        agent: Optional[str] = None,
        skip_rules: Iterable[str] = ()
    ) -> List[ActivityLogEntry]:
        """
        Evaluate one output event of one session.

        Errors from individual rules are logged and never raised, so one
        bad rule cannot stop the others.

        Args:
            session_id: Session that produced the output
            text: Output text (usually the last lines of the pane)
            session_state: Current lifecycle phase of the session
            now: Event time as Unix seconds (defaults to time.time())
            agent: Agent name for {agent}; derived from session_id if omitted
            skip_rules: Rule ids left out of this pass

        Returns:
            Activity entries created by this pass (triggers and suppressions)
        """
        snapshot = self._snapshot
        if now is None:
            now = time.time()
        if agent is None:
            agent = agent_from_session(session_id, self.config.session_prefix)
        session_state = (session_state or "").lower()

        skip_rules = frozenset(skip_rules)
        entries: List[ActivityLogEntry] = []
        primary_taken = False

        with log_context(session=session_id):
            for rule in snapshot.rules:
                if not rule.enabled or rule.id in skip_rules:
                    continue
                try:
                    entry, matched = self._evaluate_rule(
                        rule, session_id, text, session_state, now, agent, not primary_taken
                    )
                except Exception:
                    logger.exception(f"Error evaluating rule '{rule.id}'")
                    continue

                primary_taken = primary_taken or matched
                if entry is not None:
                    entries.append(entry)

        return entries

    def _evaluate_rule(
        self,
        rule: Rule,
        session_id: str,
        text: str,
        session_state: str,
        now: float,
        agent: str,
        primary: bool
    ) -> Tuple[Optional[ActivityLogEntry], bool]:
        timestamp = datetime.fromtimestamp(now, tz=timezone.utc)

        if not rule.allows_state(session_state):
            logger.debug(f"Rule '{rule.id}' filtered in state '{session_state}'")
            entry = self._new_entry(rule, session_id, session_state, timestamp)
            entry.suppressed_reason = SuppressionReason.STATE_FILTERED.value
            return self.activity_log.append(entry), False

        match = evaluate_rule(rule, text)
        if match is None:
            return None, False

        limit = self.rate_limiter.check_and_reserve(rule, now)
        if not limit.allowed:
            logger.debug(
                f"Rule '{rule.id}' suppressed: {limit.reason.value}",
                extra={"retry_after": round(limit.retry_after, 3)}
            )
            entry = self._new_entry(rule, session_id, session_state, timestamp, match.full_match)
            entry.suppressed_reason = limit.reason.value
            entry.primary = primary
            return self.activity_log.append(entry), True

        context = TemplateContext(
            session=session_id,
            agent=agent,
            match=match.full_match,
            groups=match.captured_groups,
        )

        entry = self._new_entry(rule, session_id, session_state, timestamp, match.full_match)
        entry.primary = primary
        pending = []
        for action in rule.actions:
            value = resolve(action.value, context)
            record = ActionRecord(
                type=action.type.value,
                value=value,
                delay_ms=action.delay_ms,
                dispatch_id=uuid.uuid4().hex[:12],
                status=ActionStatus.SCHEDULED if action.delay_ms > 0 else ActionStatus.PENDING,
            )
            entry.actions_fired.append(record)
            pending.append((action, value, record.dispatch_id))

        # The entry must be in the log before any completion callback runs
        self.activity_log.append(entry)

        if pending:
            self.dispatcher.dispatch_sequence(
                pending, session_id, on_complete=self._completion_callback(entry.id)
            )

        logger.info(
            f"Rule '{rule.id}' triggered",
            extra={"actions": len(pending), "matched_text": match.full_match[:200]}
        )
        return entry, True

    def _new_entry(
        self,
        rule: Rule,
        session_id: str,
        session_state: str,
        timestamp: datetime,
        matched_text: str = ""
    ) -> ActivityLogEntry:
        return ActivityLogEntry(
            timestamp=timestamp,
            rule_id=rule.id,
            session_id=session_id,
            matched_text=matched_text,
            rule_name=rule.name,
            session_state=session_state,
        )

    def _completion_callback(self, entry_id: str):
        def on_complete(dispatch_id: str, status: str, error: Optional[str]) -> None:
            self.activity_log.update_action(entry_id, dispatch_id, status, error)
        return on_complete

    def evaluate(self, text: str, session_state: Optional[str] = None,
                 session_id: str = "") -> List[DryRunResult]:
        """
        Dry run: which rules would fire on ``text`` and with what payloads.

        The rate limiter and the dispatcher are not touched.

        Args:
            text: Output text to test
            session_state: Lifecycle phase; None skips the state filter
            session_id: Session used for {session} and {agent}
        """
        results = []
        agent = agent_from_session(session_id, self.config.session_prefix)

        for rule in self._snapshot.rules:
            if not rule.enabled:
                continue
            match: Optional[RuleMatch] = evaluate_rule(rule, text)
            if match is None:
                continue

            context = TemplateContext(
                session=session_id,
                agent=agent,
                match=match.full_match,
                groups=match.captured_groups,
            )
            results.append(DryRunResult(
                rule_id=rule.id,
                rule_name=rule.name,
                full_match=match.full_match,
                captured_groups=list(match.captured_groups),
                actions=[
                    {
                        "type": action.type.value,
                        "value": resolve(action.value, context),
                        "delayMs": action.delay_ms,
                    }
                    for action in rule.actions
                ],
                state_filtered=session_state is not None and not rule.allows_state(session_state),
            ))

        return results

    def recent_activity(self, limit: int = 50) -> List[ActivityLogEntry]:
        """Most recent activity entries, newest first."""
        return self.activity_log.recent(limit)

    def get_stats(self) -> Dict[str, Any]:
        """Engine statistics for the dashboard."""
        snapshot = self._snapshot
        return {
            "rules": len(snapshot.rules),
            "enabled_rules": snapshot.enabled_count,
            "rule_set_version": snapshot.version,
            "loaded_at": snapshot.loaded_at.isoformat(),
            "pending_actions": self.dispatcher.pending_count if self.dispatcher else 0,
            "activity": self.activity_log.stats(),
            "rate_limits": self.rate_limiter.get_status(),
        }

    def shutdown(self) -> None:
        if self.dispatcher is not None:
            self.dispatcher.shutdown()
