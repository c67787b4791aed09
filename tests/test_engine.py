"""
Test Rules Engine Module
========================

Unit tests for the rule engine: evaluation pass, rate limiting,
dispatch, activity log and rule loading.
"""

import json
import threading
import time

import pytest
from pathlib import Path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.activity_log import ActionStatus
from core.config import EngineConfig
from core.exceptions import ActuatorError, RuleValidationError
from rules.engine import RuleEngine
from rules.models import Action, ActionType, Pattern, PatternMode, Rule


def continue_rule(**kwargs):
    defaults = dict(
        id="continue",
        name="Continue prompt",
        patterns=(Pattern(PatternMode.EXACT, "Continue? [y/n]"),),
        actions=(Action(ActionType.SEND_TEXT, "y"),),
    )
    defaults.update(kwargs)
    return Rule(**defaults)


def contains_rule(rule_id, value="error", order=0, **kwargs):
    return Rule(
        id=rule_id,
        name=rule_id,
        patterns=(Pattern(PatternMode.CONTAINS, value),),
        actions=(Action(ActionType.NOTIFY_ONLY, f"{rule_id} fired"),),
        order=order,
        **kwargs
    )


class TestProcessOutput:
    """Tests for the evaluation pass."""

    def test_exact_prompt_sends_text(self, engine, actuator):
        """An exact prompt match sends one text to the session."""
        engine.load_rules([continue_rule()])

        entries = engine.process_output("jat-FairBay", "Continue? [y/n]", "working")
        engine.dispatcher.drain(timeout=5)

        assert len(entries) == 1
        assert entries[0].suppressed_reason is None
        assert actuator.calls == [("send_text", "jat-FairBay", "y")]

    def test_no_match_logs_nothing(self, engine, actuator):
        """Rules that do not match leave no trace."""
        engine.load_rules([continue_rule()])

        entries = engine.process_output("jat-FairBay", "Compiling...", "working")

        assert entries == []
        assert len(engine.activity_log) == 0
        assert actuator.calls == []

    def test_cooldown_suppresses_second_event(self, engine, actuator):
        """Two events one second apart with a 30s cooldown: one trigger, one suppression."""
        engine.load_rules([continue_rule(cooldown_seconds=30)])

        first = engine.process_output("jat-FairBay", "Continue? [y/n]", "working", now=1000.0)
        second = engine.process_output("jat-FairBay", "Continue? [y/n]", "working", now=1001.0)
        engine.dispatcher.drain(timeout=5)

        assert first[0].suppressed_reason is None
        assert second[0].suppressed_reason == "cooldown"
        assert second[0].actions_fired == []
        assert len(actuator.calls) == 1

    def test_global_cap(self, dispatcher, actuator):
        """Three matching rules with a per-minute cap of two: two fire, one is suppressed."""
        engine = RuleEngine(dispatcher, EngineConfig(max_actions_per_minute=2))
        engine.load_rules([contains_rule("a", order=1), contains_rule("b", order=2), contains_rule("c", order=3)])

        entries = engine.process_output("jat-FairBay", "error!", "working", now=500.0)
        dispatcher.drain(timeout=5)

        assert [e.suppressed_reason for e in entries] == [None, None, "global_rate_limit"]
        assert len(actuator.calls) == 2

    def test_state_filter(self, engine, actuator):
        """A rule limited to 'working' never fires in 'completed' and logs state_filtered."""
        engine.load_rules([continue_rule(session_states=frozenset({"working"}))])

        entries = engine.process_output("jat-FairBay", "Continue? [y/n]", "completed")

        assert len(entries) == 1
        assert entries[0].suppressed_reason == "state_filtered"
        assert actuator.calls == []

    def test_state_filter_is_case_insensitive(self, engine, actuator):
        """Session states compare without case."""
        engine.load_rules([continue_rule(session_states=frozenset({"Working"}))])

        entries = engine.process_output("jat-FairBay", "Continue? [y/n]", "WORKING")
        engine.dispatcher.drain(timeout=5)

        assert entries[0].suppressed_reason is None

    def test_multiple_rules_fire_in_order(self, engine):
        """Every matching rule fires; entries follow rule order and the first is primary."""
        engine.load_rules([contains_rule("late", order=20), contains_rule("early", order=10)])

        entries = engine.process_output("jat-FairBay", "an error", "working")

        assert [e.rule_id for e in entries] == ["early", "late"]
        assert [e.primary for e in entries] == [True, False]

    def test_disabled_rules_are_skipped(self, engine):
        """Disabled rules are not evaluated."""
        engine.load_rules([contains_rule("off", enabled=False)])

        assert engine.process_output("jat-FairBay", "error", "working") == []

    def test_template_resolved_with_agent(self, engine, actuator):
        """Signal payloads get groups and the agent name."""
        engine.load_rules([Rule(
            id="task",
            name="Task signal",
            patterns=(Pattern(PatternMode.REGEX, r"Working on task (squad-[a-z0-9]+)"),),
            actions=(Action(ActionType.SIGNAL, 'working {"taskId":"{$1}","agentName":"{agent}"}'),),
        )])

        entries = engine.process_output("jat-FairBay", "Working on task squad-xyz", "working")
        engine.dispatcher.drain(timeout=5)

        payload = 'working {"taskId":"squad-xyz","agentName":"FairBay"}'
        assert entries[0].actions_fired[0].value == payload
        assert actuator.calls == [("emit_signal", "jat-FairBay", payload)]

    def test_action_status_updated(self, engine):
        """Delivered actions are marked sent in the activity log."""
        engine.load_rules([continue_rule()])

        entry = engine.process_output("jat-FairBay", "Continue? [y/n]", "working")[0]
        engine.dispatcher.drain(timeout=5)

        stored = engine.activity_log.get(entry.id)
        assert stored.actions_fired[0].status == ActionStatus.SENT

    def test_failed_dispatch_still_counts(self, engine, actuator):
        """A failed action is marked failed and the cooldown still applies."""
        actuator.fail_with = ActuatorError("tmux exploded", "jat-FairBay")
        engine.load_rules([continue_rule(cooldown_seconds=60)])

        entry = engine.process_output("jat-FairBay", "Continue? [y/n]", "working", now=0.0)[0]
        engine.dispatcher.drain(timeout=5)

        assert entry.actions_fired[0].status == ActionStatus.FAILED
        assert "tmux exploded" in entry.actions_fired[0].error
        assert entry.outcome == "failed"

        again = engine.process_output("jat-FairBay", "Continue? [y/n]", "working", now=1.0)
        assert again[0].suppressed_reason == "cooldown"

    def test_actions_run_in_rule_order(self, engine, actuator):
        """A rule's actions reach the session in order even when the first is slow."""
        actuator.delays["send_keys"] = 0.3
        engine.load_rules([continue_rule(
            id="recover",
            patterns=(Pattern(PatternMode.CONTAINS, "Interrupted"),),
            actions=(Action(ActionType.SEND_KEYS, "Escape"), Action(ActionType.SEND_TEXT, "retry")),
        )])

        entry = engine.process_output("jat-FairBay", "Interrupted by user", "working")[0]
        engine.dispatcher.drain(timeout=5)

        assert actuator.calls == [
            ("send_keys", "jat-FairBay", "Escape"),
            ("send_text", "jat-FairBay", "retry"),
        ]
        assert [a.status for a in entry.actions_fired] == [ActionStatus.SENT, ActionStatus.SENT]

    def test_delayed_action_does_not_block(self, engine, actuator):
        """A long delay is scheduled, not slept."""
        engine.load_rules([continue_rule(actions=(Action(ActionType.SEND_TEXT, "y", delay_ms=10000),))])

        started = time.monotonic()
        entry = engine.process_output("jat-FairBay", "Continue? [y/n]", "working")[0]

        assert time.monotonic() - started < 1.0
        assert entry.actions_fired[0].status == ActionStatus.SCHEDULED
        assert actuator.calls == []

        assert engine.dispatcher.cancel(entry.actions_fired[0].dispatch_id)
        assert entry.actions_fired[0].status == ActionStatus.CANCELLED

    def test_rule_error_does_not_stop_others(self, engine, monkeypatch):
        """An unexpected error in one rule is logged and the pass continues."""
        engine.load_rules([contains_rule("a", order=1), contains_rule("b", order=2)])

        real_check = engine.rate_limiter.check_and_reserve

        def flaky(rule, now=None):
            if rule.id == "a":
                raise RuntimeError("boom")
            return real_check(rule, now)

        monkeypatch.setattr(engine.rate_limiter, "check_and_reserve", flaky)

        entries = engine.process_output("jat-FairBay", "error", "working")
        assert [e.rule_id for e in entries] == ["b"]


class TestLoadRules:
    """Tests for rule loading and snapshots."""

    def test_invalid_regex_rejected_without_partial_apply(self, engine):
        """One invalid regex rejects the whole set and keeps the old one."""
        engine.load_rules([continue_rule()])
        before = engine.snapshot

        bad = Rule(
            id="bad",
            name="Bad",
            patterns=(Pattern(PatternMode.REGEX, "(unclosed"),),
            actions=(Action(ActionType.SEND_TEXT, "y"),),
        )

        with pytest.raises(RuleValidationError) as exc_info:
            engine.load_rules([contains_rule("ok"), bad])

        assert exc_info.value.rule_id == "bad"
        assert engine.snapshot is before

    def test_duplicate_ids_rejected(self, engine):
        """Rule ids must be unique."""
        with pytest.raises(RuleValidationError):
            engine.load_rules([contains_rule("same"), contains_rule("same", value="other")])

    def test_version_increments(self, engine):
        """Each successful load publishes a new version."""
        first = engine.load_rules([continue_rule()])
        second = engine.load_rules([continue_rule(), contains_rule("x")])

        assert second.version == first.version + 1
        assert engine.get_rule("x") is not None

    def test_in_flight_pass_keeps_its_snapshot(self, engine):
        """A reload during a pass does not change the rules that pass sees."""
        engine.load_rules([contains_rule("a", order=1), contains_rule("b", order=2)])

        reloaded = threading.Event()
        real_check = engine.rate_limiter.check_and_reserve

        def reload_mid_pass(rule, now=None):
            if not reloaded.is_set():
                reloaded.set()
                engine.load_rules([contains_rule("z")])
            return real_check(rule, now)

        engine.rate_limiter.check_and_reserve = reload_mid_pass

        entries = engine.process_output("jat-FairBay", "error", "working")

        assert [e.rule_id for e in entries] == ["a", "b"]
        assert [r.id for r in engine.rules] == ["z"]

    def test_rate_limits_survive_reload(self, engine):
        """Cooldowns are keyed by rule id and survive a reload."""
        engine.load_rules([continue_rule(cooldown_seconds=60)])
        engine.process_output("jat-FairBay", "Continue? [y/n]", "working", now=0.0)

        engine.load_rules([continue_rule(cooldown_seconds=60)])
        entries = engine.process_output("jat-FairBay", "Continue? [y/n]", "working", now=1.0)

        assert entries[0].suppressed_reason == "cooldown"


class TestDryRun:
    """Tests for evaluate()."""

    def test_evaluate_does_not_dispatch(self, engine, actuator):
        """Dry runs resolve payloads without touching the limiter or actuator."""
        engine.load_rules([continue_rule(cooldown_seconds=60)])

        results = engine.evaluate("Continue? [y/n]", session_id="jat-FairBay")
        results_again = engine.evaluate("Continue? [y/n]")

        assert len(results) == 1
        assert len(results_again) == 1
        assert results[0].actions == [{"type": "send_text", "value": "y", "delayMs": 0}]
        assert actuator.calls == []
        assert len(engine.activity_log) == 0

    def test_evaluate_reports_state_filter(self, engine):
        """A matching rule outside its states is flagged."""
        engine.load_rules([continue_rule(session_states=frozenset({"working"}))])

        assert engine.evaluate("Continue? [y/n]", "completed")[0].state_filtered
        assert not engine.evaluate("Continue? [y/n]")[0].state_filtered


class TestActivity:
    """Tests for recent_activity()."""

    def test_newest_first(self, engine):
        """Entries come back newest first."""
        engine.load_rules([contains_rule("a")])

        engine.process_output("jat-One", "error", "working", now=1.0)
        engine.process_output("jat-Two", "error", "working", now=2.0)

        assert [e.session_id for e in engine.recent_activity(10)] == ["jat-Two", "jat-One"]
        assert len(engine.recent_activity(1)) == 1

    def test_action_status_serializes_as_text(self, engine):
        """Action statuses are enum members that serialize to their plain value."""
        engine.load_rules([contains_rule("a")])

        entry = engine.process_output("jat-One", "error", "working", now=1.0)[0]
        engine.dispatcher.drain(timeout=5)

        record = entry.actions_fired[0]
        assert isinstance(record.status, ActionStatus)
        assert record.status is ActionStatus.SENT
        assert entry.to_dict()["actionsFired"][0]["status"] == "sent"
        assert json.loads(json.dumps(entry.to_dict()))["actionsFired"][0]["status"] == "sent"
