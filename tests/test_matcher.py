"""
Test Pattern Matcher Module
===========================

Unit tests for pattern matching and rule-level evaluation.
"""

import pytest
from pathlib import Path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from rules.matcher import match_pattern, evaluate_rule
from rules.models import Action, ActionType, Pattern, PatternMode, Rule


def make_rule(*patterns, **kwargs):
    kwargs.setdefault("actions", (Action(ActionType.SEND_TEXT, "y"),))
    return Rule(id=kwargs.pop("id", "r1"), name="Test rule", patterns=patterns, **kwargs)


class TestLiteralModes:
    """Tests for contains, exact, startsWith and endsWith."""

    def test_contains_case_insensitive_by_default(self):
        """Contains matches regardless of case unless asked otherwise."""
        result = match_pattern(Pattern(PatternMode.CONTAINS, "rate limit"), "Error: RATE LIMIT reached")

        assert result.matched
        assert result.full_match == "RATE LIMIT"
        assert result.captured_groups == []

    def test_contains_case_sensitive(self):
        """Case-sensitive contains respects case."""
        pattern = Pattern(PatternMode.CONTAINS, "Error", case_sensitive=True)

        assert match_pattern(pattern, "Error here").matched
        assert not match_pattern(pattern, "error here").matched

    def test_exact(self):
        """Exact requires whole-text equality."""
        pattern = Pattern(PatternMode.EXACT, "Continue? [y/n]")

        assert match_pattern(pattern, "continue? [Y/N]").matched
        assert not match_pattern(pattern, "Continue? [y/n] ").matched

    def test_starts_with(self):
        """startsWith tests the prefix."""
        pattern = Pattern(PatternMode.STARTS_WITH, "error:")

        result = match_pattern(pattern, "Error: connection refused")
        assert result.matched
        assert result.full_match == "Error:"
        assert not match_pattern(pattern, "An error: here").matched

    def test_ends_with(self):
        """endsWith tests the suffix."""
        pattern = Pattern(PatternMode.ENDS_WITH, "[y/n]")

        result = match_pattern(pattern, "Proceed? [Y/N]")
        assert result.matched
        assert result.full_match == "[Y/N]"
        assert not match_pattern(pattern, "[y/n] proceed?").matched


class TestRegexMode:
    """Tests for regex patterns."""

    def test_search_not_fullmatch(self):
        """Regex searches anywhere in the text."""
        pattern = Pattern(PatternMode.REGEX, r"task (squad-[a-z0-9]+)")

        result = match_pattern(pattern, "Working on task squad-xyz now")
        assert result.matched
        assert result.full_match == "task squad-xyz"
        assert result.captured_groups == ["squad-xyz"]

    def test_case_insensitive_by_default(self):
        """Regex ignores case unless case_sensitive is set."""
        assert match_pattern(Pattern(PatternMode.REGEX, r"econnrefused"), "ECONNREFUSED").matched
        assert not match_pattern(
            Pattern(PatternMode.REGEX, r"econnrefused", case_sensitive=True), "ECONNREFUSED"
        ).matched

    def test_unmatched_optional_group_is_empty(self):
        """Optional groups that did not participate become empty strings."""
        result = match_pattern(Pattern(PatternMode.REGEX, r"rate(-)?limit(ed)?"), "ratelimit")

        assert result.matched
        assert result.captured_groups == ["", ""]

    def test_multiline_anchors(self):
        """^ and $ anchor on lines of a multi-line buffer."""
        pattern = Pattern(PatternMode.REGEX, r"^Continue\? \[y/n\]$")

        assert match_pattern(pattern, "some output\nContinue? [y/n]\n> ").matched


class TestNegation:
    """Tests for negated patterns."""

    def test_negated_contains_matches_absence(self):
        """A negated contains pattern matches text without the value."""
        pattern = Pattern(PatternMode.CONTAINS, "esc to interrupt", negate=True)

        assert match_pattern(pattern, "> ").matched
        assert not match_pattern(pattern, "Thinking... (esc to interrupt)").matched

    def test_negated_regex_has_no_captures(self):
        """Negated patterns never produce captures."""
        pattern = Pattern(PatternMode.REGEX, r"(\d+)", negate=True)

        result = match_pattern(pattern, "no digits here")
        assert result.matched
        assert result.captured_groups == []
        assert result.full_match == ""


class TestEvaluateRule:
    """Tests for rule-level evaluation."""

    def test_empty_patterns_never_match(self):
        """A rule without patterns matches nothing."""
        rule = make_rule()

        assert evaluate_rule(rule, "") is None
        assert evaluate_rule(rule, "anything at all") is None

    def test_all_patterns_must_match(self):
        """Patterns are ANDed."""
        rule = make_rule(
            Pattern(PatternMode.CONTAINS, "error"),
            Pattern(PatternMode.CONTAINS, "retry"),
        )

        assert evaluate_rule(rule, "error, will retry") is not None
        assert evaluate_rule(rule, "error only") is None

    def test_negation_applies_per_pattern(self):
        """Negation inverts one pattern, not the AND."""
        rule = make_rule(
            Pattern(PatternMode.REGEX, r"^>\s*$"),
            Pattern(PatternMode.CONTAINS, "esc to interrupt", negate=True),
        )

        assert evaluate_rule(rule, "output\n> ") is not None
        assert evaluate_rule(rule, "esc to interrupt\n> ") is None

    def test_last_capturing_regex_wins(self):
        """Groups come from the last regex pattern that captured."""
        rule = make_rule(
            Pattern(PatternMode.REGEX, r"agent (\w+)"),
            Pattern(PatternMode.CONTAINS, "task"),
            Pattern(PatternMode.REGEX, r"task (squad-\w+)"),
        )

        match = evaluate_rule(rule, "agent FairBay picked task squad-xyz")
        assert match is not None
        assert match.captured_groups == ["squad-xyz"]
        assert match.full_match == "task squad-xyz"

    def test_full_match_falls_back_to_literal(self):
        """Without captures the full match comes from the last matching pattern."""
        rule = make_rule(Pattern(PatternMode.EXACT, "Continue? [y/n]"))

        match = evaluate_rule(rule, "Continue? [y/n]")
        assert match is not None
        assert match.full_match == "Continue? [y/n]"
        assert match.captured_groups == []

    @pytest.mark.parametrize("text", ["", "x", "Continue?"])
    def test_no_match_returns_none(self, text):
        """Non-matching text yields None."""
        rule = make_rule(Pattern(PatternMode.EXACT, "Continue? [y/n]"))
        assert evaluate_rule(rule, text) is None
