"""
Pattern Matcher - Evaluate patterns and rules against session output
====================================================================

Pure functions, no state:
- match_pattern: one pattern against one text chunk
- evaluate_rule: every pattern of a rule (logical AND)

When several regex patterns of one rule capture groups, the groups of the
last one evaluated are the ones exposed to templates.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .models import Pattern, PatternMode, Rule


@dataclass
class MatchResult:
    """
    Outcome of matching a single pattern.

    Attributes:
        matched (bool): Final result, after negation
        captured_groups (list): Numbered regex groups ($1..$N)
        full_match (str): Matched text ($0), empty when nothing was captured
    """
    matched: bool
    captured_groups: List[str] = field(default_factory=list)
    full_match: str = ""


@dataclass
class RuleMatch:
    """
    A rule whose patterns all matched a text chunk.

    Attributes:
        rule (Rule): The matching rule
        text (str): The evaluated text
        full_match (str): Text exposed as {match} / {$0}
        captured_groups (list): Groups exposed as {$1}..{$N}
    """
    rule: Rule
    text: str
    full_match: str = ""
    captured_groups: List[str] = field(default_factory=list)


def _literal_span(text: str, value: str, folded_text: str, folded_value: str,
                  index: int) -> str:
    # Lowercasing can change string length for a few characters; fall back
    # to the pattern value when offsets no longer line up.
    if len(folded_text) == len(text) and len(folded_value) == len(value):
        return text[index:index + len(value)]
    return value


def _match_literal(pattern: Pattern, text: str) -> MatchResult:
    value = pattern.value
    if pattern.case_sensitive:
        haystack, needle = text, value
    else:
        haystack, needle = text.lower(), value.lower()

    if pattern.mode is PatternMode.CONTAINS:
        index = haystack.find(needle)
        if index < 0:
            return MatchResult(False)
        return MatchResult(True, [], _literal_span(text, value, haystack, needle, index))

    if pattern.mode is PatternMode.EXACT:
        if haystack != needle:
            return MatchResult(False)
        return MatchResult(True, [], text)

    if pattern.mode is PatternMode.STARTS_WITH:
        if not haystack.startswith(needle):
            return MatchResult(False)
        return MatchResult(True, [], _literal_span(text, value, haystack, needle, 0))

    if pattern.mode is PatternMode.ENDS_WITH:
        if not haystack.endswith(needle):
            return MatchResult(False)
        return MatchResult(
            True, [], _literal_span(text, value, haystack, needle, len(haystack) - len(needle))
        )

    raise ValueError(f"Unsupported literal mode: {pattern.mode}")


def _match_regex(pattern: Pattern, text: str) -> MatchResult:
    match = pattern.compile().search(text)
    if match is None:
        return MatchResult(False)
    groups = [g if g is not None else "" for g in match.groups()]
    return MatchResult(True, groups, match.group(0))


def match_pattern(pattern: Pattern, text: str) -> MatchResult:
    """
    Match one pattern against a text chunk.

    ``negate`` inverts only the boolean; a negated pattern never carries
    captures, since it asserts absence.

    Args:
        pattern: Pattern to evaluate (already validated)
        text: Session output text

    Returns:
        MatchResult
    """
    if pattern.mode is PatternMode.REGEX:
        base = _match_regex(pattern, text)
    else:
        base = _match_literal(pattern, text)

    if pattern.negate:
        return MatchResult(matched=not base.matched)
    return base


def evaluate_rule(rule: Rule, text: str) -> Optional[RuleMatch]:
    """
    Evaluate every pattern of a rule against a text chunk.

    Args:
        rule: Rule to evaluate
        text: Session output text

    Returns:
        RuleMatch if all patterns matched, None otherwise. A rule with no
        patterns never matches.
    """
    if not rule.patterns:
        return None

    captured: Optional[MatchResult] = None
    fallback: Optional[MatchResult] = None

    for pattern in rule.patterns:
        result = match_pattern(pattern, text)
        if not result.matched:
            return None
        if result.captured_groups:
            captured = result
        elif result.full_match:
            fallback = result

    source = captured or fallback
    if source is None:
        return RuleMatch(rule=rule, text=text)

    return RuleMatch(
        rule=rule,
        text=text,
        full_match=source.full_match,
        captured_groups=list(source.captured_groups),
    )
