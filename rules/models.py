"""
Rule Models - Rules, patterns and actions
=========================================

This module defines the immutable rule data model used by the engine:
- Rule: a named, ordered combination of patterns and actions
- Pattern: a single text predicate (mode, value, case, negation)
- Action: a typed, templated side effect

Rules are frozen so a loaded rule set can be shared between concurrent
evaluation passes without copying. Validation happens once, when a rule
set is loaded; matching never has to deal with malformed rules.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, FrozenSet, Iterable, Tuple

from core.exceptions import RuleValidationError


class _LenientEnum(Enum):
    """Enum that also accepts case and separator variants of its values."""

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            wanted = value.replace("_", "").replace("-", "").lower()
            for member in cls:
                if member.value.replace("_", "").lower() == wanted:
                    return member
        return None


class RuleCategory(_LenientEnum):
    """What kind of situation a rule reacts to."""
    RECOVERY = "recovery"
    PROMPT = "prompt"
    STALL = "stall"
    NOTIFICATION = "notification"
    CUSTOM = "custom"


class PatternMode(_LenientEnum):
    """Types of pattern matching."""
    REGEX = "regex"             # Regular expression search
    CONTAINS = "contains"       # Contains substring
    EXACT = "exact"             # Whole text equality
    STARTS_WITH = "startsWith"  # Starts with
    ENDS_WITH = "endsWith"      # Ends with


class ActionType(_LenientEnum):
    """The closed set of things a rule can do when it fires."""
    SEND_TEXT = "send_text"
    SEND_KEYS = "send_keys"
    TMUX_COMMAND = "tmux_command"
    SIGNAL = "signal"
    NOTIFY_ONLY = "notify_only"


@lru_cache(maxsize=512)
def _compile(source: str, case_sensitive: bool) -> "re.Pattern[str]":
    flags = re.MULTILINE
    if not case_sensitive:
        flags |= re.IGNORECASE
    return re.compile(source, flags)


@dataclass(frozen=True)
class Pattern:
    """
    A single text-matching predicate.

    Attributes:
        mode (PatternMode): How ``value`` is interpreted
        value (str): Regex source or literal text
        case_sensitive (bool): Compare case exactly (default False)
        negate (bool): Invert the match result
    """
    mode: PatternMode
    value: str
    case_sensitive: bool = False
    negate: bool = False

    def __post_init__(self):
        if not isinstance(self.mode, PatternMode):
            object.__setattr__(self, "mode", PatternMode(self.mode))

    def compile(self) -> "re.Pattern[str]":
        """
        Return the compiled regex for a ``regex`` pattern.

        Raises:
            re.error: If the source does not compile
        """
        return _compile(self.value, self.case_sensitive)

    def validate(self, rule_id: str = "") -> None:
        """Check the pattern is well formed and, for regex, compiles."""
        if not isinstance(self.value, str) or self.value == "":
            raise RuleValidationError("Pattern value must be a non-empty string", rule_id)

        for key, flag in (("caseSensitive", self.case_sensitive), ("negate", self.negate)):
            if not isinstance(flag, bool):
                raise RuleValidationError(f"{key} must be true or false, got {flag!r}", rule_id)

        if self.mode is PatternMode.REGEX:
            try:
                self.compile()
            except re.error as e:
                raise RuleValidationError(
                    f"Invalid regex {self.value!r}: {e}",
                    rule_id,
                    {"pattern": self.value}
                )


@dataclass(frozen=True)
class Action:
    """
    A typed, templated side effect.

    Attributes:
        type (ActionType): Which actuator capability to use
        value (str): Payload template, may contain {var} and {$N}
        delay_ms (int): Defer the actuator call by this many milliseconds
    """
    type: ActionType
    value: str = ""
    delay_ms: int = 0

    def __post_init__(self):
        if not isinstance(self.type, ActionType):
            object.__setattr__(self, "type", ActionType(self.type))

    def validate(self, rule_id: str = "") -> None:
        if not isinstance(self.value, str):
            raise RuleValidationError("Action value must be a string", rule_id)

        if isinstance(self.delay_ms, bool) or not isinstance(self.delay_ms, int) or self.delay_ms < 0:
            raise RuleValidationError(
                f"delayMs must be a non-negative integer, got {self.delay_ms!r}", rule_id
            )

        if self.type is not ActionType.NOTIFY_ONLY and not self.value:
            raise RuleValidationError(
                f"Action '{self.type.value}' needs a value", rule_id
            )

        if self.type is ActionType.SIGNAL and not self.value.split(" ", 1)[0]:
            raise RuleValidationError("Signal actions need a '<kind> <json>' value", rule_id)


@dataclass(frozen=True)
class Rule:
    """
    A single automation rule.

    All patterns must match (AND) for the rule to fire; a rule without
    patterns never matches. Actions run in order.

    Attributes:
        id (str): Stable identifier, unique within a rule set
        name (str): Display name
        description (str): Free text
        category (RuleCategory): Kind of situation handled
        enabled (bool): Whether the rule is evaluated at all
        patterns (tuple): Patterns, ANDed
        actions (tuple): Actions, executed in order
        session_states (frozenset): Allowed lifecycle phases, empty = all
        cooldown_seconds (float): Minimum seconds between two triggers
        max_triggers_per_hour (int): 0 = unlimited
        order (int): Lower is evaluated first
    """
    id: str
    name: str
    description: str = ""
    category: RuleCategory = RuleCategory.CUSTOM
    enabled: bool = True
    patterns: Tuple[Pattern, ...] = ()
    actions: Tuple[Action, ...] = ()
    session_states: FrozenSet[str] = field(default_factory=frozenset)
    cooldown_seconds: float = 0.0
    max_triggers_per_hour: int = 0
    order: int = 0

    def __post_init__(self):
        if not isinstance(self.category, RuleCategory):
            object.__setattr__(self, "category", RuleCategory(self.category))
        object.__setattr__(self, "patterns", tuple(self.patterns))
        object.__setattr__(self, "actions", tuple(self.actions))
        object.__setattr__(
            self, "session_states", frozenset(s.lower() for s in self.session_states)
        )

    def allows_state(self, session_state: str) -> bool:
        """True if the rule may fire while a session is in ``session_state``."""
        if not self.session_states:
            return True
        return (session_state or "").lower() in self.session_states

    def validate(self) -> None:
        """
        Validate the rule.

        Raises:
            RuleValidationError: On the first problem found
        """
        if not isinstance(self.id, str) or not self.id.strip():
            raise RuleValidationError("Rule id must be a non-empty string")

        if not isinstance(self.name, str) or not self.name.strip():
            raise RuleValidationError("Rule name must be a non-empty string", self.id)

        if not isinstance(self.enabled, bool):
            raise RuleValidationError(f"enabled must be true or false, got {self.enabled!r}", self.id)

        if isinstance(self.cooldown_seconds, bool) or not isinstance(self.cooldown_seconds, (int, float)) \
                or self.cooldown_seconds < 0:
            raise RuleValidationError(
                f"cooldownSeconds must be a non-negative number, got {self.cooldown_seconds!r}", self.id
            )

        if isinstance(self.max_triggers_per_hour, bool) or not isinstance(self.max_triggers_per_hour, int) \
                or self.max_triggers_per_hour < 0:
            raise RuleValidationError(
                f"maxTriggersPerHour must be a non-negative integer, got {self.max_triggers_per_hour!r}",
                self.id
            )

        if isinstance(self.order, bool) or not isinstance(self.order, int):
            raise RuleValidationError(f"order must be an integer, got {self.order!r}", self.id)

        for pattern in self.patterns:
            if not isinstance(pattern, Pattern):
                raise RuleValidationError("patterns must contain Pattern objects", self.id)
            pattern.validate(self.id)

        for action in self.actions:
            if not isinstance(action, Action):
                raise RuleValidationError("actions must contain Action objects", self.id)
            action.validate(self.id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert rule to a document dictionary (camelCase keys)."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category.value,
            "enabled": self.enabled,
            "patterns": [
                {
                    "mode": p.mode.value,
                    "value": p.value,
                    "caseSensitive": p.case_sensitive,
                    "negate": p.negate,
                }
                for p in self.patterns
            ],
            "actions": [
                {"type": a.type.value, "value": a.value, "delayMs": a.delay_ms}
                for a in self.actions
            ],
            "sessionStates": sorted(self.session_states),
            "cooldownSeconds": self.cooldown_seconds,
            "maxTriggersPerHour": self.max_triggers_per_hour,
            "order": self.order,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rule":
        """
        Create a rule from a document dictionary.

        Both camelCase (``cooldownSeconds``) and snake_case
        (``cooldown_seconds``) keys are accepted.

        Raises:
            RuleValidationError: If a field has the wrong shape
        """
        if not isinstance(data, dict):
            raise RuleValidationError(f"Rule must be a mapping, got {type(data).__name__}")

        rule_id = str(data.get("id", ""))
        try:
            return cls(
                id=rule_id,
                name=data.get("name", rule_id),
                description=data.get("description", "") or "",
                category=_get(data, "category", default="custom"),
                enabled=_get(data, "enabled", default=True),
                patterns=tuple(_pattern_from_dict(p) for p in _as_list(data.get("patterns"))),
                actions=tuple(_action_from_dict(a) for a in _as_list(data.get("actions"))),
                session_states=frozenset(
                    str(s) for s in _as_list(_get(data, "sessionStates", "session_states"))
                ),
                cooldown_seconds=_get(data, "cooldownSeconds", "cooldown_seconds", default=0),
                max_triggers_per_hour=_get(data, "maxTriggersPerHour", "max_triggers_per_hour", default=0),
                order=_get(data, "order", default=0),
            )
        except RuleValidationError as e:
            if not e.rule_id and rule_id:
                raise RuleValidationError(e.message, rule_id, e.details)
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise RuleValidationError(f"Malformed rule: {e}", rule_id)


def _get(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _as_list(value: Any) -> Iterable[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return value
    raise TypeError(f"expected a list, got {type(value).__name__}")


def _pattern_from_dict(data: Dict[str, Any]) -> Pattern:
    if not isinstance(data, dict):
        raise TypeError("pattern must be a mapping")
    return Pattern(
        mode=PatternMode(_get(data, "mode", default="contains")),
        value=data["value"],
        case_sensitive=_get(data, "caseSensitive", "case_sensitive", default=False),
        negate=_get(data, "negate", default=False),
    )


def _action_from_dict(data: Dict[str, Any]) -> Action:
    if not isinstance(data, dict):
        raise TypeError("action must be a mapping")
    return Action(
        type=ActionType(data["type"]),
        value=data.get("value", "") or "",
        delay_ms=_get(data, "delayMs", "delay_ms", default=0),
    )
