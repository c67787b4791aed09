"""
Rules Module - Pattern rules and the engine that runs them
==========================================================

This module provides the rule system:
- Rule, Pattern and Action models with load-time validation
- Pattern matching (regex, contains, exact, startsWith, endsWith)
- Template variables for action payloads
- The rule engine orchestrating match, rate limit and dispatch
- Rule file storage and import/export
"""

from .engine import RuleEngine, RuleSet, DryRunResult
from .matcher import MatchResult, RuleMatch, evaluate_rule, match_pattern
from .models import Action, ActionType, Pattern, PatternMode, Rule, RuleCategory
from .store import RuleStore, export_rules, import_rules
from .templates import TemplateContext, resolve

__all__ = [
    "RuleEngine",
    "RuleSet",
    "DryRunResult",
    "MatchResult",
    "RuleMatch",
    "evaluate_rule",
    "match_pattern",
    "Action",
    "ActionType",
    "Pattern",
    "PatternMode",
    "Rule",
    "RuleCategory",
    "RuleStore",
    "export_rules",
    "import_rules",
    "TemplateContext",
    "resolve",
]
