"""
Rule Store - Rule file persistence and import/export
====================================================

Rules live in a YAML file (``<config_dir>/rules.yaml`` by default). The
same document shape is used for JSON import/export:

    {"version": 1, "exportedAt": "...", "rules": [{...}, ...]}

A bare list of rules is accepted wherever a document is.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

from core.exceptions import ConfigError, RuleValidationError
from core.logging import get_logger

from .engine import validate_rules
from .models import Rule

logger = get_logger("rules.store")

DOCUMENT_VERSION = 1

DEFAULT_RULES: List[Dict[str, Any]] = [
    {
        "id": "recover-rate-limit",
        "name": "Rate limit recovery",
        "description": "Wait out an API rate limit, then tell the agent to carry on.",
        "category": "recovery",
        "patterns": [
            {"mode": "regex", "value": r"rate.?limit(ed)?|429 too many requests|overloaded_error"},
        ],
        "actions": [
            {"type": "notify_only", "value": "{agent} hit a rate limit, resuming in 60s"},
            {"type": "send_text", "value": "continue", "delayMs": 60000},
        ],
        "sessionStates": ["working"],
        "cooldownSeconds": 300,
        "maxTriggersPerHour": 6,
        "order": 10,
    },
    {
        "id": "recover-connection-refused",
        "name": "Connection refused recovery",
        "description": "Retry after a dropped API connection.",
        "category": "recovery",
        "patterns": [
            {"mode": "regex", "value": r"ECONNREFUSED|ECONNRESET|connection refused"},
        ],
        "actions": [
            {"type": "send_text", "value": "retry", "delayMs": 5000},
        ],
        "sessionStates": ["working"],
        "cooldownSeconds": 120,
        "maxTriggersPerHour": 10,
        "order": 20,
    },
    {
        "id": "prompt-continue-yn",
        "name": "Continue? [y/n]",
        "description": "Answer yes to a plain continuation prompt.",
        "category": "prompt",
        "patterns": [
            {"mode": "regex", "value": r"^\s*Continue\? \[y/n\]\s*$"},
        ],
        "actions": [
            {"type": "send_text", "value": "y"},
        ],
        "cooldownSeconds": 10,
        "order": 30,
    },
    {
        "id": "prompt-proceed",
        "name": "Do you want to proceed?",
        "description": "Accept the default option of a proceed confirmation menu.",
        "category": "prompt",
        "patterns": [
            {"mode": "contains", "value": "Do you want to proceed?"},
        ],
        "actions": [
            {"type": "send_keys", "value": "Enter"},
        ],
        "sessionStates": ["working", "needs_input"],
        "cooldownSeconds": 10,
        "order": 40,
    },
    {
        "id": "stall-idle-notify",
        "name": "Idle agent notification",
        "description": "Tell a human when an agent sits at an empty prompt.",
        "category": "stall",
        "enabled": False,
        "patterns": [
            {"mode": "regex", "value": r"^>\s*$"},
            {"mode": "contains", "value": "esc to interrupt", "negate": True},
        ],
        "actions": [
            {"type": "notify_only", "value": "{agent} ({session}) looks idle"},
            {"type": "signal", "value": 'idle {"agentName":"{agent}"}'},
        ],
        "sessionStates": ["working"],
        "cooldownSeconds": 900,
        "order": 100,
    },
]


def rule_to_dict(rule: Rule) -> Dict[str, Any]:
    """Convert a rule to its document form (camelCase keys)."""
    return rule.to_dict()


def rule_from_dict(data: Dict[str, Any]) -> Rule:
    """
    Build a rule from its document form.

    Raises:
        RuleValidationError: If the mapping is malformed
    """
    return Rule.from_dict(data)


def default_rules() -> List[Rule]:
    """The built-in rule set used to seed a new rules file."""
    return [rule_from_dict(data) for data in DEFAULT_RULES]


def _rules_from_document(document: Any) -> List[Rule]:
    if document is None:
        return []

    if isinstance(document, dict):
        version = document.get("version", DOCUMENT_VERSION)
        if version != DOCUMENT_VERSION:
            raise ConfigError(f"Unsupported rule document version: {version!r}")
        items = document.get("rules") or []
    else:
        items = document

    if not isinstance(items, list):
        raise ConfigError("Rule document must contain a list of rules")

    return [rule_from_dict(item) for item in items]


def parse_document(text: str) -> Any:
    """
    Parse a JSON or YAML rule document.

    Raises:
        ConfigError: If the text is not valid YAML/JSON
    """
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid rule document: {e}")


def export_rules(rules: Iterable[Rule]) -> Dict[str, Any]:
    """
    Build an export document.

    Example:
        document = export_rules(engine.rules)
        document["rules"][0]["id"]
    """
    return {
        "version": DOCUMENT_VERSION,
        "exportedAt": datetime.now(timezone.utc).isoformat(),
        "rules": [rule_to_dict(rule) for rule in rules],
    }


def export_json(rules: Iterable[Rule], indent: int = 2) -> str:
    return json.dumps(export_rules(rules), indent=indent)


def import_rules(
    current: Iterable[Rule],
    document: Union[Dict[str, Any], List[Any], str],
    merge: bool = True
) -> List[Rule]:
    """
    Combine an imported document with the current rules.

    With ``merge=True`` current rules absent from the document are kept
    and rules with a matching id are overwritten in place; new rules are
    appended. With ``merge=False`` the document replaces the set.

    The result is validated as a whole before it is returned.

    Args:
        current: Rules currently loaded
        document: Parsed document, or its JSON/YAML text
        merge: Merge by id instead of replacing

    Returns:
        The new, validated rule list

    Raises:
        ConfigError: Malformed document
        RuleValidationError: An imported rule is invalid
    """
    if isinstance(document, str):
        document = parse_document(document)

    imported = _rules_from_document(document)

    if merge:
        combined: Dict[str, Rule] = {rule.id: rule for rule in current}
        for rule in imported:
            combined[rule.id] = rule
        result = list(combined.values())
    else:
        result = imported

    validate_rules(result)
    logger.info(
        f"Imported {len(imported)} rules ({'merge' if merge else 'replace'}), {len(result)} total"
    )
    return result


class RuleStore:
    """
    YAML rule file.

    Example:
        store = RuleStore(config.rules_path)
        engine.load_rules(store.load())
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    @property
    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> List[Rule]:
        """
        Load and validate the rule file, seeding defaults if it is missing.

        Raises:
            ConfigError: Unreadable or malformed file
            RuleValidationError: An invalid rule
        """
        if not self.path.exists():
            logger.info(f"No rule file at {self.path}, writing defaults")
            rules = default_rules()
            self.save(rules)
            return rules

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in rule file {self.path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read rule file {self.path}: {e}")

        try:
            rules = _rules_from_document(document)
            validate_rules(rules)
        except RuleValidationError as e:
            e.details.setdefault("file", str(self.path))
            raise

        logger.debug(f"Loaded {len(rules)} rules from {self.path}")
        return rules

    def save(self, rules: Iterable[Rule], path: Optional[Path] = None) -> None:
        """Write rules to the file (or to ``path``)."""
        path = Path(path) if path else self.path
        data = {
            "version": DOCUMENT_VERSION,
            "rules": [rule_to_dict(rule) for rule in rules],
        }

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        except OSError as e:
            raise ConfigError(f"Cannot write rule file {path}: {e}")

        logger.info(f"Saved rules to {path}")
