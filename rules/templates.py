"""
Template Resolver - Variable substitution for action payloads
=============================================================

Action values are templates. Supported placeholders:
- {session}    Session id
- {agent}      Agent name (session id without the session prefix)
- {timestamp}  ISO-8601 time of resolution
- {match}      Full matched text, same as {$0}
- {$1}..{$N}   Regex capture groups; empty when the group does not exist

Substitution is one left-to-right pass. Anything in braces that is not a
known variable is left exactly as written, so JSON bodies such as
``working {"taskId":"{$1}"}`` survive intact.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

_TOKEN = re.compile(r"\{(\$\d+|[A-Za-z_][A-Za-z0-9_]*)\}")

KNOWN_VARIABLES = frozenset({"session", "agent", "timestamp", "match"})


@dataclass
class TemplateContext:
    """
    Values available to a template.

    Attributes:
        session (str): Session id
        agent (str): Agent name
        match (str): Full matched text
        groups (list): Capture groups, $1 first
        timestamp (datetime): Fixed resolution time; now when omitted
    """
    session: str = ""
    agent: str = ""
    match: str = ""
    groups: List[str] = field(default_factory=list)
    timestamp: Optional[datetime] = None


def agent_from_session(session_id: str, prefix: str = "jat-") -> str:
    """
    Derive the agent name from a session id.

    Example:
        agent_from_session("jat-FairBay")  # "FairBay"
    """
    if prefix and session_id.startswith(prefix):
        return session_id[len(prefix):]
    return session_id


def resolve(template: str, context: TemplateContext) -> str:
    """
    Substitute known variables into a template.

    Never raises: unknown tokens are kept verbatim and out-of-range group
    references resolve to an empty string.

    Args:
        template: Action value template
        context: Variable values

    Returns:
        Resolved string
    """
    if "{" not in template:
        return template

    timestamp = (context.timestamp or datetime.now(timezone.utc)).isoformat()

    def replace(match: "re.Match[str]") -> str:
        token = match.group(1)
        if token.startswith("$"):
            index = int(token[1:])
            if index == 0:
                return context.match
            if index <= len(context.groups):
                return context.groups[index - 1] or ""
            return ""
        if token == "session":
            return context.session
        if token == "agent":
            return context.agent
        if token == "timestamp":
            return timestamp
        if token == "match":
            return context.match
        return match.group(0)

    return _TOKEN.sub(replace, template)


def extract_variables(template: str) -> List[str]:
    """
    List the placeholders referenced by a template, in order of first use.

    Returns:
        Token names, e.g. ["$1", "agent"]
    """
    seen: List[str] = []
    for match in _TOKEN.finditer(template):
        token = match.group(1)
        if token not in seen:
            seen.append(token)
    return seen


def unknown_variables(template: str) -> List[str]:
    """Placeholders that will be left verbatim when the template resolves."""
    return [
        token for token in extract_variables(template)
        if not token.startswith("$") and token not in KNOWN_VARIABLES
    ]
