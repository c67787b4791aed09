"""
Activity Log - Audit trail of trigger and suppression decisions
===============================================================

Every decision the engine makes about a rule that was considered for a
session output event ends up here: triggers (with the actions they
fired), suppressions (cooldown, rate limits, state filter) and, later,
the delivery status of each action as the dispatcher completes it.

The log is bounded; the oldest entries are dropped first.
"""

import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from .logging import get_logger

logger = get_logger("activity_log")


class ActionStatus(str, Enum):
    """Delivery states of a fired action."""
    PENDING = "pending"
    SCHEDULED = "scheduled"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class ActionRecord:
    """
    One action fired by a trigger.

    Attributes:
        type (str): Action type value, e.g. "send_text"
        value (str): Resolved payload
        delay_ms (int): Configured delay
        dispatch_id (str): Dispatcher handle, empty until dispatched
        status (ActionStatus): Delivery state
        error (str): Failure description, if any
    """
    type: str
    value: str
    delay_ms: int = 0
    dispatch_id: str = ""
    status: ActionStatus = ActionStatus.PENDING
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "value": self.value,
            "delayMs": self.delay_ms,
            "dispatchId": self.dispatch_id,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class ActivityLogEntry:
    """
    A single trigger or suppression decision.

    Attributes:
        timestamp (datetime): Event time
        rule_id (str): Rule considered
        session_id (str): Session whose output was evaluated
        matched_text (str): Full match, empty for state-filtered entries
        actions_fired (list): ActionRecords, empty when suppressed
        suppressed_reason (str): None for triggers, otherwise the reason
        rule_name (str): Rule display name
        session_state (str): Lifecycle phase at evaluation time
        primary (bool): First rule (by order) to match this event
        id (str): Entry id
    """
    timestamp: datetime
    rule_id: str
    session_id: str
    matched_text: str = ""
    actions_fired: List[ActionRecord] = field(default_factory=list)
    suppressed_reason: Optional[str] = None
    rule_name: str = ""
    session_state: str = ""
    primary: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def outcome(self) -> str:
        """One of: suppressed, failed (an action failed), triggered."""
        if self.suppressed_reason:
            return "suppressed"
        if any(a.status == ActionStatus.FAILED for a in self.actions_fired):
            return "failed"
        return "triggered"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "ruleId": self.rule_id,
            "ruleName": self.rule_name,
            "sessionId": self.session_id,
            "sessionState": self.session_state,
            "matchedText": self.matched_text,
            "actionsFired": [a.to_dict() for a in self.actions_fired],
            "suppressedReason": self.suppressed_reason,
            "primary": self.primary,
            "outcome": self.outcome,
        }


class ActivityLog:
    """
    Bounded, thread-safe, append-only activity log.

    Example:
        log = ActivityLog(max_entries=500)
        log.append(entry)
        for entry in log.recent(20):
            print(entry.rule_id, entry.outcome)
    """

    def __init__(self, max_entries: int = 500):
        self.max_entries = max_entries
        self._entries: Deque[ActivityLogEntry] = deque(maxlen=max_entries)
        self._index: Dict[str, ActivityLogEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def append(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        with self._lock:
            if len(self._entries) == self._entries.maxlen:
                evicted = self._entries[0]
                self._index.pop(evicted.id, None)
            self._entries.append(entry)
            self._index[entry.id] = entry
        return entry

    def recent(self, limit: int = 50) -> List[ActivityLogEntry]:
        """
        Most recent entries, newest first.

        Args:
            limit: Maximum number of entries (<= 0 returns nothing)
        """
        if limit <= 0:
            return []
        with self._lock:
            entries = list(self._entries)
        return entries[::-1][:limit]

    def get(self, entry_id: str) -> Optional[ActivityLogEntry]:
        with self._lock:
            return self._index.get(entry_id)

    def update_action(
        self,
        entry_id: str,
        dispatch_id: str,
        status: ActionStatus,
        error: Optional[str] = None
    ) -> bool:
        """
        Record the delivery status of a dispatched action.

        Returns:
            False if the entry has already been evicted
        """
        with self._lock:
            entry = self._index.get(entry_id)
            if entry is None:
                return False
            for record in entry.actions_fired:
                if record.dispatch_id == dispatch_id:
                    record.status = ActionStatus(status)
                    record.error = error
                    return True
        logger.debug(f"No action {dispatch_id} on activity entry {entry_id}")
        return False

    def stats(self) -> Dict[str, Any]:
        """Counts of outcomes and suppression reasons over retained entries."""
        with self._lock:
            entries = list(self._entries)

        outcomes: Dict[str, int] = {"triggered": 0, "suppressed": 0, "failed": 0}
        reasons: Dict[str, int] = {}
        for entry in entries:
            outcomes[entry.outcome] += 1
            if entry.suppressed_reason:
                reasons[entry.suppressed_reason] = reasons.get(entry.suppressed_reason, 0) + 1

        return {"total": len(entries), "outcomes": outcomes, "suppressed_by_reason": reasons}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._index.clear()
