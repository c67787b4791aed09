"""
Exception Definitions - Custom exceptions for Session Autopilot
===============================================================

This module defines the exceptions raised by the automation engine and
its adapters. Suppressions (cooldown, rate limits, state filters) are not
errors and never show up here; they are recorded in the activity log.
"""


class AutopilotError(Exception):
    """
    Base exception for all Session Autopilot errors.

    Attributes:
        message (str): Human-readable error description
        details (dict): Additional error details for debugging
    """

    def __init__(self, message: str, details: dict = None):
        """
        Initialize the exception.

        Args:
            message: Human-readable error description
            details: Optional dictionary with additional error context
        """
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return formatted error message with details if present."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigError(AutopilotError):
    """
    Configuration-related errors.

    Raised when there are issues with:
    - Missing or unreadable configuration files
    - Invalid configuration values
    - Malformed rule documents on import
    """
    pass


class RuleValidationError(ConfigError):
    """
    A rule failed validation at load time.

    Raised for malformed fields, duplicate ids and regex patterns that do
    not compile. The active rule set is never modified when this is raised.

    Attributes:
        rule_id (str): Id of the offending rule (may be empty)
    """

    def __init__(self, message: str, rule_id: str = "", details: dict = None):
        self.rule_id = rule_id
        details = dict(details or {})
        if rule_id:
            details.setdefault("rule_id", rule_id)
        super().__init__(message, details)


class ActuatorError(AutopilotError):
    """
    An actuator call failed.

    Raised by Actuator implementations when a keystroke, command, signal
    or notification could not be delivered. The dispatcher records it
    against the action and never retries.

    Attributes:
        session_id (str): Target session, empty for notifications
    """

    def __init__(self, message: str, session_id: str = "", details: dict = None):
        self.session_id = session_id
        super().__init__(message, details)


class SessionNotFoundError(ActuatorError):
    """The target session no longer exists."""
    pass
