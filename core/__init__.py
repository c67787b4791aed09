"""
Core Module - Foundation components for Session Autopilot
=========================================================

This module provides the foundational components including:
- Configuration management
- Logging setup
- Exception handling
- Rate limiting
- Activity log
"""

from .activity_log import ActionRecord, ActionStatus, ActivityLog, ActivityLogEntry
from .config import Config, load_config, save_config
from .exceptions import (
    AutopilotError,
    ConfigError,
    RuleValidationError,
    ActuatorError,
    SessionNotFoundError,
)
from .logging import setup_logging, get_logger
from .rate_limiter import RateLimiter, RateLimitResult, SuppressionReason

__all__ = [
    "ActionRecord",
    "ActionStatus",
    "ActivityLog",
    "ActivityLogEntry",
    "Config",
    "load_config",
    "save_config",
    "AutopilotError",
    "ConfigError",
    "RuleValidationError",
    "ActuatorError",
    "SessionNotFoundError",
    "setup_logging",
    "get_logger",
    "RateLimiter",
    "RateLimitResult",
    "SuppressionReason",
]
