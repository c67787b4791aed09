"""
Terminal UI Module - Textual-based activity viewer
==================================================

This module provides a terminal view of the rule engine: live activity
and the loaded rules.
"""

from .app import AutopilotApp, run_tui

__all__ = [
    "AutopilotApp",
    "run_tui",
]
