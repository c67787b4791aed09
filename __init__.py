"""
Session Autopilot - Rule-driven automation for agent terminal sessions
======================================================================

Watches the live output of long-running agent sessions (tmux sessions
running coding agents) and fires recovery, continuation or notification
actions when configured patterns appear:
1. Rules match pane text with regex or literal patterns
2. Matched rules send keystrokes, tmux commands, signals or notifications
3. Every trigger and suppression is recorded in an activity log

Version: 1.0.0
"""

__version__ = "1.0.0"
__license__ = "MIT"
