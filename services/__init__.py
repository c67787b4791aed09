"""
Services Module - Adapters between the engine and the outside world
===================================================================

This module provides the main services:
- Actuator: tmux keystrokes, commands, signals and notifications
- Action Dispatcher: non-blocking, delayable action delivery
- Session Watcher: tmux polling that feeds the rule engine
- Runtime: wiring of actuator, dispatcher, engine and rule file
"""

from .actuator import Actuator, TmuxActuator
from .dispatcher import ActionDispatcher, DispatchResult
from .runtime import build_engine, build_watcher, reload_rules
from .watcher import SessionWatcher

__all__ = [
    "Actuator",
    "TmuxActuator",
    "ActionDispatcher",
    "DispatchResult",
    "build_engine",
    "build_watcher",
    "reload_rules",
    "SessionWatcher",
]
