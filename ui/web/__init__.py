"""
Web UI Module - FastAPI-based dashboard API
===========================================

This module provides the HTTP API used by the dashboard:
- Engine and watcher status
- Activity log
- Rule listing, reload, import and export
- Dry-run rule tester
"""

from .app import create_app, run_app
from .routes import router

__all__ = [
    "create_app",
    "run_app",
    "router",
]
