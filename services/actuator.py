"""
Actuator - The engine's only way to touch the outside world
===========================================================

This module defines the Actuator interface the dispatcher calls and a
tmux-backed implementation:
- send_text: type text into a session and confirm it
- send_keys: send a raw key token (C-c, Escape, Down...)
- run_session_command: run an arbitrary tmux command
- emit_signal: write a session signal file for the dashboard
- notify: log, run a notification command, post a webhook
"""

import json
import os
import shlex
import subprocess
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import httpx

from core.config import ActuatorConfig
from core.exceptions import ActuatorError, SessionNotFoundError
from core.logging import get_logger

logger = get_logger("services.actuator")

# Signal kinds that describe a lifecycle phase rather than a payload
STATE_SIGNALS = frozenset({
    "starting", "working", "review", "needs_input", "idle", "completed",
    "completing", "compacting", "polishing", "planning", "paused", "auto_proceed",
})

_SESSION_GONE_MARKERS = ("can't find session", "can't find pane", "no server running", "session not found")


class Actuator(ABC):
    """
    Side-effect interface used by the action dispatcher.

    Every method raises ActuatorError on failure, or SessionNotFoundError
    when the target session does not exist any more.
    """

    @abstractmethod
    def send_text(self, session_id: str, text: str) -> None:
        """Type ``text`` into the session, then press the confirmation key."""

    @abstractmethod
    def send_keys(self, session_id: str, keys: str) -> None:
        """Send a raw key sequence token, unparsed."""

    @abstractmethod
    def run_session_command(self, session_id: str, command: str) -> None:
        """Run a session-manager command for the session."""

    @abstractmethod
    def emit_signal(self, session_id: str, payload: str) -> None:
        """Emit a ``<kind> <json>`` signal for the session."""

    @abstractmethod
    def notify(self, message: str) -> None:
        """Raise a notification; no effect on any session."""


def signal_file_path(signal_dir: str, session_id: str) -> Path:
    """Signal file read by the dashboard for ``session_id``."""
    return Path(signal_dir) / f"jat-signal-tmux-{session_id}.json"


def parse_signal(payload: str) -> Dict:
    """
    Turn a ``<kind> <json>`` payload into a signal document.

    Example:
        parse_signal('working {"taskId": "squad-xyz"}')
        # {"type": "state", "state": "working", "taskId": "squad-xyz"}

    Raises:
        ActuatorError: If the kind is missing or the body is not a JSON object
    """
    kind, _, body = payload.strip().partition(" ")
    if not kind:
        raise ActuatorError("Signal payload is empty")

    body = body.strip()
    data = {}
    if body:
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise ActuatorError(f"Signal body is not valid JSON: {e}", details={"payload": payload})
        if not isinstance(data, dict):
            raise ActuatorError("Signal body must be a JSON object", details={"payload": payload})

    if kind in STATE_SIGNALS:
        document = {"type": "state", "state": kind}
        document.update(data)
    else:
        document = {"type": kind, "data": data}

    document["timestamp"] = datetime.now(timezone.utc).isoformat()
    document["source"] = "autopilot"
    return document


def run_tmux(config: ActuatorConfig, args: List[str], session_id: str = "") -> subprocess.CompletedProcess:
    """
    Run ``tmux <args>`` and return the completed process.

    Raises:
        SessionNotFoundError: tmux reports the session (or server) is gone
        ActuatorError: Any other failure, including timeouts
    """
    cmd = [config.tmux_path] + args

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=config.command_timeout
        )
    except subprocess.TimeoutExpired:
        raise ActuatorError(
            "tmux command timed out",
            session_id,
            {"command": args[0], "timeout": config.command_timeout}
        )
    except FileNotFoundError:
        raise ActuatorError(
            f"tmux not found: {config.tmux_path}",
            session_id,
            {"hint": "Install tmux or set actuator.tmux_path"}
        )

    if result.returncode != 0:
        error = (result.stderr or "").strip() or f"exit status {result.returncode}"
        if any(marker in error.lower() for marker in _SESSION_GONE_MARKERS):
            raise SessionNotFoundError(
                f"Session '{session_id}' does not exist", session_id, {"stderr": error}
            )
        raise ActuatorError(
            f"tmux {args[0]} failed: {error}",
            session_id,
            {"returncode": result.returncode}
        )

    return result


class TmuxActuator(Actuator):
    """
    Actuator backed by the tmux CLI.

    Example:
        actuator = TmuxActuator(ActuatorConfig())
        actuator.send_text("jat-FairBay", "y")
        actuator.send_keys("jat-FairBay", "C-c")
    """

    def __init__(self, config: Optional[ActuatorConfig] = None):
        self.config = config or ActuatorConfig()

    def _run(self, args: List[str], session_id: str = "") -> subprocess.CompletedProcess:
        return run_tmux(self.config, args, session_id)

    def send_text(self, session_id: str, text: str) -> None:
        # -l sends the text literally so words like "Enter" are not keys
        self._run(["send-keys", "-t", session_id, "-l", text], session_id)
        self._run(["send-keys", "-t", session_id, self.config.confirm_key], session_id)
        logger.debug(f"Sent text to {session_id}", extra={"length": len(text)})

    def send_keys(self, session_id: str, keys: str) -> None:
        self._run(["send-keys", "-t", session_id, keys], session_id)
        logger.debug(f"Sent keys {keys!r} to {session_id}")

    def run_session_command(self, session_id: str, command: str) -> None:
        """
        Run a tmux command. ``-t <session>`` is added after the
        subcommand unless the command names a target itself.
        """
        try:
            args = shlex.split(command)
        except ValueError as e:
            raise ActuatorError(f"Cannot parse command {command!r}: {e}", session_id)

        if args and args[0] == self.config.tmux_path:
            args = args[1:]
        if not args:
            raise ActuatorError("Empty tmux command", session_id)

        if "-t" not in args:
            args = [args[0], "-t", session_id] + args[1:]

        self._run(args, session_id)
        logger.debug(f"Ran tmux {args[0]} for {session_id}")

    def emit_signal(self, session_id: str, payload: str) -> None:
        document = parse_signal(payload)
        path = signal_file_path(self.config.signal_dir, session_id)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".signal-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f)
            os.replace(tmp_path, path)
        except OSError as e:
            raise ActuatorError(f"Failed to write signal file: {e}", session_id, {"path": str(path)})

        logger.info(f"Signal '{document.get('state') or document['type']}' emitted for {session_id}")

    def notify(self, message: str) -> None:
        logger.warning(f"Notification: {message}")

        if self.config.notify_command:
            cmd = shlex.split(self.config.notify_command) + [message]
            try:
                result = subprocess.run(
                    cmd, capture_output=True, text=True, timeout=self.config.command_timeout
                )
            except (subprocess.TimeoutExpired, FileNotFoundError) as e:
                raise ActuatorError(f"Notification command failed: {e}")
            if result.returncode != 0:
                raise ActuatorError(
                    f"Notification command failed: {(result.stderr or '').strip()}",
                    details={"returncode": result.returncode}
                )

        if self.config.webhook_url:
            payload = {
                "message": message,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "source": "autopilot",
            }
            try:
                with httpx.Client(timeout=float(self.config.command_timeout)) as client:
                    response = client.post(
                        self.config.webhook_url,
                        json=payload,
                        headers=self.config.webhook_headers
                    )
                    response.raise_for_status()
            except httpx.HTTPError as e:
                raise ActuatorError(f"Webhook delivery failed: {e}", details={"url": self.config.webhook_url})
