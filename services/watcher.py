"""
Session Watcher - Poll tmux sessions and feed their output to the engine
========================================================================

Every ``poll_interval`` seconds the watcher:
1. Lists tmux sessions whose name starts with the session prefix
2. Captures the last lines of each pane
3. Reads the session's lifecycle state from its signal file
4. Calls ``RuleEngine.process_output`` for that session

Sessions are evaluated concurrently, one task per session, and a failure
in one session never affects the others.
"""

import hashlib
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional

from core.activity_log import ActivityLogEntry
from core.config import ActuatorConfig, WatcherConfig
from core.exceptions import ActuatorError, SessionNotFoundError
from core.logging import get_logger, log_context
from core.rate_limiter import SuppressionReason

from .actuator import run_tmux, signal_file_path

logger = get_logger("services.watcher")

UNKNOWN_STATE = "unknown"


@dataclass(frozen=True)
class ScreenRecord:
    """
    Last evaluated screen of a session.

    Attributes:
        digest (str): Hash of the session state and pane text
        fired (frozenset): Rules that triggered on this screen
        held (frozenset): Rules that matched but were rate limited and
            have not fired yet
    """
    digest: str
    fired: FrozenSet[str] = frozenset()
    held: FrozenSet[str] = frozenset()


class SessionWatcher:
    """
    Polls agent sessions and runs the rule engine on their output.

    Example:
        watcher = SessionWatcher(engine, config.actuator, config.watcher)
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        engine,
        actuator_config: Optional[ActuatorConfig] = None,
        watcher_config: Optional[WatcherConfig] = None
    ):
        """
        Initialize the watcher.

        Args:
            engine: RuleEngine receiving output events
            actuator_config: tmux path, timeouts and signal directory
            watcher_config: Poll interval, capture size and concurrency
        """
        self.engine = engine
        self.actuator_config = actuator_config or ActuatorConfig()
        self.config = watcher_config or WatcherConfig()

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._screens: Dict[str, ScreenRecord] = {}
        self._screen_lock = threading.Lock()

        self.poll_count = 0
        self.last_poll_at: Optional[float] = None
        self.last_sessions: List[str] = []

    @property
    def session_prefix(self) -> str:
        return self.engine.config.session_prefix

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def list_sessions(self) -> List[str]:
        """
        Names of the tmux sessions handled by the watcher.

        Returns:
            Session names with the configured prefix; empty when no tmux
            server is running
        """
        try:
            result = run_tmux(self.actuator_config, ["list-sessions", "-F", "#{session_name}"])
        except SessionNotFoundError:
            return []

        sessions = []
        for line in result.stdout.splitlines():
            name = line.strip()
            if name and name.startswith(self.session_prefix):
                sessions.append(name)
        return sessions

    def capture_output(self, session_id: str) -> str:
        """Last ``capture_lines`` lines of the session's active pane."""
        result = run_tmux(
            self.actuator_config,
            ["capture-pane", "-p", "-J", "-t", session_id, "-S", f"-{self.config.capture_lines}"],
            session_id
        )
        return result.stdout.rstrip("\n")

    def read_session_state(self, session_id: str) -> str:
        """
        Lifecycle state from the session's signal file.

        Returns:
            The ``state`` of the last state signal, or "unknown"
        """
        path = signal_file_path(self.actuator_config.signal_dir, session_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return UNKNOWN_STATE
        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Unreadable signal file {path}: {e}")
            return UNKNOWN_STATE

        if isinstance(data, dict) and data.get("type") == "state" and data.get("state"):
            return str(data["state"]).lower()
        return UNKNOWN_STATE

    def _digest(self, text: str, state: str) -> str:
        return hashlib.sha256(f"{state}\0{text}".encode("utf-8")).hexdigest()

    def _previous_screen(self, session_id: str, digest: str) -> Optional[ScreenRecord]:
        with self._screen_lock:
            record = self._screens.get(session_id)
        if record is not None and record.digest == digest:
            return record
        return None

    def _remember(self, session_id: str, digest: str, previous: Optional[ScreenRecord],
                  entries: List[ActivityLogEntry]) -> None:
        fired = set(previous.fired) if previous else set()
        held = set()
        for entry in entries:
            if not entry.suppressed_reason:
                fired.add(entry.rule_id)
            elif entry.suppressed_reason != SuppressionReason.STATE_FILTERED.value:
                held.add(entry.rule_id)

        record = ScreenRecord(digest, frozenset(fired), frozenset(held - fired))
        with self._screen_lock:
            self._screens[session_id] = record

    def check_session(self, session_id: str, now: Optional[float] = None) -> int:
        """
        Capture and evaluate one session.

        With ``skip_unchanged`` a screen (pane text plus session state)
        that was already evaluated is skipped, unless a rule that matched
        it was held back by a rate limit. Such a screen is evaluated again
        on later polls, without the rules that already fired on it.

        Returns:
            Number of activity entries produced
        """
        with log_context(session=session_id):
            try:
                text = self.capture_output(session_id)
            except SessionNotFoundError:
                logger.debug("Session ended before capture")
                return 0

            if not text.strip():
                return 0

            state = self.read_session_state(session_id)
            if not self.config.skip_unchanged:
                return len(self.engine.process_output(session_id, text, state, now=now))

            digest = self._digest(text, state)
            previous = self._previous_screen(session_id, digest)
            if previous is not None and not previous.held:
                return 0

            skip_rules = previous.fired if previous else frozenset()
            entries = self.engine.process_output(session_id, text, state, now=now, skip_rules=skip_rules)
            self._remember(session_id, digest, previous, entries)
            return len(entries)

    def poll_once(self, now: Optional[float] = None) -> Dict[str, int]:
        """
        Evaluate every session once.

        Args:
            now: Event time for every session in this tick (defaults to now)

        Returns:
            Entry count per session; sessions that failed are omitted
        """
        if now is None:
            now = time.time()

        try:
            sessions = self.list_sessions()
        except ActuatorError as e:
            logger.error(f"Cannot list sessions: {e}")
            return {}

        self.poll_count += 1
        self.last_poll_at = now
        self.last_sessions = sessions

        with self._screen_lock:
            for gone in set(self._screens) - set(sessions):
                del self._screens[gone]

        if not sessions:
            return {}

        executor = self._executor or ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="watch"
        )
        try:
            futures = {
                session_id: executor.submit(self.check_session, session_id, now)
                for session_id in sessions
            }

            results = {}
            for session_id, future in futures.items():
                try:
                    results[session_id] = future.result()
                except Exception as e:
                    logger.error(f"Error checking session {session_id}: {e}", exc_info=True)
            return results
        finally:
            if executor is not self._executor:
                executor.shutdown(wait=False)

    def start(self) -> None:
        """Start polling in a background thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="watch"
        )
        self._thread = threading.Thread(target=self._loop, name="session-watcher", daemon=True)
        self._thread.start()
        logger.info(f"Started session watcher (poll interval: {self.config.poll_interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop polling and wait for the current tick to finish."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        if self._executor:
            self._executor.shutdown(wait=True)
            self._executor = None
        logger.info("Stopped session watcher")

    def run_forever(self) -> None:
        """Poll in the calling thread until interrupted or stopped."""
        self._stop_event.clear()
        self._loop()

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Watcher loop error: {e}", exc_info=True)

            self._stop_event.wait(self.config.poll_interval)

    def get_status(self) -> Dict:
        return {
            "running": self.is_running,
            "poll_interval": self.config.poll_interval,
            "poll_count": self.poll_count,
            "last_poll_at": self.last_poll_at,
            "sessions": list(self.last_sessions),
        }
