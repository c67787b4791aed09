"""
Shared test fixtures.
"""

import threading
import time
from pathlib import Path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from core.config import EngineConfig
from rules.engine import RuleEngine
from services.actuator import Actuator
from services.dispatcher import ActionDispatcher


class RecordingActuator(Actuator):
    """Actuator that records calls instead of touching tmux."""

    def __init__(self):
        self.calls = []
        self.fail_with = None
        self.fail_on = {}
        # Seconds to sleep per method name, to simulate a slow tmux
        self.delays = {}
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delays.get(call[0], 0))
            with self._lock:
                self.calls.append(call)
        finally:
            with self._lock:
                self.active -= 1
        error = self.fail_on.get(call[0], self.fail_with)
        if error is not None:
            raise error

    def send_text(self, session_id, text):
        self._record("send_text", session_id, text)

    def send_keys(self, session_id, keys):
        self._record("send_keys", session_id, keys)

    def run_session_command(self, session_id, command):
        self._record("run_session_command", session_id, command)

    def emit_signal(self, session_id, payload):
        self._record("emit_signal", session_id, payload)

    def notify(self, message):
        self._record("notify", message)


@pytest.fixture
def actuator():
    return RecordingActuator()


@pytest.fixture
def dispatcher(actuator):
    dispatcher = ActionDispatcher(actuator, max_workers=2)
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture
def engine(dispatcher):
    return RuleEngine(dispatcher, EngineConfig(max_actions_per_minute=0))
