"""
Action Dispatcher - Deliver resolved actions to the actuator
============================================================

Maps each ActionType to exactly one Actuator method and delivers it
without blocking the caller:
- The actions of one trigger form a sequence and run strictly in order
- Immediate steps run on a thread pool
- Delayed steps run from a cancellable timer keyed by dispatch id; the
  delay counts from the end of the previous step
- Deliveries to the same session never overlap

Failures never propagate back to the evaluation pass. They are reported
through the ``on_complete`` callback (and the log) as a final status,
and a failed step does not stop the steps after it.
"""

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_for
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from core.activity_log import ActionStatus
from core.exceptions import ActuatorError, SessionNotFoundError
from core.logging import get_logger, log_context
from rules.models import Action, ActionType

from .actuator import Actuator

logger = get_logger("services.dispatcher")

# Callback signature: (dispatch_id, status, error)
CompletionCallback = Callable[[str, ActionStatus, Optional[str]], None]

# (action, resolved value, dispatch id or None)
SequenceStep = Tuple[Action, str, Optional[str]]


@dataclass
class DispatchResult:
    """
    Handle for an action handed to the dispatcher.

    Attributes:
        dispatch_id (str): Identifier usable with cancel()
        action_type (ActionType): Type of the dispatched action
        session_id (str): Target session
        delay_ms (int): Delay before delivery
        value (str): Resolved payload
        future (Future): Resolves to the final ActionStatus
    """
    dispatch_id: str
    action_type: ActionType
    session_id: str
    delay_ms: int
    value: str
    future: Future


class ActionDispatcher:
    """
    Fire-and-forget delivery of actions.

    Example:
        dispatcher = ActionDispatcher(TmuxActuator())
        results = dispatcher.dispatch_sequence(
            [(escape_action, "Escape", None), (retry_action, "retry", None)],
            "jat-FairBay"
        )
        results[-1].future.result(timeout=5)  # ActionStatus.SENT
    """

    def __init__(self, actuator: Actuator, max_workers: int = 4):
        """
        Initialize dispatcher.

        Args:
            actuator: Side-effect implementation
            max_workers: Threads for delivery
        """
        self.actuator = actuator
        self._handlers: Dict[ActionType, Callable[[str, str], None]] = {
            ActionType.SEND_TEXT: actuator.send_text,
            ActionType.SEND_KEYS: actuator.send_keys,
            ActionType.TMUX_COMMAND: actuator.run_session_command,
            ActionType.SIGNAL: actuator.emit_signal,
            ActionType.NOTIFY_ONLY: lambda session_id, value: actuator.notify(value),
        }
        missing = set(ActionType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for action types: {sorted(m.value for m in missing)}")

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch")
        # dispatch_id -> (timer, steps after it)
        self._timers: Dict[str, Tuple[threading.Timer, List[DispatchResult]]] = {}
        # Steps waiting for an earlier step of their sequence
        self._queued: Set[str] = set()
        self._pending: Dict[str, DispatchResult] = {}
        self._callbacks: Dict[str, Optional[CompletionCallback]] = {}
        self._session_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def pending_count(self) -> int:
        """Dispatched actions that have not completed yet."""
        with self._lock:
            return len(self._pending)

    def dispatch(
        self,
        action: Action,
        resolved_value: str,
        session_id: str,
        on_complete: Optional[CompletionCallback] = None,
        dispatch_id: Optional[str] = None
    ) -> DispatchResult:
        """
        Hand a single action over for delivery. Returns immediately.

        Args:
            action: The rule action (type and delay)
            resolved_value: Payload with template variables substituted
            session_id: Target session
            on_complete: Called once with the final status
            dispatch_id: Identifier to use, generated when omitted

        Returns:
            DispatchResult
        """
        return self.dispatch_sequence(
            [(action, resolved_value, dispatch_id)], session_id, on_complete
        )[0]

    def dispatch_sequence(
        self,
        steps: Sequence[SequenceStep],
        session_id: str,
        on_complete: Optional[CompletionCallback] = None
    ) -> List[DispatchResult]:
        """
        Hand the actions of one trigger over for ordered delivery.

        Each step starts only after the previous one reached a final
        status; a step's ``delay_ms`` is waited after that point. Returns
        immediately.

        Args:
            steps: (action, resolved value, dispatch id or None) in order
            session_id: Target session
            on_complete: Called once per step with its final status

        Returns:
            One DispatchResult per step, in order
        """
        results = [
            DispatchResult(
                dispatch_id=dispatch_id or uuid.uuid4().hex[:12],
                action_type=action.type,
                session_id=session_id,
                delay_ms=action.delay_ms,
                value=value,
                future=Future(),
            )
            for action, value, dispatch_id in steps
        ]
        if not results:
            return results

        with self._lock:
            for result in results:
                self._pending[result.dispatch_id] = result
                self._callbacks[result.dispatch_id] = on_complete
                self._queued.add(result.dispatch_id)

        self._advance(results)
        return results

    def _advance(self, steps: List[DispatchResult]) -> None:
        """Start the first step of ``steps`` that has not been cancelled."""
        while steps:
            step, steps = steps[0], steps[1:]
            with self._lock:
                if step.dispatch_id not in self._queued:
                    continue
                self._queued.discard(step.dispatch_id)
                closed = self._closed

            if closed:
                logger.warning(
                    f"Dispatcher is shut down, dropping {step.action_type.value} for {step.session_id}"
                )
                self._finish(step.dispatch_id, ActionStatus.CANCELLED, "dispatcher shut down")
                continue

            if step.delay_ms > 0:
                timer = threading.Timer(
                    step.delay_ms / 1000.0,
                    self._submit,
                    args=(step, steps),
                    kwargs={"delayed": True}
                )
                timer.daemon = True
                with self._lock:
                    self._timers[step.dispatch_id] = (timer, steps)
                timer.start()
                logger.debug(
                    f"Scheduled {step.action_type.value} for {step.session_id} in {step.delay_ms}ms",
                    extra={"dispatch_id": step.dispatch_id}
                )
            else:
                self._submit(step, steps)
            return

    def _submit(self, step: DispatchResult, rest: List[DispatchResult], delayed: bool = False) -> None:
        with self._lock:
            # A delayed step whose timer is gone has been cancelled
            if delayed and self._timers.pop(step.dispatch_id, None) is None:
                return
            closed = self._closed

        if closed:
            self._finish(step.dispatch_id, ActionStatus.CANCELLED, "dispatcher shut down")
            self._advance(rest)
            return

        try:
            self._executor.submit(self._deliver, step, rest)
        except RuntimeError:
            # Executor shut down between the check and the submit
            self._finish(step.dispatch_id, ActionStatus.CANCELLED, "dispatcher shut down")
            self._advance(rest)

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._lock:
            return self._session_locks.setdefault(session_id, threading.Lock())

    def _deliver(self, step: DispatchResult, rest: List[DispatchResult]) -> None:
        handler = self._handlers[step.action_type]
        action_type, session_id = step.action_type, step.session_id

        with log_context(session=session_id, dispatch_id=step.dispatch_id):
            try:
                with self._session_lock(session_id):
                    handler(session_id, step.value)
            except SessionNotFoundError as e:
                logger.warning(f"Skipped {action_type.value}: {e.message}")
                self._finish(step.dispatch_id, ActionStatus.SKIPPED, e.message)
            except ActuatorError as e:
                logger.error(f"Action {action_type.value} failed for {session_id}: {e}")
                self._finish(step.dispatch_id, ActionStatus.FAILED, str(e))
            except Exception as e:
                logger.exception(f"Unexpected error delivering {action_type.value} to {session_id}")
                self._finish(step.dispatch_id, ActionStatus.FAILED, f"{type(e).__name__}: {e}")
            else:
                logger.info(f"Delivered {action_type.value} to {session_id}")
                self._finish(step.dispatch_id, ActionStatus.SENT)

        self._advance(rest)

    def _finish(self, dispatch_id: str, status: ActionStatus, error: Optional[str] = None) -> None:
        with self._lock:
            result = self._pending.pop(dispatch_id, None)
            callback = self._callbacks.pop(dispatch_id, None)
            self._timers.pop(dispatch_id, None)
            self._queued.discard(dispatch_id)

        if result is None:
            return

        if callback is not None:
            try:
                callback(dispatch_id, status, error)
            except Exception:
                logger.exception(f"Completion callback failed for {dispatch_id}")

        result.future.set_result(status)

    def cancel(self, dispatch_id: str) -> bool:
        """
        Cancel an action that has not started yet.

        Delayed actions still waiting on their timer and actions queued
        behind an earlier step of their sequence can be cancelled. The
        rest of the sequence still runs.

        Returns:
            True if the action was cancelled
        """
        with self._lock:
            entry = self._timers.pop(dispatch_id, None)
            queued = dispatch_id in self._queued
            self._queued.discard(dispatch_id)

        if entry is not None:
            timer, rest = entry
            timer.cancel()
            self._finish(dispatch_id, ActionStatus.CANCELLED)
            logger.debug(f"Cancelled dispatch {dispatch_id}")
            self._advance(rest)
            return True

        if queued:
            self._finish(dispatch_id, ActionStatus.CANCELLED)
            logger.debug(f"Cancelled queued dispatch {dispatch_id}")
            return True

        return False

    def cancel_session(self, session_id: str) -> int:
        """Cancel every action for a session that has not started yet."""
        with self._lock:
            ids = [
                dispatch_id for dispatch_id in list(self._queued) + list(self._timers)
                if self._pending.get(dispatch_id) and self._pending[dispatch_id].session_id == session_id
            ]
        return sum(1 for dispatch_id in ids if self.cancel(dispatch_id))

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for every dispatched action to reach a final status.

        Returns:
            False if the timeout expired first
        """
        with self._lock:
            futures: List[Future] = [r.future for r in self._pending.values()]

        _, not_done = wait_for(futures, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        """Cancel actions that have not started and stop the worker pool."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            timer_ids = list(self._timers)

        for dispatch_id in timer_ids:
            self.cancel(dispatch_id)

        self._executor.shutdown(wait=wait)
        logger.debug("Dispatcher shut down")
