"""
Worker lifecycle state machine.

The transition table is partial: each state lists only its legal events.
Any other event raises ``InvalidTransitionError`` and leaves the machine
untouched. ``STOPPING`` and ``STOPPED`` have no outgoing table entries; the
shutdown path finishes with :meth:`WorkerStateMachine.complete`, which is the
only way to reach ``STOPPED``.
"""

import time
from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from typing import Deque, Dict, List, Optional

from .errors import InvalidTransitionError, StateAssertionError


class WorkerState(StrEnum):
    """Worker lifecycle states."""

    UNINITIALIZED = 'UNINITIALIZED'
    REGISTERING = 'REGISTERING'
    WAITING_APPROVAL = 'WAITING_APPROVAL'
    CONNECTING = 'CONNECTING'
    READY = 'READY'
    ERROR = 'ERROR'
    STOPPING = 'STOPPING'
    STOPPED = 'STOPPED'


class WorkerEvent(StrEnum):
    """Events that trigger state transitions."""

    START = 'START'
    REGISTERED = 'REGISTERED'
    WAIT_APPROVAL = 'WAIT_APPROVAL'
    APPROVED = 'APPROVED'
    CONNECTED = 'CONNECTED'
    STOP = 'STOP'
    ERROR = 'ERROR'
    RECOVER = 'RECOVER'
    COMPLETE = 'COMPLETE'  # Recorded by complete(), never in the table


STATE_TRANSITIONS: Dict[WorkerState, Dict[WorkerEvent, WorkerState]] = {
    WorkerState.UNINITIALIZED: {
        WorkerEvent.START: WorkerState.REGISTERING,
    },
    WorkerState.REGISTERING: {
        WorkerEvent.REGISTERED: WorkerState.CONNECTING,
        WorkerEvent.WAIT_APPROVAL: WorkerState.WAITING_APPROVAL,
        WorkerEvent.ERROR: WorkerState.ERROR,
    },
    WorkerState.WAITING_APPROVAL: {
        WorkerEvent.APPROVED: WorkerState.CONNECTING,
        WorkerEvent.ERROR: WorkerState.ERROR,
        WorkerEvent.STOP: WorkerState.STOPPING,
    },
    WorkerState.CONNECTING: {
        WorkerEvent.CONNECTED: WorkerState.READY,
        WorkerEvent.ERROR: WorkerState.ERROR,
    },
    WorkerState.READY: {
        WorkerEvent.STOP: WorkerState.STOPPING,
        WorkerEvent.ERROR: WorkerState.ERROR,
    },
    WorkerState.ERROR: {
        WorkerEvent.RECOVER: WorkerState.REGISTERING,
        WorkerEvent.STOP: WorkerState.STOPPING,
    },
    WorkerState.STOPPING: {},
    WorkerState.STOPPED: {},
}

DEFAULT_HISTORY_SIZE = 50


@dataclass(frozen=True)
class StateTransition:
    """One entry of the transition history."""

    from_state: WorkerState
    to_state: WorkerState
    event: WorkerEvent
    timestamp: float
    error: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            'from': self.from_state.value,
            'to': self.to_state.value,
            'event': self.event.value,
            'timestamp': self.timestamp,
            'error': str(self.error) if self.error else None,
        }


class WorkerStateMachine:
    """
    Finite state machine over :class:`WorkerState`.

    History is a bounded FIFO: once ``max_history`` transitions are stored,
    each new transition evicts the oldest one.
    """

    def __init__(self, max_history: int = DEFAULT_HISTORY_SIZE):
        if max_history < 1:
            raise ValueError('max_history must be at least 1')
        self._current = WorkerState.UNINITIALIZED
        self._previous: Optional[WorkerState] = None
        self._error: Optional[BaseException] = None
        self._history: Deque[StateTransition] = deque(maxlen=max_history)

    @property
    def current_state(self) -> WorkerState:
        return self._current

    @property
    def previous_state(self) -> Optional[WorkerState]:
        return self._previous

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def max_history(self) -> int:
        return self._history.maxlen or 0

    def next_state(self, event: WorkerEvent) -> Optional[WorkerState]:
        return STATE_TRANSITIONS[self._current].get(event)

    def can_transition(self, event: WorkerEvent) -> bool:
        return self.next_state(event) is not None

    def transition(self, event: WorkerEvent) -> WorkerState:
        """Apply ``event`` and return the new state.

        Raises:
            InvalidTransitionError: if ``event`` is not legal in the current
                state. Nothing is modified in that case.
        """
        target = self.next_state(event)
        if target is None:
            raise InvalidTransitionError(self._current, event)

        self._record(event, target)

        # Leaving ERROR through RECOVER clears the error. STOP keeps it so the
        # reason for shutting down stays visible.
        if self._previous == WorkerState.ERROR and event == WorkerEvent.RECOVER:
            self._error = None
        return target

    def complete(self) -> WorkerState:
        """Finish shutdown: ``STOPPING`` -> ``STOPPED``.

        This is the second phase of the terminal transition. It is only legal
        from ``STOPPING``.
        """
        if self._current != WorkerState.STOPPING:
            raise InvalidTransitionError(self._current, WorkerEvent.COMPLETE)
        self._record(WorkerEvent.COMPLETE, WorkerState.STOPPED)
        return WorkerState.STOPPED

    def _record(self, event: WorkerEvent, target: WorkerState) -> None:
        self._history.append(
            StateTransition(
                from_state=self._current,
                to_state=target,
                event=event,
                timestamp=time.time(),
                error=self._error,
            )
        )
        self._previous = self._current
        self._current = target

    def is_state(self, state: WorkerState) -> bool:
        return self._current == state

    def is_one_of(self, *states: WorkerState) -> bool:
        return self._current in states

    def assert_state(self, expected: WorkerState) -> None:
        if self._current != expected:
            raise StateAssertionError(expected, self._current)

    def get_history(self) -> List[StateTransition]:
        return list(self._history)

    def set_error(self, error: BaseException) -> None:
        self._error = error

    def clear_error(self) -> None:
        self._error = None
