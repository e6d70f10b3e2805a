"""
psgate/state_machine.py — Per-invocation execution lifecycle.

One ExecutionStateMachine per execute() call. Transitions are explicit and
any illegal move raises IllegalTransitionError immediately. Every terminal
state is final: nothing is retried, because the supervised operations
(service restarts, database writes) are not guaranteed idempotent.

    PENDING → RUNNING → COMPLETED | TIMED_OUT | FAILED
    PENDING → FAILED                (rejected, or the process never started)
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable

logger = logging.getLogger("psgate.state_machine")


class ExecutionState(str, Enum):
    PENDING   = "PENDING"     # authorized or being authorized, not spawned
    RUNNING   = "RUNNING"     # child process alive
    COMPLETED = "COMPLETED"   # exited on its own (any exit code)
    TIMED_OUT = "TIMED_OUT"   # killed at the deadline
    FAILED    = "FAILED"      # rejected, spawn failure or output ceiling


class IllegalTransitionError(Exception):
    pass


# Allowed transitions: source → {allowed destinations}
_TRANSITIONS: dict[ExecutionState, frozenset[ExecutionState]] = {
    ExecutionState.PENDING:   frozenset({ExecutionState.RUNNING, ExecutionState.FAILED}),
    ExecutionState.RUNNING:   frozenset({
        ExecutionState.COMPLETED, ExecutionState.TIMED_OUT, ExecutionState.FAILED,
    }),
    ExecutionState.COMPLETED: frozenset(),
    ExecutionState.TIMED_OUT: frozenset(),
    ExecutionState.FAILED:    frozenset(),
}

TERMINAL_STATES = frozenset(s for s, dests in _TRANSITIONS.items() if not dests)

# (old_state, new_state)
StateListener = Callable[[ExecutionState, ExecutionState], None]


class ExecutionStateMachine:
    def __init__(self) -> None:
        self._state = ExecutionState.PENDING
        self._lock = threading.RLock()
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> ExecutionState:
        with self._lock:
            return self._state

    def transition(self, new_state: ExecutionState) -> None:
        with self._lock:
            if new_state not in _TRANSITIONS[self._state]:
                raise IllegalTransitionError(
                    f"Illegal transition: {self._state.value} → {new_state.value}"
                )
            old = self._state
            self._state = new_state
        # Notify outside the lock
        for listener in self._listeners:
            try:
                listener(old, new_state)
            except Exception as exc:
                logger.warning(f"State listener failed on {old.value} → {new_state.value}: {exc}")

    def add_listener(self, fn: StateListener) -> None:
        self._listeners.append(fn)

    def __repr__(self) -> str:
        return f"<ExecutionStateMachine state={self._state.value}>"
