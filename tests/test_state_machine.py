"""
tests/test_state_machine.py — Execution lifecycle transitions.
"""

from __future__ import annotations

import pytest

from psgate.state_machine import (
    TERMINAL_STATES,
    ExecutionState,
    ExecutionStateMachine,
    IllegalTransitionError,
)


class TestExecutionStateMachine:
    def test_initial_state_is_pending(self):
        assert ExecutionStateMachine().state == ExecutionState.PENDING

    @pytest.mark.parametrize("final", [
        ExecutionState.COMPLETED, ExecutionState.TIMED_OUT, ExecutionState.FAILED,
    ])
    def test_running_to_each_terminal(self, final):
        fsm = ExecutionStateMachine()
        fsm.transition(ExecutionState.RUNNING)
        fsm.transition(final)
        assert fsm.state == final
        assert fsm.state in TERMINAL_STATES

    def test_pending_can_fail_directly(self):
        fsm = ExecutionStateMachine()
        fsm.transition(ExecutionState.FAILED)
        assert fsm.state is ExecutionState.FAILED

    def test_pending_cannot_complete(self):
        fsm = ExecutionStateMachine()
        with pytest.raises(IllegalTransitionError):
            fsm.transition(ExecutionState.COMPLETED)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_states_are_final(self, terminal):
        fsm = ExecutionStateMachine()
        if terminal is not ExecutionState.FAILED:
            fsm.transition(ExecutionState.RUNNING)
        fsm.transition(terminal)
        for target in ExecutionState:
            with pytest.raises(IllegalTransitionError):
                fsm.transition(target)
        assert fsm.state is terminal

    def test_terminal_set(self):
        assert TERMINAL_STATES == {
            ExecutionState.COMPLETED, ExecutionState.TIMED_OUT, ExecutionState.FAILED,
        }

    def test_listener_notified(self):
        fsm = ExecutionStateMachine()
        seen = []
        fsm.add_listener(lambda old, new: seen.append((old, new)))
        fsm.transition(ExecutionState.RUNNING)
        assert seen == [(ExecutionState.PENDING, ExecutionState.RUNNING)]

    def test_failing_listener_does_not_break_transition(self):
        fsm = ExecutionStateMachine()

        def boom(old, new):
            raise RuntimeError("listener bug")

        fsm.add_listener(boom)
        fsm.transition(ExecutionState.RUNNING)
        assert fsm.state == ExecutionState.RUNNING
