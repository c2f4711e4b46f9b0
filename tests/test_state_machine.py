"""
tests/test_state_machine.py — Consolidation job lifecycle FSM.
Run: pytest tests/test_state_machine.py -v
"""

from __future__ import annotations

import threading

import pytest

from core.state_machine import IllegalTransitionError, State, StateMachine


class TestStateMachine:
    def test_initial_state_is_idle(self):
        assert StateMachine().state == State.IDLE

    def test_full_cycle(self):
        fsm = StateMachine()
        fsm.transition(State.RUNNING)
        fsm.transition(State.SUCCESS)
        fsm.transition(State.RUNNING)
        fsm.transition(State.RETRY)
        fsm.transition(State.IDLE)
        assert fsm.state == State.IDLE

    @pytest.mark.parametrize("path", [
        [State.SUCCESS],
        [State.RETRY],
        [State.IDLE],
        [State.RUNNING, State.RUNNING],
        [State.RUNNING, State.IDLE],
    ])
    def test_illegal_transitions_raise(self, path):
        fsm = StateMachine()
        with pytest.raises(IllegalTransitionError):
            for state in path:
                fsm.transition(state)

    def test_try_begin_only_once(self):
        fsm = StateMachine()
        assert fsm.try_begin()
        assert not fsm.try_begin()
        fsm.transition(State.RETRY)
        assert fsm.try_begin()

    def test_try_begin_is_atomic(self):
        fsm = StateMachine()
        wins = []
        barrier = threading.Barrier(8)

        def contender():
            barrier.wait()
            wins.append(fsm.try_begin())

        threads = [threading.Thread(target=contender) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert wins.count(True) == 1

    def test_reset(self):
        fsm = StateMachine()
        fsm.transition(State.RUNNING)
        with pytest.raises(IllegalTransitionError) as err:
            fsm.reset()
        assert (err.value.source, err.value.target) == (State.RUNNING, State.IDLE)
        fsm.transition(State.SUCCESS)
        fsm.reset()
        assert fsm.state == State.IDLE

    def test_can_transition(self):
        fsm = StateMachine()
        assert fsm.can_transition(State.RUNNING)
        assert not fsm.can_transition(State.SUCCESS)

    def test_listener_called_and_failures_contained(self):
        fsm = StateMachine()
        seen = []

        def broken(old, new):
            raise RuntimeError("listener bug")

        fsm.add_listener(broken)
        fsm.add_listener(lambda old, new: seen.append((old, new)))
        fsm.try_begin()
        fsm.transition(State.SUCCESS)
        assert seen == [(State.IDLE, State.RUNNING), (State.RUNNING, State.SUCCESS)]
