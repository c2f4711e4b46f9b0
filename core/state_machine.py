"""
core/state_machine.py — Lifecycle of the consolidation job.

  IDLE ──► RUNNING ──► SUCCESS ─┐
   ▲          ▲    └──► RETRY ──┤
   │          └─────────────────┤   next period / re-attempt
   └────────────────────────────┘   settle

Only one RUNNING at a time: try_begin() checks and enters under one lock,
so two triggers racing for the job cannot both win. Anything not in the
table above raises IllegalTransitionError.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum, auto
from typing import Callable

log = logging.getLogger("buddy.state_machine")

Listener = Callable[["State", "State"], None]


class State(Enum):
    IDLE    = auto()
    RUNNING = auto()
    SUCCESS = auto()
    RETRY   = auto()


class IllegalTransitionError(Exception):
    def __init__(self, source: State, target: State) -> None:
        super().__init__(f"cannot move {source.name} → {target.name}")
        self.source = source
        self.target = target


_NEXT: dict[State, frozenset[State]] = {
    State.IDLE:    frozenset({State.RUNNING}),
    State.RUNNING: frozenset({State.SUCCESS, State.RETRY}),
    State.SUCCESS: frozenset({State.IDLE, State.RUNNING}),
    State.RETRY:   frozenset({State.IDLE, State.RUNNING}),
}


class StateMachine:
    def __init__(self) -> None:
        self._current = State.IDLE
        self._guard = threading.RLock()
        self._listeners: list[Listener] = []

    @property
    def state(self) -> State:
        with self._guard:
            return self._current

    def can_transition(self, target: State) -> bool:
        with self._guard:
            return target in _NEXT[self._current]

    def transition(self, target: State) -> None:
        self._move(target, strict=True)

    def try_begin(self) -> bool:
        """Enter RUNNING if allowed; False when a run is already in flight."""
        return self._move(State.RUNNING, strict=False)

    def reset(self) -> None:
        """Settle a finished run back to IDLE."""
        self._move(State.IDLE, strict=True)

    def add_listener(self, fn: Listener) -> None:
        self._listeners.append(fn)

    def _move(self, target: State, strict: bool) -> bool:
        with self._guard:
            source = self._current
            if target not in _NEXT[source]:
                if strict:
                    raise IllegalTransitionError(source, target)
                return False
            self._current = target
        # listeners run unlocked; they may read .state
        for fn in self._listeners:
            try:
                fn(source, target)
            except Exception as exc:
                log.warning(f"listener failed on {source.name} → {target.name}: {exc}")
        return True

    def __repr__(self) -> str:
        return f"StateMachine({self._current.name})"
