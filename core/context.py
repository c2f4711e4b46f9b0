"""
core/context.py
───────────────
ContextSnapshot: a fixed-shape numeric picture of "now".

  content    (32): content context  [category embedding(16) + polarity(8) + topic(8)]
  user_state (16): user state       [hour sin/cos(2) + day-of-week one-hot(7) + device(3) + mood(4)]
  external   (32): external context [weather(4) + news sentiment(8) + app usage(16) + reserved(4)]

The full vector is always content ‖ user_state ‖ external. Profiles index
their context bias against this order.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

CONTENT_DIM    = 32
USER_STATE_DIM = 16
EXTERNAL_DIM   = 32
TOTAL_DIM      = CONTENT_DIM + USER_STATE_DIM + EXTERNAL_DIM

HOUR_SIN = 0
HOUR_COS = 1
WEEKDAY_OFFSET = 2   # user_state[2..8] = Sunday..Saturday


def _fixed(values: Iterable[float], dim: int, name: str) -> tuple[float, ...]:
    out = tuple(float(v) for v in values)
    if len(out) != dim:
        raise ValueError(f"{name} must have {dim} values, got {len(out)}")
    return out


def _fit(values: Sequence[float], dim: int) -> tuple[float, ...]:
    """Pad with zeros / truncate to exactly dim values."""
    out = [float(v) for v in list(values)[:dim]]
    out.extend([0.0] * (dim - len(out)))
    return tuple(out)


@dataclass(frozen=True)
class ContextSnapshot:
    content: tuple[float, ...] = field(default=(0.0,) * CONTENT_DIM)
    user_state: tuple[float, ...] = field(default=(0.0,) * USER_STATE_DIM)
    external: tuple[float, ...] = field(default=(0.0,) * EXTERNAL_DIM)
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def __post_init__(self) -> None:
        # Coerce lists to tuples so snapshots stay hashable and immutable
        object.__setattr__(self, "content", _fixed(self.content, CONTENT_DIM, "content"))
        object.__setattr__(self, "user_state", _fixed(self.user_state, USER_STATE_DIM, "user_state"))
        object.__setattr__(self, "external", _fixed(self.external, EXTERNAL_DIM, "external"))

    def full_vector(self) -> list[float]:
        return list(self.content + self.user_state + self.external)

    @property
    def hour_sin(self) -> float:
        return self.user_state[HOUR_SIN]

    @property
    def hour_cos(self) -> float:
        return self.user_state[HOUR_COS]

    @classmethod
    def from_time(cls, now: Optional[datetime] = None) -> "ContextSnapshot":
        """Build the time-of-day / day-of-week context for `now` (local time)."""
        now = now or datetime.now()
        angle = now.hour / 24.0 * 2 * math.pi
        user_state = [0.0] * USER_STATE_DIM
        user_state[HOUR_SIN] = math.sin(angle)
        user_state[HOUR_COS] = math.cos(angle)
        # isoweekday: Monday=1 … Sunday=7 → Sunday first
        weekday = now.isoweekday() % 7
        user_state[WEEKDAY_OFFSET + weekday] = 1.0
        return cls(user_state=tuple(user_state), timestamp=int(now.timestamp() * 1000))

    @classmethod
    def from_vector(cls, vector: Sequence[float], timestamp: Optional[int] = None) -> "ContextSnapshot":
        """Split a stored full vector back into its parts. Malformed lengths are padded/truncated."""
        full = _fit(vector, TOTAL_DIM)
        kwargs = {}
        if timestamp is not None:
            kwargs["timestamp"] = int(timestamp)
        return cls(
            content=full[:CONTENT_DIM],
            user_state=full[CONTENT_DIM:CONTENT_DIM + USER_STATE_DIM],
            external=full[CONTENT_DIM + USER_STATE_DIM:],
            **kwargs,
        )
