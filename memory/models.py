"""
memory/models.py
════════════════
Persisted entities of the learning loop and their row codec.

  UserProfile     long-term "personality" (one Beta(α, β) per reaction arm)
  InteractionLog  short-term observation awaiting consolidation
  DiaryEntry      human-readable record of one consolidation run

Float vectors are stored as comma-delimited repr() text: repr() of a Python
float round-trips bit-exactly, nan/inf included.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Optional, Sequence

from core.actions import ACTION_COUNT, ReactionType
from core.context import TOTAL_DIM

DEFAULT_USER_ID     = "default"
CONTEXT_BIAS_DIM    = ACTION_COUNT * 2   # strength/direction per arm
MIN_PARAMETER       = 0.01
MAX_PARAMETER_SUM   = 100.0
DEFAULT_PRIOR       = 1.0


def now_ms() -> int:
    return int(time.time() * 1000)


# ── Vector codec ──────────────────────────────────────────────────────────────

def encode_vector(values: Iterable[float]) -> str:
    return ",".join(repr(float(v)) for v in values)


def decode_vector(text: Optional[str]) -> list[float]:
    if text is None or not str(text).strip():
        return []
    return [float(part) for part in str(text).split(",")]


# ── Numeric guards ────────────────────────────────────────────────────────────

def finite_or(value: Any, default: float) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return default
    return out if math.isfinite(out) else default


def rescale_pair(
    alpha: float,
    beta: float,
    max_sum: float = MAX_PARAMETER_SUM,
    floor: float = MIN_PARAMETER,
) -> tuple[float, float]:
    """
    Shrink (α, β) proportionally when α+β exceeds max_sum.
    The ratio α/(α+β) is preserved, the magnitude forgets old evidence.
    """
    total = alpha + beta
    if total <= max_sum:
        return alpha, beta
    scale = max_sum / total
    alpha *= scale
    beta *= scale
    # A side that collapsed under the floor keeps the floor; the other takes the rest
    if alpha < floor:
        alpha, beta = floor, max_sum - floor
    elif beta < floor:
        alpha, beta = max_sum - floor, floor
    return alpha, beta


def _parameter(value: Any, floor: float, max_sum: float) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return floor
    if math.isnan(out) or out < floor:
        return floor
    if math.isinf(out):
        return max_sum - floor
    return out


def _fit(values: Sequence[float], size: int, default: float) -> list[float]:
    out = list(values)[:size]
    out.extend([default] * (size - len(out)))
    return out


# ── UserProfile ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class UserProfile:
    user_id: str = DEFAULT_USER_ID
    version: int = 1
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    alpha: tuple[float, ...] = (DEFAULT_PRIOR,) * ACTION_COUNT
    beta: tuple[float, ...] = (DEFAULT_PRIOR,) * ACTION_COUNT
    context_bias: tuple[float, ...] = (0.0,) * CONTEXT_BIAS_DIM
    total_interactions: int = 0
    total_consolidations: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "alpha", tuple(float(v) for v in self.alpha))
        object.__setattr__(self, "beta", tuple(float(v) for v in self.beta))
        object.__setattr__(self, "context_bias", tuple(float(v) for v in self.context_bias))

    def expectation(self, index: int) -> float:
        """Beta mean α/(α+β) for one arm (0.5 for unknown arms)."""
        if not 0 <= index < min(len(self.alpha), len(self.beta)):
            return 0.5
        a, b = self.alpha[index], self.beta[index]
        total = a + b
        return a / total if total > 0 else 0.5

    def expectations(self) -> list[float]:
        return [self.expectation(i) for i in range(ACTION_COUNT)]

    def sanitized(
        self,
        floor: float = MIN_PARAMETER,
        max_sum: float = MAX_PARAMETER_SUM,
    ) -> "UserProfile":
        """
        Clamp corrupt persisted state: NaN/negative α/β → floor, wrong array
        lengths padded with the prior, non-finite bias → 0, pairs over the cap
        rescaled. Valid profiles come back unchanged.
        """
        alpha = [_parameter(v, floor, max_sum) for v in _fit(self.alpha, ACTION_COUNT, DEFAULT_PRIOR)]
        beta = [_parameter(v, floor, max_sum) for v in _fit(self.beta, ACTION_COUNT, DEFAULT_PRIOR)]
        for i in range(ACTION_COUNT):
            alpha[i], beta[i] = rescale_pair(alpha[i], beta[i], max_sum, floor)
        bias = [finite_or(v, 0.0) for v in self.context_bias]
        return replace(
            self,
            alpha=tuple(alpha),
            beta=tuple(beta),
            context_bias=tuple(bias),
            version=max(1, int(self.version)),
            total_interactions=max(0, int(self.total_interactions)),
            total_consolidations=max(0, int(self.total_consolidations)),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "version": int(self.version),
            "created_at": int(self.created_at),
            "updated_at": int(self.updated_at),
            "alpha": encode_vector(self.alpha),
            "beta": encode_vector(self.beta),
            "context_bias": encode_vector(self.context_bias),
            "total_interactions": int(self.total_interactions),
            "total_consolidations": int(self.total_consolidations),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserProfile":
        return cls(
            user_id=str(row["user_id"]),
            version=int(row["version"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
            alpha=tuple(decode_vector(row["alpha"])),
            beta=tuple(decode_vector(row["beta"])),
            context_bias=tuple(decode_vector(row["context_bias"])),
            total_interactions=int(row["total_interactions"]),
            total_consolidations=int(row["total_consolidations"]),
        )


# ── InteractionLog ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class InteractionLog:
    """One react-and-evaluate cycle. Only `consolidated` ever changes."""
    context_vector: tuple[float, ...]
    action_index: int
    action_intensity: float
    reward_score: float
    reward_confidence: float
    timestamp: int = field(default_factory=now_ms)
    consolidated: bool = False
    id: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "context_vector", tuple(float(v) for v in self.context_vector))

    @property
    def action(self) -> ReactionType:
        return ReactionType.from_index(self.action_index)

    @property
    def context_complete(self) -> bool:
        return len(self.context_vector) == TOTAL_DIM

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": int(self.timestamp),
            "context_vector": encode_vector(self.context_vector),
            "action_index": int(self.action_index),
            "action_intensity": float(self.action_intensity),
            "reward_score": float(self.reward_score),
            "reward_confidence": float(self.reward_confidence),
            "consolidated": 1 if self.consolidated else 0,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "InteractionLog":
        return cls(
            id=int(row["id"]) if row["id"] is not None else None,
            timestamp=int(row["timestamp"]),
            context_vector=tuple(decode_vector(row["context_vector"])),
            action_index=int(row["action_index"]),
            action_intensity=float(row["action_intensity"]),
            reward_score=float(row["reward_score"]),
            reward_confidence=float(row["reward_confidence"]),
            consolidated=bool(row["consolidated"]),
        )


# ── DiaryEntry ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PersonalityChange:
    type: ReactionType
    before: float   # α/(α+β) before consolidation
    after: float

    @property
    def delta(self) -> float:
        return self.after - self.before


@dataclass(frozen=True)
class DiaryEntry:
    date: str                      # "2026-03-01"
    total_interactions: int
    top_action: str                # ReactionType name
    top_success_rate: float
    personality_changes: str       # "EMPATHY:0.500,0.520;HUMOR:0.420,0.580;..."
    diary_text: str
    profile_version_before: int
    profile_version_after: int
    worst_action: Optional[str] = None
    worst_success_rate: float = 0.0
    created_at: int = field(default_factory=now_ms)
    id: Optional[int] = None

    def changes(self) -> list[PersonalityChange]:
        """Parse personality_changes back into typed pairs (unknown names skipped)."""
        out: list[PersonalityChange] = []
        for chunk in (self.personality_changes or "").split(";"):
            name, _, values = chunk.partition(":")
            action = ReactionType.from_name(name)
            if action is None:
                continue
            before, _, after = values.partition(",")
            try:
                out.append(PersonalityChange(action, float(before), float(after)))
            except ValueError:
                continue
        return out

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date,
            "created_at": int(self.created_at),
            "total_interactions": int(self.total_interactions),
            "top_action": self.top_action,
            "top_success_rate": float(self.top_success_rate),
            "worst_action": self.worst_action,
            "worst_success_rate": float(self.worst_success_rate),
            "personality_changes": self.personality_changes,
            "diary_text": self.diary_text,
            "profile_version_before": int(self.profile_version_before),
            "profile_version_after": int(self.profile_version_after),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DiaryEntry":
        return cls(
            id=int(row["id"]) if row["id"] is not None else None,
            date=str(row["date"]),
            created_at=int(row["created_at"]),
            total_interactions=int(row["total_interactions"]),
            top_action=str(row["top_action"]),
            top_success_rate=float(row["top_success_rate"]),
            worst_action=row["worst_action"],
            worst_success_rate=float(row["worst_success_rate"]),
            personality_changes=str(row["personality_changes"]),
            diary_text=str(row["diary_text"]),
            profile_version_before=int(row["profile_version_before"]),
            profile_version_after=int(row["profile_version_after"]),
        )
