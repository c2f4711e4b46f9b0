"""
core/actions.py
───────────────
Reaction catalogue: the fixed set of arms the bandit chooses between.

The enum order IS the arm index. Profiles persist alpha/beta arrays by
position, so entries must never be reordered or removed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ReactionType(Enum):
    EMPATHY       = ("Empathy", 0.6)
    HUMOR         = ("Humor", 0.6)
    SURPRISE      = ("Surprise", 0.5)
    CALM          = ("Calm", 0.4)
    EXCITEMENT    = ("Excitement", 0.7)
    CONCERN       = ("Concern", 0.5)
    ENCOURAGEMENT = ("Encouragement", 0.6)
    CURIOSITY     = ("Curiosity", 0.5)

    def __init__(self, label: str, base_intensity: float) -> None:
        self.label = label
        self.base_intensity = base_intensity

    @property
    def index(self) -> int:
        return _INDEX[self]

    @classmethod
    def from_index(cls, index: int) -> "ReactionType":
        """Arm index → type. Unknown indices fall back to CALM."""
        if 0 <= index < len(_ORDER):
            return _ORDER[index]
        return cls.CALM

    @classmethod
    def from_name(cls, name: str, default: Optional["ReactionType"] = None) -> Optional["ReactionType"]:
        try:
            return cls[str(name).strip().upper()]
        except KeyError:
            return default


_ORDER: tuple[ReactionType, ...] = tuple(ReactionType)
_INDEX: dict[ReactionType, int] = {t: i for i, t in enumerate(_ORDER)}

ACTION_COUNT = len(_ORDER)


@dataclass(frozen=True)
class ReactionAction:
    type: ReactionType
    intensity: float = 0.5

    def __post_init__(self) -> None:
        if not 0.0 <= self.intensity <= 1.0:
            raise ValueError(f"intensity must be within 0.0-1.0, got {self.intensity}")

    @property
    def index(self) -> int:
        return self.type.index


@dataclass(frozen=True)
class ReactionOutput:
    """What the action-selection consumer receives from react()."""
    action: ReactionAction
    confidence: float
    reasoning: Optional[str] = None
    fallback_used: bool = False
    engine: str = ""

    @property
    def action_index(self) -> int:
        return self.action.index

    @property
    def intensity(self) -> float:
        return self.action.intensity

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_index": self.action_index,
            "action": self.action.type.name,
            "intensity": round(self.intensity, 4),
            "confidence": round(self.confidence, 4),
            "reasoning": self.reasoning,
            "fallback_used": self.fallback_used,
            "engine": self.engine,
        }
