"""
core/engine.py
──────────────
Reaction engines: context + profile → which reaction, how strongly.

Engines are swappable at runtime (EdgeController.swap_engine). The
rule-based engine needs no model: the bandit picks the arm and the
intensity comes from the time of day.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from core.actions import ReactionAction, ReactionOutput, ReactionType
from core.bandit import ThompsonSamplingBandit
from core.context import ContextSnapshot
from memory.models import UserProfile

log = logging.getLogger("buddy.engine")

TIME_MODIFIER_BASE  = 0.5
TIME_MODIFIER_SLOPE = 0.3
TIME_MODIFIER_RANGE = (0.2, 0.9)
INTENSITY_RANGE     = (0.1, 1.0)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class ReactionEngine(ABC):
    name: str = "engine"

    @abstractmethod
    def infer(self, context: ContextSnapshot, profile: UserProfile) -> ReactionOutput:
        ...

    def is_ready(self) -> bool:
        return True


class RuleBasedReactionEngine(ReactionEngine):
    name = "rule_based"

    def __init__(self, bandit: ThompsonSamplingBandit) -> None:
        self.bandit = bandit

    def infer(self, context: ContextSnapshot, profile: UserProfile) -> ReactionOutput:
        index = self.bandit.select_action(profile, context)
        kind = ReactionType.from_index(index)
        intensity = self.intensity_for(kind, context)
        return ReactionOutput(
            action=ReactionAction(kind, intensity),
            confidence=profile.expectation(index),
            reasoning=f"rule-based: bandit selected {kind.name}",
            engine=self.name,
        )

    @staticmethod
    def intensity_for(kind: ReactionType, context: ContextSnapshot) -> float:
        """
        Base intensity times a time-of-day modifier that follows sin(hour):
        ×0.8 at 06:00, ×0.5 at midnight and noon, ×0.2 (clamped) at 18:00.
        """
        modifier = _clamp(TIME_MODIFIER_BASE + context.hour_sin * TIME_MODIFIER_SLOPE, *TIME_MODIFIER_RANGE)
        return _clamp(kind.base_intensity * modifier, *INTENSITY_RANGE)
