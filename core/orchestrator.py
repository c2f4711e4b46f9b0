"""
core/orchestrator.py
────────────────────
Learning orchestrator: one interaction's learning cycle.

  reaction shown → evaluate the user's response → log it → (if confident)
  fold it into the profile right away

Learning happens in two tiers:
  1. Real-time: each confident observation nudges α/β immediately
  2. Consolidation (core/consolidation.py): every logged observation,
     confident or not, is re-aggregated in batch later
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

import core.logger as logger_mod
from core.actions import ReactionOutput
from core.bandit import ThompsonSamplingBandit
from core.context import ContextSnapshot
from core.reward import DEFAULT_DURATION_MS, RewardEvaluator, RewardSignal
from memory.long_term import LongTermMemory
from memory.models import InteractionLog, UserProfile
from memory.short_term import ShortTermMemory

log = logging.getLogger("buddy.orchestrator")

DEFAULT_RELIABILITY_THRESHOLD = 0.3


@dataclass(frozen=True)
class LearningOutcome:
    log_entry: InteractionLog
    signal: RewardSignal
    updated: bool
    profile: Optional[UserProfile] = None


class LearningOrchestrator:
    def __init__(
        self,
        short_term: ShortTermMemory,
        long_term: LongTermMemory,
        evaluator: RewardEvaluator,
        bandit: ThompsonSamplingBandit,
        reliability_threshold: float = DEFAULT_RELIABILITY_THRESHOLD,
        evaluation_duration_ms: int = DEFAULT_DURATION_MS,
    ) -> None:
        self.short_term = short_term
        self.long_term = long_term
        self.evaluator = evaluator
        self.bandit = bandit
        self.reliability_threshold = float(reliability_threshold)
        self.evaluation_duration_ms = int(evaluation_duration_ms)

    def learn_from_reaction(
        self,
        output: ReactionOutput,
        context: ContextSnapshot,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[LearningOutcome]:
        """
        Run one learning cycle for a reaction already shown to the user.
        Never raises: a failed cycle logs the error and returns None.
        If evaluation or the log append fails nothing is written; if only
        the profile write fails, the log row stays pending and the next
        consolidation picks it up.
        """
        action = output.action
        try:
            signal = self.evaluator.evaluate(self.evaluation_duration_ms, cancel_event=cancel_event)

            # Logged whatever the confidence; consolidation re-filters later
            entry = self.short_term.append(InteractionLog(
                context_vector=tuple(context.full_vector()),
                action_index=action.index,
                action_intensity=action.intensity,
                reward_score=signal.score,
                reward_confidence=signal.confidence,
            ))
            logger_mod.audit_safe("LEARNING_LOGGED", {
                "log_id": entry.id,
                "action": action.type.name,
                "score": round(signal.score, 4),
                "confidence": round(signal.confidence, 4),
            })

            if not signal.is_reliable(self.reliability_threshold):
                log.debug(
                    f"Low confidence ({signal.confidence:.2f}) for {action.type.name}, "
                    f"logged but not applied"
                )
                return LearningOutcome(log_entry=entry, signal=signal, updated=False)

            _, updated = self.long_term.update_profile(
                lambda profile: self.bandit.update_from_reward(profile, action.index, signal.score)
            )
            log.info(
                f"Learned: {action.type.name} reward={signal.score:+.2f} "
                f"confidence={signal.confidence:.2f} "
                f"expectation={updated.expectation(action.index):.3f}"
            )
            logger_mod.audit_safe("PROFILE_UPDATED", {
                "path": "realtime",
                "action": action.type.name,
                "reward": round(signal.score, 4),
                "alpha": round(updated.alpha[action.index], 4),
                "beta": round(updated.beta[action.index], 4),
                "total_interactions": updated.total_interactions,
            })
            return LearningOutcome(log_entry=entry, signal=signal, updated=True, profile=updated)

        except Exception as exc:
            log.error(f"Learning cycle failed for {action.type.name}: {exc}")
            return None
