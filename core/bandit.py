"""
core/bandit.py
══════════════
Thompson Sampling contextual bandit over the reaction arms.

  - Each arm i keeps a Beta(α_i, β_i) belief about "this reaction lands well"
  - Selection: draw one sample per arm, add the arm's context bias, take the max
  - Real-time update: reward > 0 → α_i += reward, else β_i += |reward|
  - Batch consolidation: same rule, summed per arm, applied once

α+β per arm is capped. Crossing the cap rescales both proportionally, which
keeps the mean and forgets old evidence (recency bias).

Beta draws are X/(X+Y) with X ~ Gamma(α), Y ~ Gamma(β), Gamma sampled with
Marsaglia & Tsang (2000). The random source is an injected numpy Generator
so tests can fix the seed.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Callable, Mapping, Optional, Sequence

import numpy as np

from core.actions import ACTION_COUNT
from core.context import ContextSnapshot
from memory.models import (
    MAX_PARAMETER_SUM,
    MIN_PARAMETER,
    UserProfile,
    finite_or,
    now_ms,
    rescale_pair,
)

log = logging.getLogger("buddy.bandit")


class ThompsonSamplingBandit:
    """
    Usage:
        bandit = ThompsonSamplingBandit.seeded(42)
        arm = bandit.select_action(profile, ContextSnapshot.from_time())
        profile = bandit.update_from_reward(profile, arm, 0.8)
    """

    def __init__(
        self,
        rng: Optional[np.random.Generator] = None,
        max_parameter_sum: float = MAX_PARAMETER_SUM,
        min_parameter: float = MIN_PARAMETER,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._rng = rng if rng is not None else np.random.default_rng()
        self.max_parameter_sum = float(max_parameter_sum)
        self.min_parameter = float(min_parameter)
        self._clock = clock

    @classmethod
    def seeded(cls, seed: int, **kwargs) -> "ThompsonSamplingBandit":
        return cls(rng=np.random.default_rng(seed), **kwargs)

    @classmethod
    def from_config(cls, config, rng: Optional[np.random.Generator] = None) -> "ThompsonSamplingBandit":
        if rng is None:
            seed = config.get("bandit", "seed", fallback="").strip()
            rng = np.random.default_rng(int(seed) if seed else None)
        return cls(
            rng=rng,
            max_parameter_sum=config.getfloat("bandit", "max_parameter_sum", fallback=MAX_PARAMETER_SUM),
            min_parameter=config.getfloat("bandit", "min_parameter", fallback=MIN_PARAMETER),
        )

    # ── Selection ─────────────────────────────────────────────────────────────

    def select_action(self, profile: UserProfile, context: ContextSnapshot) -> int:
        """Sample every arm's Beta, add its context bias, return the first maximum."""
        profile = self._clean(profile)
        bias = profile.context_bias

        best_index = 0
        best_value = -math.inf
        samples = []
        for i in range(ACTION_COUNT):
            sample = self.sample_beta(profile.alpha[i], profile.beta[i])
            if bias:
                sample += bias[min(i * 2, len(bias) - 1)]
            samples.append(sample)
            if sample > best_value:
                best_index, best_value = i, sample

        log.debug(f"select_action samples={[round(s, 3) for s in samples]} → {best_index}")
        return best_index

    def sample_beta(self, alpha: float, beta: float) -> float:
        alpha = max(self.min_parameter, finite_or(alpha, self.min_parameter))
        beta = max(self.min_parameter, finite_or(beta, self.min_parameter))
        x = self.sample_gamma(alpha)
        y = self.sample_gamma(beta)
        total = x + y
        return x / total if total > 0 else 0.5

    def sample_gamma(self, shape: float) -> float:
        """Gamma(shape, 1)."""
        if shape < 1.0:
            # Boost to shape+1, then correct with u^(1/shape)
            u = self._rng.random()
            return self.sample_gamma(shape + 1.0) * u ** (1.0 / shape)

        d = shape - 1.0 / 3.0
        c = 1.0 / math.sqrt(9.0 * d)
        while True:
            x = self._rng.standard_normal()
            v = 1.0 + c * x
            while v <= 0:
                x = self._rng.standard_normal()
                v = 1.0 + c * x
            v = v * v * v
            u = self._rng.random()
            x2 = x * x
            if u < 1.0 - 0.0331 * x2 * x2:
                return d * v
            if u > 0 and math.log(u) < 0.5 * x2 + d * (1.0 - v + math.log(v)):
                return d * v

    # ── Updates ───────────────────────────────────────────────────────────────

    def update_from_reward(self, profile: UserProfile, action_index: int, reward: float) -> UserProfile:
        """Real-time path: fold one reward into one arm. Never advances version."""
        profile = self._clean(profile)
        alpha = list(profile.alpha)
        beta = list(profile.beta)
        reward = finite_or(reward, 0.0)

        if 0 <= action_index < ACTION_COUNT:
            if reward > 0:
                alpha[action_index] += reward
            else:
                beta[action_index] += -reward
            alpha[action_index], beta[action_index] = self._cap(alpha[action_index], beta[action_index])
        else:
            log.warning(f"update_from_reward: action index {action_index} out of range, parameters unchanged")

        return replace(
            profile,
            alpha=tuple(alpha),
            beta=tuple(beta),
            total_interactions=profile.total_interactions + 1,
            updated_at=self._clock(),
        )

    def consolidate(self, profile: UserProfile, rewards_by_action: Mapping[int, Sequence[float]]) -> UserProfile:
        """
        Batch path: per arm, add all positive rewards to α and all negative
        magnitudes to β in one step, then cap once. The only path that bumps
        version.
        """
        profile = self._clean(profile)
        alpha = list(profile.alpha)
        beta = list(profile.beta)

        for action_index, rewards in rewards_by_action.items():
            if not 0 <= action_index < ACTION_COUNT:
                log.warning(f"consolidate: skipping out-of-range action index {action_index}")
                continue
            clean = [finite_or(r, 0.0) for r in rewards]
            if not clean:
                continue
            alpha[action_index] += sum(r for r in clean if r > 0)
            beta[action_index] += sum(-r for r in clean if r < 0)
            alpha[action_index], beta[action_index] = self._cap(alpha[action_index], beta[action_index])

        return replace(
            profile,
            alpha=tuple(alpha),
            beta=tuple(beta),
            total_consolidations=profile.total_consolidations + 1,
            version=profile.version + 1,
            updated_at=self._clock(),
        )

    def expected_values(self, profile: UserProfile) -> list[float]:
        return self._clean(profile).expectations()

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _cap(self, alpha: float, beta: float) -> tuple[float, float]:
        return rescale_pair(alpha, beta, self.max_parameter_sum, self.min_parameter)

    def _clean(self, profile: UserProfile) -> UserProfile:
        return profile.sanitized(self.min_parameter, self.max_parameter_sum)
