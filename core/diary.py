"""
core/diary.py
─────────────
AI diary writer.
Turns one consolidation's observations and profile change into a short,
human-readable "what I noticed and learned today" entry.
Pure and deterministic: same inputs, same text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date as date_cls, datetime
from typing import Optional, Sequence, Union

from core.actions import ReactionType
from memory.models import DiaryEntry, InteractionLog, PersonalityChange, UserProfile, now_ms

MIN_OBSERVATIONS   = 2      # fewer than this and a success rate is just noise
WORST_RATE_CUTOFF  = 0.40
CHANGE_EPSILON     = 0.01
STRONG_DELTA       = 0.05
CHEERFUL_REWARD    = 0.3
BAR_CELLS          = 10
DEFAULT_TOP_ACTION = ReactionType.CALM.name


@dataclass
class DailyStats:
    total_count: int = 0
    counts: dict[ReactionType, int] = field(default_factory=dict)
    mean_rewards: dict[ReactionType, float] = field(default_factory=dict)
    success_rates: dict[ReactionType, float] = field(default_factory=dict)
    top: Optional[ReactionType] = None
    top_rate: float = 0.0
    worst: Optional[ReactionType] = None
    worst_rate: float = 0.0
    mean_reward: float = 0.0


class DiaryWriter:
    """
    Usage:
        entry = DiaryWriter.compose(consumed_logs, profile_before, profile_after)
        print(entry.diary_text)
    """

    @classmethod
    def compose(
        cls,
        logs: Sequence[InteractionLog],
        profile_before: UserProfile,
        profile_after: UserProfile,
        today: Union[str, date_cls, None] = None,
        created_at: Optional[int] = None,
    ) -> DiaryEntry:
        if today is None:
            today = datetime.now().date()
        date_text = today if isinstance(today, str) else today.strftime("%Y-%m-%d")

        stats = cls.compute_stats(logs)
        changes = cls.personality_changes(profile_before, profile_after)

        return DiaryEntry(
            date=date_text,
            created_at=created_at if created_at is not None else now_ms(),
            total_interactions=len(logs),
            top_action=stats.top.name if stats.top else DEFAULT_TOP_ACTION,
            top_success_rate=stats.top_rate,
            worst_action=stats.worst.name if stats.worst else None,
            worst_success_rate=stats.worst_rate,
            personality_changes=cls.serialize_changes(changes),
            diary_text=cls.render(stats, changes),
            profile_version_before=profile_before.version,
            profile_version_after=profile_after.version,
        )

    # ── Statistics ────────────────────────────────────────────────────────────

    @staticmethod
    def compute_stats(logs: Sequence[InteractionLog]) -> DailyStats:
        if not logs:
            return DailyStats()

        counts: dict[ReactionType, int] = {}
        sums: dict[ReactionType, float] = {}
        positives: dict[ReactionType, int] = {}
        for entry in logs:
            kind = entry.action
            counts[kind] = counts.get(kind, 0) + 1
            sums[kind] = sums.get(kind, 0.0) + entry.reward_score
            if entry.reward_score > 0:
                positives[kind] = positives.get(kind, 0) + 1

        # Arm order keeps tie-breaking deterministic
        ordered = [t for t in ReactionType if t in counts]
        mean_rewards = {t: sums[t] / counts[t] for t in ordered}
        success_rates = {t: positives.get(t, 0) / counts[t] for t in ordered}

        qualifying = [t for t in ordered if counts[t] >= MIN_OBSERVATIONS]
        top = max(qualifying, key=lambda t: success_rates[t], default=None)
        lowest = min(qualifying, key=lambda t: success_rates[t], default=None)
        worst = None
        if lowest is not None and lowest is not top and success_rates[lowest] < WORST_RATE_CUTOFF:
            worst = lowest

        return DailyStats(
            total_count=len(logs),
            counts=counts,
            mean_rewards=mean_rewards,
            success_rates=success_rates,
            top=top,
            top_rate=success_rates[top] if top else 0.0,
            worst=worst,
            worst_rate=success_rates[worst] if worst else 0.0,
            mean_reward=sum(e.reward_score for e in logs) / len(logs),
        )

    @staticmethod
    def personality_changes(before: UserProfile, after: UserProfile) -> list[PersonalityChange]:
        return [
            PersonalityChange(kind, before.expectation(kind.index), after.expectation(kind.index))
            for kind in ReactionType
        ]

    # ── Rendering ─────────────────────────────────────────────────────────────

    @classmethod
    def render(cls, stats: DailyStats, changes: Sequence[PersonalityChange]) -> str:
        if stats.total_count == 0:
            return "No interactions today.\nI hope we get to talk more tomorrow.\n"

        lines = [f"Today we had {stats.total_count} interaction{'s' if stats.total_count != 1 else ''}."]

        if stats.top is not None:
            count = stats.counts.get(stats.top, 0)
            pct = int(stats.top_rate * 100)
            lines.append(
                f"You responded best to \"{stats.top.label}\" "
                f"({pct}% positive over {count} tries)."
            )
        if stats.worst is not None:
            lines.append(
                f"\"{stats.worst.label}\" missed more often than not, "
                f"so I'll tone it down a little."
            )

        lines.append("")
        lines.append("--- Personality changes ---")
        significant = sorted(
            (c for c in changes if abs(c.delta) > CHANGE_EPSILON),
            key=lambda c: abs(c.delta),
            reverse=True,
        )
        if not significant:
            lines.append("No notable personality change today.")
        for change in significant:
            lines.append(
                f"{change.type.label:<13} {cls.bar(change.after)} "
                f"{change.before:.2f} → {change.after:.2f} ({cls.arrow(change.delta)})"
            )

        lines.append("")
        lines.append(cls.closing_remark(stats.mean_reward))
        return "\n".join(lines) + "\n"

    @staticmethod
    def closing_remark(mean_reward: float) -> str:
        if mean_reward > CHEERFUL_REWARD:
            return "You smiled a lot today and that made me happy. See you tomorrow!"
        if mean_reward > 0:
            return "I'll keep trying to understand you a little better tomorrow."
        return "A lot of things didn't land today, but I'm learning bit by bit. Stay with me tomorrow?"

    @staticmethod
    def arrow(delta: float) -> str:
        if delta > STRONG_DELTA:
            return "↑"
        if delta < -STRONG_DELTA:
            return "↓"
        if delta > 0:
            return "↗"
        if delta < 0:
            return "↘"
        return "→"

    @staticmethod
    def bar(value: float) -> str:
        """0.0-1.0 as a 10-cell bar."""
        filled = min(BAR_CELLS, max(0, int(value * BAR_CELLS)))
        return "■" * filled + "□" * (BAR_CELLS - filled)

    @staticmethod
    def serialize_changes(changes: Sequence[PersonalityChange]) -> str:
        return ";".join(f"{c.type.name}:{c.before:.3f},{c.after:.3f}" for c in changes)
