"""
core/consolidation.py
═════════════════════
Memory consolidation job: short-term observations → long-term personality.

Run periodically while the device is idle (see core/scheduler.py):
  1. Fetch pending logs, oldest first, bounded by batch_limit
  2. Group rewards by action, skipping very low-confidence observations
  3. In one SQLite transaction: batch-update the profile (bumps version),
     write the AI diary entry and flag the consumed logs
  4. Delete flagged logs
  5. Prune diary entries past the retention window

Step 3 commits all or nothing, so a failed run leaves the profile untouched
and the logs pending; the retry counts each reward once. A crash between
steps 3 and 4 leaves flagged rows the next run deletes.

Lifecycle: IDLE → RUNNING → SUCCESS | RETRY (core/state_machine.py).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional

import core.logger as logger_mod
from core.bandit import ThompsonSamplingBandit
from core.diary import DiaryWriter
from core.state_machine import State, StateMachine
from memory.long_term import LongTermMemory
from memory.models import InteractionLog
from memory.short_term import DEFAULT_BATCH_LIMIT, ShortTermMemory

log = logging.getLogger("buddy.consolidation")

DEFAULT_MIN_CONFIDENCE = 0.2
DEFAULT_RETENTION_DAYS = 90
DAY_MS = 24 * 60 * 60 * 1000


class JobResult(str, Enum):
    SUCCESS = "SUCCESS"
    RETRY = "RETRY"


@dataclass(frozen=True)
class ConsolidationReport:
    result: JobResult
    consumed: int = 0
    used: int = 0                 # observations that passed the confidence filter
    version_before: Optional[int] = None
    version_after: Optional[int] = None
    diary_id: Optional[int] = None
    deleted: int = 0
    pruned: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result is JobResult.SUCCESS

    def to_dict(self) -> dict:
        return {
            "result": self.result.value,
            "consumed": self.consumed,
            "used": self.used,
            "version_before": self.version_before,
            "version_after": self.version_after,
            "diary_id": self.diary_id,
            "deleted": self.deleted,
            "pruned": self.pruned,
            "error": self.error,
        }


class ConsolidationJob:
    def __init__(
        self,
        short_term: ShortTermMemory,
        long_term: LongTermMemory,
        bandit: ThompsonSamplingBandit,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        diary_retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.short_term = short_term
        self.long_term = long_term
        self.bandit = bandit
        self.batch_limit = int(batch_limit)
        self.min_confidence = float(min_confidence)
        self.diary_retention_days = int(diary_retention_days)
        self._clock = clock
        self.fsm = StateMachine()
        self.fsm.add_listener(self._on_state_change)

    @classmethod
    def from_config(
        cls,
        config,
        short_term: ShortTermMemory,
        long_term: LongTermMemory,
        bandit: ThompsonSamplingBandit,
    ) -> "ConsolidationJob":
        return cls(
            short_term,
            long_term,
            bandit,
            batch_limit=config.getint("consolidation", "batch_limit", fallback=DEFAULT_BATCH_LIMIT),
            min_confidence=config.getfloat("consolidation", "min_confidence", fallback=DEFAULT_MIN_CONFIDENCE),
            diary_retention_days=config.getint(
                "consolidation", "diary_retention_days", fallback=DEFAULT_RETENTION_DAYS
            ),
        )

    @property
    def state(self) -> State:
        return self.fsm.state

    def _on_state_change(self, old: State, new: State) -> None:
        log.debug(f"Job state: {old.name} -> {new.name}")
        logger_mod.audit_safe("CONSOLIDATION_STATE", {"from": old.name, "to": new.name})

    # ── Run ───────────────────────────────────────────────────────────────────

    def run(self) -> ConsolidationReport:
        """One consolidation pass. Never raises; failures come back as RETRY."""
        if not self.fsm.try_begin():
            log.warning("Consolidation already running, skipping this trigger")
            return ConsolidationReport(JobResult.RETRY, error="already running")

        log.info("Starting memory consolidation")
        try:
            report = self._run()
        except Exception as exc:
            log.error(f"Consolidation failed, will retry: {exc}")
            logger_mod.audit_safe("CONSOLIDATION_FAILED", {"error": str(exc)})
            self.fsm.transition(State.RETRY)
            return ConsolidationReport(JobResult.RETRY, error=str(exc))

        self.fsm.transition(State.SUCCESS)
        logger_mod.audit_safe("CONSOLIDATION_DONE", report.to_dict())
        return report

    def _run(self) -> ConsolidationReport:
        pending = self.short_term.pending(self.batch_limit)
        if not pending:
            log.info("No pending logs to consolidate")
            # Rows flagged by a run that died before its delete step
            deleted = self.short_term.delete_consolidated()
            return ConsolidationReport(JobResult.SUCCESS, deleted=deleted)

        rewards = self.partition(pending, self.min_confidence)
        used = sum(len(v) for v in rewards.values())

        now_s = self._clock()
        now = int(now_s * 1000)
        written = []

        def diary_and_mark(conn, before, after):
            entry = DiaryWriter.compose(
                pending, before, after,
                today=datetime.fromtimestamp(now_s).date(),
                created_at=now,
            )
            written.append(self.long_term.save_diary(entry, conn=conn))
            self.short_term.mark_consolidated((e.id for e in pending if e.id is not None), conn=conn)

        before, after = self.long_term.update_profile(
            lambda profile: self.bandit.consolidate(profile, rewards),
            then=diary_and_mark,
        )
        (entry,) = written
        log.info(f"Diary written: {entry.date}, {entry.total_interactions} interactions")

        deleted = self.short_term.delete_consolidated()

        pruned = self.long_term.delete_diary_older_than(now - self.diary_retention_days * DAY_MS)
        if pruned:
            log.info(f"Pruned {pruned} diary entr{'y' if pruned == 1 else 'ies'} older than "
                     f"{self.diary_retention_days} days")

        log.info(
            f"Consolidated {len(pending)} logs ({used} used), profile v{after.version}, "
            f"total consolidations: {after.total_consolidations}"
        )
        return ConsolidationReport(
            JobResult.SUCCESS,
            consumed=len(pending),
            used=used,
            version_before=before.version,
            version_after=after.version,
            diary_id=entry.id,
            deleted=deleted,
            pruned=pruned,
        )

    @staticmethod
    def partition(logs: Iterable[InteractionLog], min_confidence: float) -> dict[int, list[float]]:
        """Rewards grouped by action index, dropping observations below min_confidence."""
        out: dict[int, list[float]] = {}
        for entry in logs:
            if entry.reward_confidence < min_confidence:
                continue
            out.setdefault(entry.action_index, []).append(entry.reward_score)
        return out
