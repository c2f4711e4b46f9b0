"""
tests/test_consolidation.py — Consolidation job: batch update, diary, cleanup, retry.
Run: pytest tests/test_consolidation.py -v
"""

from __future__ import annotations

import json
from datetime import datetime
from unittest.mock import patch

import pytest

from core.consolidation import DAY_MS, ConsolidationJob, JobResult
from core.state_machine import State
from memory.models import DiaryEntry, InteractionLog
from memory.sqlite_store import StorageError

NOW_S = datetime(2026, 3, 1, 21, 30).timestamp()
NOW_MS = int(NOW_S * 1000)


def _log(action: int, score: float, confidence: float = 1.0, ts: int = 0) -> InteractionLog:
    return InteractionLog(
        context_vector=(0.0,) * 80,
        action_index=action,
        action_intensity=0.5,
        reward_score=score,
        reward_confidence=confidence,
        timestamp=ts,
    )


@pytest.fixture
def job(short_term, long_term, bandit):
    return ConsolidationJob(short_term, long_term, bandit, clock=lambda: NOW_S)


def _seed_logs(short_term):
    for i, (action, score, conf) in enumerate([
        (0, 0.5, 1.0), (0, 0.5, 0.9), (0, -0.2, 0.5), (3, -0.9, 0.4), (5, 1.0, 0.1),
    ]):
        short_term.append(_log(action, score, conf, ts=i + 1))


class TestRun:
    def test_empty_is_successful_noop(self, job, long_term):
        report = job.run()
        assert report.result is JobResult.SUCCESS
        assert report.consumed == 0
        assert long_term.get_profile().version == 1
        assert long_term.diary_count() == 0
        assert job.state is State.SUCCESS

    def test_batch_update_diary_and_cleanup(self, job, short_term, long_term):
        _seed_logs(short_term)
        report = job.run()

        assert report.ok
        assert report.consumed == 5
        assert report.used == 4          # the 0.1-confidence observation is filtered
        assert (report.version_before, report.version_after) == (1, 2)
        assert report.deleted == 5

        profile = long_term.get_profile()
        assert profile.alpha[0] == pytest.approx(2.0)
        assert profile.beta[0] == pytest.approx(1.2)
        assert profile.beta[3] == pytest.approx(1.9)
        assert profile.alpha[5] == 1.0
        assert profile.version == 2
        assert profile.total_consolidations == 1

        assert short_term.total_count() == 0
        entry = long_term.diary_by_id(report.diary_id)
        assert entry.date == "2026-03-01"
        assert entry.created_at == NOW_MS
        assert entry.total_interactions == 5
        assert (entry.profile_version_before, entry.profile_version_after) == (1, 2)
        assert entry.top_action == "EMPATHY"

    def test_batch_limit_consumes_oldest(self, short_term, long_term, bandit):
        for ts in range(1, 6):
            short_term.append(_log(1, 0.5, ts=ts))
        job = ConsolidationJob(short_term, long_term, bandit, batch_limit=2, clock=lambda: NOW_S)
        assert job.run().consumed == 2
        assert [e.timestamp for e in short_term.pending()] == [3, 4, 5]

    def test_min_confidence_configurable(self, short_term, long_term, bandit):
        short_term.append(_log(2, 1.0, confidence=0.5))
        job = ConsolidationJob(short_term, long_term, bandit, min_confidence=0.6, clock=lambda: NOW_S)
        report = job.run()
        assert report.used == 0
        assert long_term.get_profile().alpha[2] == 1.0
        assert short_term.total_count() == 0

    def test_old_diary_pruned(self, job, short_term, long_term):
        old = long_term.save_diary(DiaryEntry(
            date="2025-11-01", total_interactions=1, top_action="CALM", top_success_rate=0.0,
            personality_changes="", diary_text="old", profile_version_before=1,
            profile_version_after=2, created_at=NOW_MS - 91 * DAY_MS,
        ))
        recent = long_term.save_diary(DiaryEntry(
            date="2026-02-01", total_interactions=1, top_action="CALM", top_success_rate=0.0,
            personality_changes="", diary_text="recent", profile_version_before=1,
            profile_version_after=2, created_at=NOW_MS - 30 * DAY_MS,
        ))
        short_term.append(_log(0, 0.5))
        report = job.run()
        assert report.pruned == 1
        assert long_term.diary_by_id(old.id) is None
        assert long_term.diary_by_id(recent.id) is not None

    def test_consecutive_runs_bump_version_each_time(self, job, short_term, long_term):
        short_term.append(_log(0, 0.5))
        job.run()
        short_term.append(_log(0, 0.5))
        job.run()
        assert long_term.get_profile().version == 3
        assert long_term.diary_count() == 2


class TestRetry:
    def test_profile_failure_leaves_logs_pending(self, job, short_term, long_term):
        _seed_logs(short_term)
        with patch.object(long_term, "update_profile", side_effect=StorageError("locked")):
            report = job.run()
        assert report.result is JobResult.RETRY
        assert "locked" in report.error
        assert job.state is State.RETRY
        assert short_term.pending_count() == 5
        assert long_term.diary_count() == 0

        # Next attempt picks everything up
        assert job.run().ok
        assert short_term.total_count() == 0
        assert long_term.get_profile().version == 2

    @pytest.mark.parametrize("store,method", [
        ("long_term", "save_diary"),
        ("short_term", "mark_consolidated"),
    ])
    def test_late_failure_rolls_back_profile_and_counts_rewards_once(
        self, job, short_term, long_term, store, method
    ):
        short_term.append(_log(0, 0.5, ts=1))
        short_term.append(_log(0, 0.5, ts=2))
        target = {"long_term": long_term, "short_term": short_term}[store]
        with patch.object(target, method, side_effect=StorageError("disk full")):
            assert job.run().result is JobResult.RETRY

        # Nothing from the failed run is visible
        profile = long_term.get_profile()
        assert profile.version == 1
        assert profile.alpha[0] == pytest.approx(1.0)
        assert long_term.diary_count() == 0
        assert short_term.pending_count() == 2

        report = job.run()
        assert report.ok
        assert report.consumed == 2
        profile = long_term.get_profile()
        assert profile.alpha[0] == pytest.approx(2.0)
        assert profile.version == 2
        assert long_term.diary_count() == 1
        assert short_term.total_count() == 0

    def test_crash_before_delete_is_cleaned_next_run(self, job, short_term, long_term):
        _seed_logs(short_term)
        with patch.object(short_term, "delete_consolidated", side_effect=StorageError("io")):
            assert job.run().result is JobResult.RETRY

        # Profile and diary committed, rows flagged but not yet deleted
        assert long_term.get_profile().version == 2
        assert short_term.pending_count() == 0
        assert short_term.total_count() == 5

        report = job.run()
        assert report.ok
        assert report.deleted == 5
        assert short_term.total_count() == 0
        assert long_term.get_profile().version == 2

    def test_second_instance_rejected_while_running(self, job):
        assert job.fsm.try_begin()
        report = job.run()
        assert report.result is JobResult.RETRY
        assert report.error == "already running"
        assert job.state is State.RUNNING

    def test_from_config(self, tmp_config, short_term, long_term, bandit):
        tmp_config.set("consolidation", "batch_limit", "10")
        tmp_config.set("consolidation", "min_confidence", "0.5")
        tmp_config.set("consolidation", "diary_retention_days", "7")
        job = ConsolidationJob.from_config(tmp_config, short_term, long_term, bandit)
        assert (job.batch_limit, job.min_confidence, job.diary_retention_days) == (10, 0.5, 7)


class TestAudit:
    def test_transitions_and_result_audited(self, audit_log, job, short_term):
        short_term.append(_log(0, 0.5))
        job.run()
        with open(audit_log.get("logging", "audit_file"), encoding="utf-8") as fh:
            entries = [json.loads(line) for line in fh if line.strip()]
        events = [e["event"] for e in entries]
        assert "CONSOLIDATION_STATE" in events
        assert events[-1] == "CONSOLIDATION_DONE"
        assert entries[-1]["payload"]["consumed"] == 1


def test_partition_groups_by_action():
    logs = [_log(1, 0.3), _log(1, -0.2), _log(4, 0.9, confidence=0.19), _log(6, 0.0, confidence=0.2)]
    assert ConsolidationJob.partition(logs, 0.2) == {1: [0.3, -0.2], 6: [0.0]}
