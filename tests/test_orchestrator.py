"""
tests/test_orchestrator.py — One learning cycle: evaluate → log → (maybe) update.
Run: pytest tests/test_orchestrator.py -v
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest

from core.actions import ReactionAction, ReactionOutput, ReactionType
from core.context import ContextSnapshot
from core.orchestrator import LearningOrchestrator
from core.reward import CallbackRewardEvaluator, NullRewardEvaluator
from memory.sqlite_store import StorageError


def _output(kind: ReactionType = ReactionType.SURPRISE, intensity: float = 0.5) -> ReactionOutput:
    return ReactionOutput(ReactionAction(kind, intensity), confidence=0.5)


def _evaluator(sampler):
    evaluator = CallbackRewardEvaluator(sampler, sleep=lambda s: None)
    evaluator.prepare()
    return evaluator


@pytest.fixture
def context():
    return ContextSnapshot(content=[0.5] * 32)


def _orchestrator(short_term, long_term, bandit, evaluator):
    return LearningOrchestrator(short_term, long_term, evaluator, bandit)


class TestLearningCycle:
    def test_confident_reward_updates_profile(self, short_term, long_term, bandit, context):
        orch = _orchestrator(short_term, long_term, bandit, _evaluator(lambda: (0.8, [])))
        outcome = orch.learn_from_reaction(_output(), context)

        assert outcome.updated
        assert outcome.signal.score == pytest.approx(0.8)
        assert outcome.profile.alpha[2] == pytest.approx(1.8)
        assert long_term.get_profile().total_interactions == 1

        (logged,) = short_term.pending()
        assert logged.id == outcome.log_entry.id
        assert logged.action_index == 2
        assert logged.context_vector == tuple(context.full_vector())
        assert logged.reward_confidence == pytest.approx(1.0)

    def test_low_confidence_logged_not_applied(self, short_term, long_term, bandit, context):
        samples = iter([(0.9, []), None, None, None, None, None])
        orch = _orchestrator(short_term, long_term, bandit, _evaluator(lambda: next(samples)))
        outcome = orch.learn_from_reaction(_output(), context)

        assert not outcome.updated
        assert outcome.profile is None
        assert short_term.pending_count() == 1
        profile = long_term.get_profile()
        assert profile.alpha == (1.0,) * 8
        assert profile.total_interactions == 0

    def test_no_sensor_still_logs(self, short_term, long_term, bandit, context):
        orch = _orchestrator(short_term, long_term, bandit, NullRewardEvaluator())
        outcome = orch.learn_from_reaction(_output(ReactionType.CALM), context)
        assert not outcome.updated
        (logged,) = short_term.pending()
        assert logged.reward_score == 0.0 and logged.reward_confidence == 0.0

    def test_threshold_is_configurable(self, short_term, long_term, bandit, context):
        samples = iter([(0.9, []), None, None, None, None, None])
        orch = LearningOrchestrator(
            short_term, long_term, _evaluator(lambda: next(samples)), bandit,
            reliability_threshold=0.1,
        )
        assert orch.learn_from_reaction(_output(), context).updated

    def test_negative_reward_goes_to_beta(self, short_term, long_term, bandit, context):
        orch = _orchestrator(short_term, long_term, bandit, _evaluator(lambda: (-0.5, [])))
        outcome = orch.learn_from_reaction(_output(ReactionType.HUMOR), context)
        assert outcome.profile.beta[1] == pytest.approx(1.5)

    def test_real_time_path_never_bumps_version(self, short_term, long_term, bandit, context):
        orch = _orchestrator(short_term, long_term, bandit, _evaluator(lambda: (1.0, [])))
        for _ in range(3):
            orch.learn_from_reaction(_output(), context)
        assert long_term.get_profile().version == 1


class TestFailures:
    def test_evaluator_crash_writes_nothing(self, short_term, long_term, bandit, context):
        evaluator = MagicMock()
        evaluator.evaluate.side_effect = RuntimeError("sensor died")
        orch = _orchestrator(short_term, long_term, bandit, evaluator)

        assert orch.learn_from_reaction(_output(), context) is None
        assert short_term.total_count() == 0
        assert long_term.get_profile().total_interactions == 0

    def test_profile_write_failure_keeps_log_for_consolidation(self, short_term, long_term, bandit, context):
        orch = _orchestrator(short_term, long_term, bandit, _evaluator(lambda: (0.8, [])))
        with patch.object(long_term, "update_profile", side_effect=StorageError("disk full")):
            assert orch.learn_from_reaction(_output(), context) is None
        assert short_term.pending_count() == 1
        assert long_term.get_profile().total_interactions == 0

    def test_log_failure_skips_update(self, short_term, long_term, bandit, context):
        orch = _orchestrator(short_term, long_term, bandit, _evaluator(lambda: (0.8, [])))
        with patch.object(short_term, "append", side_effect=StorageError("locked")):
            assert orch.learn_from_reaction(_output(), context) is None
        assert long_term.get_profile().total_interactions == 0


class TestAudit:
    def test_events_written(self, audit_log, short_term, long_term, bandit, context):
        orch = _orchestrator(short_term, long_term, bandit, _evaluator(lambda: (0.8, [])))
        orch.learn_from_reaction(_output(), context)

        path = audit_log.get("logging", "audit_file")
        with open(path, encoding="utf-8") as fh:
            events = [json.loads(line)["event"] for line in fh if line.strip()]
        assert events[-2:] == ["LEARNING_LOGGED", "PROFILE_UPDATED"]
