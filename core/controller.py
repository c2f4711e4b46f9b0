"""
core/controller.py - Composition root for the on-device learning loop.

Wires the stores, bandit, engine, orchestrator, consolidation job and
scheduler from one config, and exposes the operations the host app calls:

  react()                    pick a reaction for "now"
  learn_from_last_reaction() evaluate + learn from the last reaction
  react_and_learn()          both, learning in the background
  run_consolidation()        one consolidation pass on demand
  recent_diary() / diary_for() / profile()
"""

from __future__ import annotations

import asyncio
import configparser
import logging
import threading
import time
from datetime import datetime
from typing import Optional

import numpy as np

import core.logger as logger_mod
from core.actions import ReactionAction, ReactionOutput, ReactionType
from core.bandit import ThompsonSamplingBandit
from core.consolidation import ConsolidationJob, ConsolidationReport
from core.context import ContextSnapshot
from core.engine import ReactionEngine, RuleBasedReactionEngine
from core.orchestrator import LearningOrchestrator, LearningOutcome
from core.responses import OllamaResponseGenerator, ResponseGenerator, TemplateResponseGenerator
from core.reward import NullRewardEvaluator, RewardEvaluator
from core.scheduler import ConsolidationScheduler, DeviceConditions, UNIQUE_WORK_NAME
from memory.long_term import LongTermMemory
from memory.models import DiaryEntry, UserProfile
from memory.short_term import ShortTermMemory

log = logging.getLogger("buddy.controller")

DEFAULT_REACT_LEARN_DELAY_S = 1.0


class EdgeController:
    def __init__(
        self,
        config: configparser.ConfigParser,
        evaluator: Optional[RewardEvaluator] = None,
        engine: Optional[ReactionEngine] = None,
        responses: Optional[ResponseGenerator] = None,
        rng: Optional[np.random.Generator] = None,
        conditions: Optional[DeviceConditions] = None,
    ) -> None:
        self._config = config

        self.short_term = ShortTermMemory.from_config(config)
        self.long_term = LongTermMemory.from_config(config)
        self.bandit = ThompsonSamplingBandit.from_config(config, rng=rng)
        self.evaluator = evaluator or NullRewardEvaluator()

        self._fallback_engine = RuleBasedReactionEngine(self.bandit)
        self.engine: ReactionEngine = engine or self._fallback_engine
        self.responses: ResponseGenerator = responses or self._responses_from_config(config)

        self.orchestrator = LearningOrchestrator(
            self.short_term,
            self.long_term,
            self.evaluator,
            self.bandit,
            reliability_threshold=config.getfloat("learning", "reliability_threshold", fallback=0.3),
            evaluation_duration_ms=config.getint("learning", "evaluation_duration_ms", fallback=3000),
        )
        self.job = ConsolidationJob.from_config(config, self.short_term, self.long_term, self.bandit)
        self.scheduler = ConsolidationScheduler.from_config(config, self.job, conditions=conditions)
        self.react_learn_delay_s = config.getfloat(
            "learning", "react_learn_delay_s", fallback=DEFAULT_REACT_LEARN_DELAY_S
        )

        self._last_lock = threading.Lock()
        self._last_output: Optional[ReactionOutput] = None
        self._last_context: Optional[ContextSnapshot] = None
        self._cancel = threading.Event()
        self._tasks: set[asyncio.Task] = set()

    def _responses_from_config(self, config: configparser.ConfigParser) -> ResponseGenerator:
        template = TemplateResponseGenerator()
        backend = config.get("responses", "backend", fallback="template").strip().lower()
        if backend == "ollama":
            return OllamaResponseGenerator.from_config(config, fallback=template)
        if backend != "template":
            log.warning(f"Unknown response backend '{backend}', using template")
        return template

    @property
    def config(self) -> configparser.ConfigParser:
        return self._config

    # -- Reaction ----------------------------------------------------------

    def react(self, now: Optional[datetime] = None) -> ReactionOutput:
        """Choose a reaction for the current moment. Never raises."""
        context = ContextSnapshot.from_time(now)
        output = self._infer(context)
        with self._last_lock:
            self._last_output = output
            self._last_context = context
        log.debug(f"React: {output.action.type.name} intensity={output.intensity:.2f} via {output.engine}")
        return output

    def _infer(self, context: ContextSnapshot) -> ReactionOutput:
        try:
            profile = self.long_term.get_profile()
        except Exception as exc:
            log.error(f"Profile load failed, using neutral reaction: {exc}")
            return self._neutral_output("profile unavailable")

        engine = self.engine
        if engine is not self._fallback_engine:
            try:
                if engine.is_ready():
                    return engine.infer(context, profile)
                log.warning(f"Engine '{engine.name}' not ready, using rule-based fallback")
            except Exception as exc:
                log.error(f"Engine '{engine.name}' failed, using rule-based fallback: {exc}")
            try:
                out = self._fallback_engine.infer(context, profile)
                return ReactionOutput(out.action, out.confidence, out.reasoning, True, out.engine)
            except Exception as exc:
                log.error(f"Fallback engine failed: {exc}")
                return self._neutral_output("engine failure")

        try:
            return engine.infer(context, profile)
        except Exception as exc:
            log.error(f"Rule-based engine failed: {exc}")
            return self._neutral_output("engine failure")

    @staticmethod
    def _neutral_output(reason: str) -> ReactionOutput:
        kind = ReactionType.CALM
        return ReactionOutput(
            action=ReactionAction(kind, kind.base_intensity),
            confidence=0.5,
            reasoning=f"fallback: {reason}",
            fallback_used=True,
            engine="none",
        )

    def respond(self, output: ReactionOutput) -> str:
        try:
            return self.responses.generate(output)
        except Exception as exc:
            log.warning(f"Response generator '{self.responses.name}' failed: {exc}")
            return TemplateResponseGenerator.phrase_for(output)

    # -- Learning ----------------------------------------------------------

    def learn_from_last_reaction(self) -> Optional[LearningOutcome]:
        """Learn from the most recent react(). Each reaction is learned from at most once."""
        with self._last_lock:
            output, context = self._last_output, self._last_context
            self._last_output = self._last_context = None
        if output is None or context is None:
            log.warning("learn_from_last_reaction called with no reaction to learn from")
            return None
        return self.orchestrator.learn_from_reaction(output, context, cancel_event=self._cancel)

    async def react_and_learn(self, delay_s: Optional[float] = None) -> ReactionOutput:
        """
        React now and return the output immediately; evaluation and learning
        run afterwards in a background task so the caller can show the reaction.
        """
        output = self.react()
        with self._last_lock:
            context = self._last_context
            self._last_output = self._last_context = None

        delay = self.react_learn_delay_s if delay_s is None else delay_s
        task = asyncio.ensure_future(self._learn_later(output, context, delay))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return output

    async def _learn_later(
        self, output: ReactionOutput, context: ContextSnapshot, delay_s: float
    ) -> Optional[LearningOutcome]:
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self.orchestrator.learn_from_reaction, output, context, self._cancel
        )

    async def wait_for_learning(self) -> None:
        """Await every background learning task started so far."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- Strategy swaps ----------------------------------------------------

    def swap_engine(self, engine: ReactionEngine) -> None:
        log.info(f"Reaction engine: {self.engine.name} -> {engine.name}")
        self.engine = engine

    def swap_response_generator(self, responses: ResponseGenerator) -> None:
        log.info(f"Response generator: {self.responses.name} -> {responses.name}")
        self.responses = responses

    # -- Consolidation / queries -------------------------------------------

    def run_consolidation(self) -> ConsolidationReport:
        return self.job.run()

    def recent_diary(self, limit: int = 30) -> list[DiaryEntry]:
        try:
            return self.long_term.recent_diary(limit)
        except Exception as exc:
            log.error(f"Diary read failed: {exc}")
            return []

    def diary_for(self, date: str) -> Optional[DiaryEntry]:
        try:
            return self.long_term.diary_by_date(date)
        except Exception as exc:
            log.error(f"Diary read failed for {date}: {exc}")
            return None

    def profile(self) -> UserProfile:
        return self.long_term.get_profile()

    # -- Startup / shutdown ------------------------------------------------

    async def start(self) -> None:
        self._cancel.clear()
        logger_mod.audit_safe("BUDDY_START", {
            "version": self._config.get("general", "version", fallback="1.0.0"),
            "engine": self.engine.name,
            "responses": self.responses.name,
        })
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.evaluator.prepare)
        if not self.evaluator.is_available():
            log.warning("Reward evaluator unavailable - reactions will be logged with zero confidence")

        self.scheduler.schedule(UNIQUE_WORK_NAME)
        if self._config.getboolean("consolidation", "enabled", fallback=True):
            self.scheduler.start()

    async def shutdown(self) -> None:
        log.info("Shutting down...")
        self._cancel.set()
        await self.wait_for_learning()
        self.scheduler.stop()
        self.evaluator.release()
        logger_mod.audit_safe("BUDDY_SHUTDOWN", {"ts": time.time()})
        log.info("Shutdown complete.")


_controller: Optional[EdgeController] = None
_controller_lock = threading.Lock()


def get_controller(config: Optional[configparser.ConfigParser] = None, **kwargs) -> EdgeController:
    """
    Process-wide controller, built on first call. Later calls return the
    same instance and ignore their arguments.
    """
    global _controller
    with _controller_lock:
        if _controller is None:
            _controller = EdgeController(config or configparser.ConfigParser(), **kwargs)
        return _controller


def reset_controller() -> None:
    """Forget the process-wide controller (tests, config reload)."""
    global _controller
    with _controller_lock:
        _controller = None
