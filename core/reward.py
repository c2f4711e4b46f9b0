"""
core/reward.py
──────────────
Reward evaluation port.

After a reaction, an evaluator watches the user for a short window and turns
what it saw into a RewardSignal (score -1..+1, confidence 0..1). Concrete
sensing (camera, voice tone, touch patterns) lives outside this package; it
plugs in by subclassing SamplingRewardEvaluator or wrapping a callable with
CallbackRewardEvaluator.

Contract:
  - prepare() never raises; a failure leaves the evaluator unavailable
  - evaluate() never raises; unavailable / nothing captured → neutral signal
  - confidence = fraction of expected samples actually captured
"""

from __future__ import annotations

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

log = logging.getLogger("buddy.reward")

DEFAULT_DURATION_MS = 3000
DEFAULT_SAMPLE_INTERVAL_MS = 500

Sample = tuple[float, Sequence[float]]


def _clamp(value: float, low: float, high: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value):
        return 0.0
    return max(low, min(high, value))


@dataclass(frozen=True)
class RewardSignal:
    score: float
    confidence: float
    raw_features: tuple[float, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "score", _clamp(self.score, -1.0, 1.0))
        object.__setattr__(self, "confidence", _clamp(self.confidence, 0.0, 1.0))
        object.__setattr__(self, "raw_features", tuple(float(v) for v in self.raw_features))

    def is_reliable(self, threshold: float = 0.3) -> bool:
        return self.confidence >= threshold

    @classmethod
    def neutral(cls) -> "RewardSignal":
        return cls(score=0.0, confidence=0.0)


class RewardEvaluator(ABC):
    name = "evaluator"

    @abstractmethod
    def prepare(self) -> None:
        """Acquire sensing resources. Idempotent. Must not raise."""

    def release(self) -> None:
        """Free sensing resources."""

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def evaluate(
        self,
        duration_ms: int = DEFAULT_DURATION_MS,
        cancel_event: Optional[threading.Event] = None,
    ) -> RewardSignal:
        ...


class NullRewardEvaluator(RewardEvaluator):
    """No sensor wired: every observation is neutral and never trusted."""

    name = "null"

    def prepare(self) -> None:
        return None

    def is_available(self) -> bool:
        return False

    def evaluate(self, duration_ms: int = DEFAULT_DURATION_MS, cancel_event=None) -> RewardSignal:
        return RewardSignal.neutral()


class SamplingRewardEvaluator(RewardEvaluator):
    """
    Polls capture_sample() every sample_interval_ms for the requested window
    and averages what it gets. Subclasses implement _acquire() and
    capture_sample().
    """

    name = "sampling"

    def __init__(
        self,
        sample_interval_ms: int = DEFAULT_SAMPLE_INTERVAL_MS,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.sample_interval_ms = max(1, int(sample_interval_ms))
        self._sleep = sleep
        self._ready = False
        self._lock = threading.Lock()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def prepare(self) -> None:
        with self._lock:
            if self._ready:
                return
            try:
                self._acquire()
                self._ready = True
                log.info(f"Reward evaluator '{self.name}' ready")
            except Exception as exc:
                self._ready = False
                log.error(f"Reward evaluator '{self.name}' failed to prepare: {exc}")

    def release(self) -> None:
        with self._lock:
            if not self._ready:
                return
            try:
                self._release()
            except Exception as exc:
                log.warning(f"Reward evaluator '{self.name}' release failed: {exc}")
            self._ready = False

    def is_available(self) -> bool:
        return self._ready

    def _acquire(self) -> None:
        """Open the sensor. Raise on failure."""

    def _release(self) -> None:
        """Close the sensor."""

    @abstractmethod
    def capture_sample(self) -> Optional[Sample]:
        """One observation: (score, raw features), or None when nothing was seen."""

    # ── Evaluation ────────────────────────────────────────────────────────────

    def evaluate(
        self,
        duration_ms: int = DEFAULT_DURATION_MS,
        cancel_event: Optional[threading.Event] = None,
    ) -> RewardSignal:
        if not self.is_available():
            log.warning(f"Reward evaluator '{self.name}' unavailable, returning neutral")
            return RewardSignal.neutral()

        expected = max(1, int(duration_ms) // self.sample_interval_ms)
        interval_s = self.sample_interval_ms / 1000.0
        scores: list[float] = []
        features: list[Sequence[float]] = []

        for i in range(expected):
            if cancel_event is not None and cancel_event.is_set():
                log.debug(f"Evaluation cancelled after {i}/{expected} samples")
                break
            sample = self._safe_capture()
            if sample is not None:
                scores.append(float(sample[0]))
                features.append(sample[1])
            if i < expected - 1:
                self._wait(interval_s, cancel_event)

        if not scores:
            return RewardSignal.neutral()

        return RewardSignal(
            score=sum(scores) / len(scores),
            confidence=len(scores) / expected,
            raw_features=self._average_features(features),
        )

    def _safe_capture(self) -> Optional[Sample]:
        try:
            sample = self.capture_sample()
        except Exception as exc:
            log.debug(f"Sample capture failed: {exc}")
            return None
        if sample is None:
            return None
        score = sample[0]
        if score is None or (isinstance(score, float) and math.isnan(score)):
            return None
        return sample

    def _wait(self, seconds: float, cancel_event: Optional[threading.Event]) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel_event is not None:
            cancel_event.wait(seconds)
        else:
            time.sleep(seconds)

    @staticmethod
    def _average_features(features: list[Sequence[float]]) -> tuple[float, ...]:
        rows = [list(f) for f in features if f]
        if not rows:
            return ()
        width = min(len(r) for r in rows)
        return tuple(sum(r[j] for r in rows) / len(rows) for j in range(width))


class CallbackRewardEvaluator(SamplingRewardEvaluator):
    """
    Bridge for an external sensor exposed as a plain callable.

        evaluator = CallbackRewardEvaluator(face_sensor.read_smile)
    """

    name = "callback"

    def __init__(
        self,
        sampler: Callable[[], Optional[Sample]],
        sample_interval_ms: int = DEFAULT_SAMPLE_INTERVAL_MS,
        sleep: Optional[Callable[[float], None]] = None,
        acquire: Optional[Callable[[], None]] = None,
    ) -> None:
        super().__init__(sample_interval_ms=sample_interval_ms, sleep=sleep)
        self._sampler = sampler
        self._acquire_fn = acquire

    def _acquire(self) -> None:
        if self._acquire_fn is not None:
            self._acquire_fn()

    def capture_sample(self) -> Optional[Sample]:
        return self._sampler()
