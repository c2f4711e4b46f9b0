"""
core/scheduler.py
═════════════════
Periodic trigger for the consolidation job.

  - Unique named registration with a KEEP policy: scheduling a name that is
    already registered leaves the existing schedule alone
  - Runs only while the device is idle: charging, on an unmetered network,
    battery not low (each requirement can be switched off in config)
  - At most one job instance at a time
  - SUCCESS → next run one interval later; RETRY → exponential backoff,
    never longer than the interval

tick() does one scheduling pass and can be driven by hand (tests, the CLI);
start() runs it on a daemon thread.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import psutil

import core.logger as logger_mod
from core.consolidation import ConsolidationJob, ConsolidationReport, JobResult

log = logging.getLogger("buddy.scheduler")

UNIQUE_WORK_NAME = "memory_consolidation"
DEFAULT_INTERVAL_HOURS = 6.0
DEFAULT_RETRY_BACKOFF_S = 30.0
DEFAULT_POLL_SECONDS = 60.0
DEFAULT_LOW_BATTERY_PERCENT = 15.0


@dataclass(frozen=True)
class DeviceState:
    charging: bool = True
    unmetered: bool = True
    battery_low: bool = False


DeviceConditions = Callable[[], DeviceState]


def always_idle() -> DeviceState:
    """Conditions provider for hosts with no battery or metered network."""
    return DeviceState()


def host_conditions(low_battery_percent: float = DEFAULT_LOW_BATTERY_PERCENT) -> DeviceConditions:
    """
    Read charging and battery level from the host via psutil.
    Hosts without a battery report as plugged in. psutil has no notion of
    metered links, so unmetered is always reported.
    """
    def read() -> DeviceState:
        battery = psutil.sensors_battery()
        if battery is None:
            return DeviceState()
        return DeviceState(
            charging=bool(battery.power_plugged),
            unmetered=True,
            battery_low=battery.percent < low_battery_percent,
        )

    return read


def conditions_from_config(config) -> DeviceConditions:
    source = config.get("consolidation", "conditions", fallback="always_idle").strip().lower()
    if source == "host":
        return host_conditions(
            config.getfloat("consolidation", "low_battery_percent", fallback=DEFAULT_LOW_BATTERY_PERCENT)
        )
    if source != "always_idle":
        log.warning(f"Unknown conditions source '{source}', assuming always idle")
    return always_idle


@dataclass(frozen=True)
class Constraints:
    requires_charging: bool = True
    requires_unmetered: bool = True
    requires_battery_not_low: bool = True

    @classmethod
    def from_config(cls, config) -> "Constraints":
        return cls(
            requires_charging=config.getboolean("consolidation", "requires_charging", fallback=True),
            requires_unmetered=config.getboolean("consolidation", "requires_unmetered", fallback=True),
            requires_battery_not_low=config.getboolean(
                "consolidation", "requires_battery_not_low", fallback=True
            ),
        )

    def unmet(self, state: DeviceState) -> list[str]:
        missing = []
        if self.requires_charging and not state.charging:
            missing.append("charging")
        if self.requires_unmetered and not state.unmetered:
            missing.append("unmetered")
        if self.requires_battery_not_low and state.battery_low:
            missing.append("battery_not_low")
        return missing

    def satisfied_by(self, state: DeviceState) -> bool:
        return not self.unmet(state)


@dataclass
class _Registration:
    name: str
    next_run_at: float
    attempts: int = 0
    runs: int = 0
    last_result: Optional[JobResult] = None


class ConsolidationScheduler:
    def __init__(
        self,
        job: ConsolidationJob,
        conditions: DeviceConditions = always_idle,
        constraints: Optional[Constraints] = None,
        interval_hours: float = DEFAULT_INTERVAL_HOURS,
        retry_backoff_s: float = DEFAULT_RETRY_BACKOFF_S,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.job = job
        self.conditions = conditions
        self.constraints = constraints or Constraints()
        self.interval_s = max(1.0, float(interval_hours) * 3600.0)
        self.retry_backoff_s = max(0.0, float(retry_backoff_s))
        self.poll_seconds = max(0.01, float(poll_seconds))
        self._clock = clock

        self._registrations: dict[str, _Registration] = {}
        self._registry_lock = threading.Lock()
        self._run_lock = threading.Lock()      # single job instance
        self._stop = threading.Event()
        self._running = False
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(
        cls,
        config,
        job: ConsolidationJob,
        conditions: Optional[DeviceConditions] = None,
    ) -> "ConsolidationScheduler":
        return cls(
            job,
            conditions=conditions or conditions_from_config(config),
            constraints=Constraints.from_config(config),
            interval_hours=config.getfloat("consolidation", "interval_hours", fallback=DEFAULT_INTERVAL_HOURS),
            retry_backoff_s=config.getfloat("consolidation", "retry_backoff_s", fallback=DEFAULT_RETRY_BACKOFF_S),
            poll_seconds=config.getfloat("consolidation", "poll_seconds", fallback=DEFAULT_POLL_SECONDS),
        )

    # ── Registration ──────────────────────────────────────────────────────────

    def schedule(self, name: str = UNIQUE_WORK_NAME, initial_delay_s: float = 0.0) -> bool:
        """Register periodic work. False if `name` is already registered (KEEP)."""
        with self._registry_lock:
            if name in self._registrations:
                log.debug(f"'{name}' already scheduled, keeping existing registration")
                return False
            self._registrations[name] = _Registration(
                name=name, next_run_at=self._clock() + max(0.0, initial_delay_s)
            )
        log.info(f"Scheduled '{name}' every {self.interval_s / 3600:.1f}h")
        logger_mod.audit_safe("CONSOLIDATION_SCHEDULED", {"name": name, "interval_s": self.interval_s})
        return True

    def cancel(self, name: str = UNIQUE_WORK_NAME) -> bool:
        with self._registry_lock:
            return self._registrations.pop(name, None) is not None

    def is_scheduled(self, name: str = UNIQUE_WORK_NAME) -> bool:
        with self._registry_lock:
            return name in self._registrations

    def next_run_at(self, name: str = UNIQUE_WORK_NAME) -> Optional[float]:
        with self._registry_lock:
            reg = self._registrations.get(name)
            return reg.next_run_at if reg else None

    def attempts(self, name: str = UNIQUE_WORK_NAME) -> int:
        with self._registry_lock:
            reg = self._registrations.get(name)
            return reg.attempts if reg else 0

    # ── Scheduling pass ───────────────────────────────────────────────────────

    def tick(self) -> Optional[ConsolidationReport]:
        """
        Run the first due registration if the device conditions allow.
        Returns the job report, or None when nothing ran.
        """
        if not self._run_lock.acquire(blocking=False):
            log.debug("Consolidation already in progress, tick skipped")
            return None
        try:
            reg = self._next_due()
            if reg is None:
                return None

            state = self.conditions()
            missing = self.constraints.unmet(state)
            if missing:
                log.debug(f"'{reg.name}' due but waiting for: {', '.join(missing)}")
                return None

            report = self.job.run()
            self._reschedule(reg, report.result)
            return report
        finally:
            self._run_lock.release()

    def _next_due(self) -> Optional[_Registration]:
        now = self._clock()
        with self._registry_lock:
            due = [r for r in self._registrations.values() if r.next_run_at <= now]
        return min(due, key=lambda r: r.next_run_at, default=None)

    def _reschedule(self, reg: _Registration, result: JobResult) -> None:
        with self._registry_lock:
            reg.runs += 1
            reg.last_result = result
            if result is JobResult.SUCCESS:
                reg.attempts = 0
                delay = self.interval_s
            else:
                reg.attempts += 1
                delay = self.backoff_delay(reg.attempts)
            reg.next_run_at = self._clock() + delay
            attempts = reg.attempts
        if result is not JobResult.SUCCESS:
            log.warning(f"'{reg.name}' asked for retry (attempt {attempts}), next try in {delay:.0f}s")

    def backoff_delay(self, attempts: int) -> float:
        """retry_backoff_s · 2^(attempts-1), capped at the interval."""
        if attempts <= 0:
            return 0.0
        return min(self.retry_backoff_s * (2 ** (attempts - 1)), self.interval_s)

    # ── Background thread ─────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name="consolidation-scheduler"
        )
        self._thread.start()
        log.info(f"Consolidation scheduler started (poll every {self.poll_seconds:g}s)")

    def stop(self) -> None:
        self._running = False
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=3.0)
        self._thread = None

    def _run_loop(self) -> None:
        while self._running:
            try:
                self.tick()
            except Exception as exc:
                log.error(f"Scheduler tick failed: {exc}")
            self._stop.wait(self.poll_seconds)
