"""
tests/conftest.py — shared fixtures.

Tests are isolated: no Ollama, no real sensors, no disk side effects beyond tmp.
"""

from __future__ import annotations

import configparser
import sys
from pathlib import Path

import pytest

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).parent.parent))

import core.logger as logger_mod
from core.bandit import ThompsonSamplingBandit
from memory.long_term import LongTermMemory
from memory.short_term import ShortTermMemory


@pytest.fixture
def tmp_config(tmp_path):
    cfg = configparser.ConfigParser()
    cfg["general"]       = {"version": "1.0.0"}
    cfg["logging"]       = {"log_dir": str(tmp_path / "logs"), "audit_file": str(tmp_path / "logs/audit.jsonl"), "app_file": str(tmp_path / "logs/buddy.log"), "level": "DEBUG"}
    cfg["memory"]        = {"data_dir": str(tmp_path / "data"), "sqlite_file": str(tmp_path / "data/buddy.db"), "user_id": "default", "max_pending_logs": "5000"}
    cfg["bandit"]        = {"max_parameter_sum": "100", "min_parameter": "0.01", "seed": "42"}
    cfg["learning"]      = {"evaluation_duration_ms": "3000", "reliability_threshold": "0.3", "sample_interval_ms": "500", "react_learn_delay_s": "0"}
    cfg["consolidation"] = {"enabled": "false", "batch_limit": "1000", "min_confidence": "0.2", "diary_retention_days": "90", "interval_hours": "6", "retry_backoff_s": "30", "poll_seconds": "60", "requires_charging": "true", "requires_unmetered": "true", "requires_battery_not_low": "true"}
    cfg["responses"]     = {"backend": "template", "base_url": "http://localhost:11434", "model": "mistral", "request_timeout_s": "1"}
    return cfg


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "data" / "buddy.db")


@pytest.fixture
def short_term(db_path):
    return ShortTermMemory(db_path)


@pytest.fixture
def long_term(db_path):
    return LongTermMemory(db_path)


@pytest.fixture
def bandit():
    return ThompsonSamplingBandit.seeded(42)


@pytest.fixture
def audit_log(tmp_config):
    """Logging + audit trail wired to tmp; torn down afterwards."""
    logger_mod.setup(tmp_config)
    yield tmp_config
    logger_mod.teardown()
