"""
tests/test_cli.py — Command-line entry point against a throwaway config.
Run: pytest tests/test_cli.py -v
"""

from __future__ import annotations

import asyncio
import json

import pytest

import core.logger as logger_mod
import main as cli
from core.controller import reset_controller


@pytest.fixture
def config_file(tmp_config, tmp_path):
    path = tmp_path / "buddy.ini"
    with open(path, "w", encoding="utf-8") as fh:
        tmp_config.write(fh)
    reset_controller()
    yield str(path)
    reset_controller()
    logger_mod.teardown()


def _run(argv):
    return asyncio.run(cli._main(cli._parse_args(argv)))


class TestArgs:
    def test_defaults(self):
        args = cli._parse_args([])
        assert args.command is None
        assert args.config == "config/buddy.ini"
        assert not args.verify

    def test_log_level_is_case_insensitive(self):
        assert cli._parse_args(["--log-level", "debug"]).log_level == "DEBUG"

    def test_every_subcommand_has_a_handler(self):
        for name in ["react", "learn", "consolidate", "diary", "profile", "audit", "serve"]:
            assert cli._parse_args([name]).command in cli.COMMANDS


class TestCommands:
    def test_react_prints_json(self, config_file, capsys):
        assert _run(["--config", config_file, "react"]) == cli.EXIT_OK
        printed = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert 0 <= printed["action_index"] < 8
        assert printed["text"]

    def test_learn_then_consolidate_then_diary(self, config_file, capsys):
        assert _run(["--config", config_file, "learn", "--delay", "0"]) == cli.EXIT_OK
        reset_controller()
        assert _run(["--config", config_file, "consolidate"]) == cli.EXIT_OK
        report = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert report["result"] == "SUCCESS"
        assert report["consumed"] == 1

        reset_controller()
        assert _run(["--config", config_file, "diary"]) == cli.EXIT_OK
        assert "═══" in capsys.readouterr().out

    def test_verify_and_audit(self, config_file, capsys):
        _run(["--config", config_file, "react"])
        assert _run(["--config", config_file, "--verify"]) == cli.EXIT_OK
        assert "chain intact" in capsys.readouterr().out

        assert _run(["--config", config_file, "consolidate"]) == cli.EXIT_OK
        assert _run(["--config", config_file, "audit", "--limit", "5"]) == cli.EXIT_OK
        assert "CONSOLIDATION_DONE" in capsys.readouterr().out
