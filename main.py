"""
main.py — Buddy entry point.

Usage:
  python main.py react                 # pick a reaction for right now
  python main.py learn                 # react, wait, evaluate and learn
  python main.py consolidate           # run one consolidation pass now
  python main.py diary [--date D]      # show diary entries
  python main.py profile               # show the learned personality
  python main.py audit [--limit N]     # show the newest learning events
  python main.py serve                 # background consolidation until Ctrl-C
  python main.py --verify              # verify audit log integrity and exit
"""

from __future__ import annotations

import argparse
import asyncio
import configparser
import json
import os
import sys
import traceback
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable

if TYPE_CHECKING:
    from core.controller import EdgeController

PROJECT_ROOT = Path(__file__).resolve().parent
DEFAULT_CONFIG = "config/buddy.ini"

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_RETRY = 2


def _load_config(config_path: str = DEFAULT_CONFIG) -> configparser.ConfigParser:
    config = configparser.ConfigParser()
    path = PROJECT_ROOT / config_path
    if not config.read(path, encoding="utf-8"):
        print(f"⚠  No config at {path}, built-in defaults apply")
    return config


def _apply_overrides(config: configparser.ConfigParser, args: argparse.Namespace) -> None:
    if args.log_level:
        if not config.has_section("logging"):
            config.add_section("logging")
        config.set("logging", "level", args.log_level)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Buddy — on-device reaction personalization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py react                   Choose a reaction and print it
  python main.py learn --delay 5         Evaluate the reaction 5 s later
  python main.py diary --date 2026-03-01 Show the diary entry for a day
  python main.py --config my.ini serve   Use custom config file
        """,
    )
    parser.add_argument("--verify", action="store_true", help="Check the audit hash chain and exit")
    parser.add_argument("--config", default=DEFAULT_CONFIG, help=f"Config file under the project root (default: {DEFAULT_CONFIG})")
    parser.add_argument("--log-level", type=str.upper, choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Override [logging] level")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("react", help="Choose a reaction for the current moment")
    learn = sub.add_parser("learn", help="React, then evaluate and learn from it")
    learn.add_argument("--delay", type=float, default=None, help="Seconds between reaction and evaluation")
    sub.add_parser("consolidate", help="Run one consolidation pass now")
    diary = sub.add_parser("diary", help="Show diary entries")
    diary.add_argument("--date", default=None, help="YYYY-MM-DD; latest entries when omitted")
    diary.add_argument("--limit", type=int, default=5)
    sub.add_parser("profile", help="Show the learned personality")
    audit = sub.add_parser("audit", help="Show the newest audit events")
    audit.add_argument("--limit", type=int, default=20)
    sub.add_parser("serve", help="Run the consolidation scheduler until interrupted")
    return parser.parse_args(argv)


# ── Commands ──────────────────────────────────────────────────────────────────

def _print_profile(controller: "EdgeController") -> None:
    from core.actions import ReactionType

    profile = controller.profile()
    print(f"Profile '{profile.user_id}' v{profile.version}: "
          f"{profile.total_interactions} interactions, {profile.total_consolidations} consolidations")
    for kind, expectation in zip(ReactionType, profile.expectations()):
        i = kind.index
        print(f"  {kind.label:<13} {expectation:.3f}  (α={profile.alpha[i]:.2f}, β={profile.beta[i]:.2f})")


async def _cmd_react(controller: "EdgeController", args) -> int:
    output = controller.react()
    print(json.dumps({**output.to_dict(), "text": controller.respond(output)}, ensure_ascii=False))
    return EXIT_OK


async def _cmd_learn(controller: "EdgeController", args) -> int:
    await controller.start()
    try:
        output = await controller.react_and_learn(args.delay)
        print(f"{output.action.type.label}: {controller.respond(output)}")
        await controller.wait_for_learning()
    finally:
        await controller.shutdown()
    _print_profile(controller)
    return EXIT_OK


async def _cmd_consolidate(controller: "EdgeController", args) -> int:
    report = controller.run_consolidation()
    print(json.dumps(report.to_dict(), ensure_ascii=False))
    return EXIT_OK if report.ok else EXIT_RETRY


async def _cmd_diary(controller: "EdgeController", args) -> int:
    entries = [controller.diary_for(args.date)] if args.date else controller.recent_diary(args.limit)
    entries = [e for e in entries if e is not None]
    if not entries:
        print(f"No diary entry for {args.date}." if args.date else "No diary entries.")
    for entry in entries:
        print(f"═══ {entry.date} (v{entry.profile_version_before} → v{entry.profile_version_after}) ═══")
        print(entry.diary_text)
    return EXIT_OK


async def _cmd_profile(controller: "EdgeController", args) -> int:
    _print_profile(controller)
    return EXIT_OK


async def _cmd_audit(controller: "EdgeController", args) -> int:
    from core.logger import AuditLog

    for entry in AuditLog(controller.config.get("logging", "audit_file", fallback="logs/audit.jsonl")).tail(args.limit):
        print(f"#{entry.get('seq')} {entry.get('ts')} {entry.get('event')} "
              f"{json.dumps(entry.get('payload', {}), ensure_ascii=False)}")
    return EXIT_OK


async def _cmd_serve(controller: "EdgeController", args) -> int:
    await controller.start()
    try:
        await asyncio.Event().wait()
    finally:
        await controller.shutdown()
    return EXIT_OK


COMMANDS: dict[str, Callable[["EdgeController", argparse.Namespace], Awaitable[int]]] = {
    "react": _cmd_react,
    "learn": _cmd_learn,
    "consolidate": _cmd_consolidate,
    "diary": _cmd_diary,
    "profile": _cmd_profile,
    "audit": _cmd_audit,
    "serve": _cmd_serve,
}


async def _main(args: argparse.Namespace) -> int:
    config = _load_config(args.config)
    _apply_overrides(config, args)

    # Logging before anything that might log
    import core.logger as logger_mod
    logger_mod.setup(config)
    log = logger_mod.get()

    if args.verify:
        ok, count, err = logger_mod.verify_audit()
        if ok:
            log.info(f"Audit chain intact ({count} entries)")
            print(f"✅ Audit log OK: {count} entries, chain intact.")
            return EXIT_OK
        log.error(f"Audit chain broken: {err}")
        print(f"❌ Audit log TAMPERED: {err}")
        return EXIT_FATAL

    from core.controller import get_controller

    command = args.command or "react"
    try:
        return await COMMANDS[command](get_controller(config), args)
    except asyncio.CancelledError:
        log.info(f"'{command}' cancelled")
        return EXIT_OK
    except Exception as e:
        log.critical(f"'{command}' failed: {e}\n{traceback.format_exc()}")
        print(f"❌ Fatal error: {e}")
        return EXIT_FATAL


def main() -> None:
    # Relative paths in the config resolve against the project root
    os.chdir(PROJECT_ROOT)
    args = _parse_args()
    try:
        sys.exit(asyncio.run(_main(args)))
    except KeyboardInterrupt:
        print("\nGoodbye.")
        sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()
