"""
core/logger.py — Application logging + tamper-evident learning audit trail.

Every learning event (logged interaction, profile update, consolidation,
diary entry) goes to a JSONL trail where each line carries a sequence
number and the SHA-256 of the line before it. Rewriting or dropping a past
line breaks the chain and verify() reports where.

Application logs go to the "buddy" logger: coloured console + rotating file.
"""

from __future__ import annotations

import hashlib
import json
import logging
import logging.handlers
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from colorama import Fore, Style, init as colorama_init

colorama_init(autoreset=True)

ROOT_LOGGER = "buddy"
FILE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 3

_LEVEL_STYLES = {
    logging.DEBUG:    (Fore.CYAN, "DBG"),
    logging.INFO:     (Fore.GREEN, "INF"),
    logging.WARNING:  (Fore.YELLOW, "WRN"),
    logging.ERROR:    (Fore.RED, "ERR"),
    logging.CRITICAL: (Fore.MAGENTA, "CRT"),
}


class ColouredFormatter(logging.Formatter):
    """Console format: local time, short level tag, logger name without the root prefix."""

    def format(self, record: logging.LogRecord) -> str:
        colour, tag = _LEVEL_STYLES.get(record.levelno, ("", record.levelname[:3]))
        when = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        source = record.name.removeprefix(f"{ROOT_LOGGER}.")
        line = f"{Style.DIM}{when}{Style.RESET_ALL} {colour}{tag}{Style.RESET_ALL} {source}: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ── Audit trail ───────────────────────────────────────────────────────────────

def _digest(entry: dict[str, Any]) -> str:
    canonical = json.dumps(entry, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AuditLog:
    """Append-only, hash-chained JSONL record of learning events."""

    GENESIS = "0" * 64

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._seq, self._head = self._resume()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def head(self) -> str:
        """Hash of the newest entry (GENESIS for an empty trail)."""
        return self._head

    def _resume(self) -> tuple[int, str]:
        last = None
        for last in self.entries():
            pass
        if not last:
            return 0, self.GENESIS
        return int(last.get("seq", 0)), last.get("hash", self.GENESIS)

    def entries(self) -> Iterator[dict[str, Any]]:
        """Yield parsed entries in file order, skipping unreadable lines."""
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as fh:
            for raw in fh:
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    yield json.loads(raw)
                except json.JSONDecodeError:
                    continue

    def tail(self, limit: int = 50) -> list[dict[str, Any]]:
        return list(deque(self.entries(), maxlen=max(0, limit)))

    def write(self, event_type: str, payload: dict[str, Any]) -> str:
        """Append one event and return its hash."""
        with self._lock:
            entry = {
                "seq": self._seq + 1,
                "ts": datetime.now(tz=timezone.utc).isoformat(),
                "event": event_type,
                "payload": payload,
                "prev_hash": self._head,
            }
            entry["hash"] = _digest(entry)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=False) + "\n")
            self._seq, self._head = entry["seq"], entry["hash"]
            return entry["hash"]

    def verify(self) -> tuple[bool, int, str]:
        """
        Walk the whole trail. Returns (ok, entries_checked, error_msg);
        error_msg names the first offending line.
        """
        if not self._path.exists():
            return True, 0, ""
        prev, checked = self.GENESIS, 0
        with self._path.open("r", encoding="utf-8") as fh:
            for lineno, raw in enumerate(fh, 1):
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    entry = json.loads(raw)
                except json.JSONDecodeError as exc:
                    return False, checked, f"Line {lineno}: unreadable entry ({exc})"
                stored = entry.pop("hash", None)
                if stored != _digest(entry):
                    return False, checked, f"Line {lineno}: hash mismatch"
                if entry.get("prev_hash") != prev:
                    return False, checked, f"Line {lineno}: chain broken"
                if entry.get("seq") != checked + 1:
                    return False, checked, f"Line {lineno}: sequence gap"
                prev = stored
                checked += 1
        return True, checked, ""


# ── Module-level state (initialised by setup()) ──────────────────────────────
_audit: AuditLog | None = None
_app_logger: logging.Logger | None = None


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setFormatter(ColouredFormatter())
    handler.setLevel(level)
    return handler


def _file_handler(path: Path, level: int, max_bytes: int, backups: int) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backups, encoding="utf-8"
    )
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    handler.setLevel(level)
    return handler


def _detach(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def setup(config: Any) -> None:
    """Configure the "buddy" logger and open the audit trail from the [logging] section."""
    global _audit, _app_logger

    log_dir = Path(config.get("logging", "log_dir", fallback="logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    level_name = config.get("logging", "level", fallback="INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    logger = logging.getLogger(ROOT_LOGGER)
    _detach(logger)
    logger.setLevel(level)
    logger.addHandler(_console_handler(level))
    logger.addHandler(_file_handler(
        Path(config.get("logging", "app_file", fallback=str(log_dir / "buddy.log"))),
        level,
        config.getint("logging", "max_bytes", fallback=DEFAULT_MAX_BYTES),
        config.getint("logging", "backup_count", fallback=DEFAULT_BACKUP_COUNT),
    ))

    _audit = AuditLog(config.get("logging", "audit_file", fallback=str(log_dir / "audit.jsonl")))
    _app_logger = logger


def teardown() -> None:
    """Detach handlers and forget the audit trail (tests, shutdown)."""
    global _audit, _app_logger
    if _app_logger is not None:
        _detach(_app_logger)
    _audit = None
    _app_logger = None


def get() -> logging.Logger:
    if _app_logger is None:
        raise RuntimeError("Logger not initialised, call logger.setup() first")
    return _app_logger


def audit(event_type: str, payload: dict[str, Any]) -> str:
    if _audit is None:
        raise RuntimeError("Audit log not initialised, call logger.setup() first")
    return _audit.write(event_type, payload)


def audit_safe(event_type: str, payload: dict[str, Any]) -> str | None:
    """Like audit(), but a no-op when setup() has not run (library use, tests)."""
    if _audit is None:
        return None
    try:
        return _audit.write(event_type, payload)
    except OSError as exc:
        logging.getLogger(f"{ROOT_LOGGER}.audit").warning(f"Audit write failed: {exc}")
        return None


def verify_audit() -> tuple[bool, int, str]:
    if _audit is None:
        return False, 0, "Audit log not initialised"
    return _audit.verify()
