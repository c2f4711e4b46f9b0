"""
memory/sqlite_store.py — Shared SQLite plumbing for the memory stores.

Connections are opened per operation (safe across the foreground reaction
thread and the background consolidation thread) in autocommit mode; writes
that must be atomic go through transaction(), which takes the store lock and
opens a BEGIN IMMEDIATE so concurrent writers serialise at the database too.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

log = logging.getLogger("buddy.memory")

BUSY_TIMEOUT_S = 10.0


class StorageError(RuntimeError):
    """A read or write against the local store failed."""


class SQLiteStore:
    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        with self.connection() as conn:
            self._init_schema(conn)

    @property
    def db_path(self) -> str:
        return self._db_path

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        raise NotImplementedError

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._db_path,
            timeout=BUSY_TIMEOUT_S,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Autocommit connection, closed afterwards. sqlite3 errors → StorageError."""
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open {self._db_path}: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialised read-modify-write. Rolls back on any exception."""
        with self._lock, self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                if conn.in_transaction:
                    conn.rollback()
                raise
            conn.execute("COMMIT")
