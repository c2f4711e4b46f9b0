"""
memory/short_term.py
═════════════════════
Short-term memory: buffer of interaction observations awaiting consolidation.

Rows are appended after every react-and-evaluate cycle, read oldest-first by
the consolidation job, flagged consolidated, then deleted. Pending rows are
capped (max_pending_logs) so a device that never meets the consolidation
preconditions cannot grow the buffer without bound; the oldest pending rows
are evicted first.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Iterable, Optional

from memory.models import InteractionLog
from memory.sqlite_store import SQLiteStore

log = logging.getLogger("buddy.memory.short_term")

DEFAULT_BATCH_LIMIT = 1000
DEFAULT_MAX_PENDING = 5000


class ShortTermMemory(SQLiteStore):
    """
    Usage:
        stm = ShortTermMemory("data/buddy.db")
        stm.append(InteractionLog(...))
        batch = stm.pending(limit=1000)
        stm.mark_consolidated([l.id for l in batch])
        stm.delete_consolidated()
    """

    def __init__(self, db_path: str, max_pending_logs: Optional[int] = DEFAULT_MAX_PENDING) -> None:
        self.max_pending_logs = max_pending_logs if max_pending_logs and max_pending_logs > 0 else None
        super().__init__(db_path)

    @classmethod
    def from_config(cls, config) -> "ShortTermMemory":
        return cls(
            config.get("memory", "sqlite_file", fallback="data/buddy.db"),
            max_pending_logs=config.getint("memory", "max_pending_logs", fallback=DEFAULT_MAX_PENDING),
        )

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS interaction_logs (
                id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp          INTEGER NOT NULL,
                context_vector     TEXT    NOT NULL DEFAULT '',
                action_index       INTEGER NOT NULL,
                action_intensity   REAL    NOT NULL,
                reward_score       REAL    NOT NULL,
                reward_confidence  REAL    NOT NULL,
                consolidated       INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_logs_pending ON interaction_logs(consolidated, timestamp)"
        )

    # ── Write ─────────────────────────────────────────────────────────────────

    def append(self, entry: InteractionLog) -> InteractionLog:
        """Insert one observation. Returns it with its row id."""
        row = entry.to_row()
        with self.connection() as conn:
            cur = conn.execute("""
                INSERT INTO interaction_logs (
                    timestamp, context_vector, action_index, action_intensity,
                    reward_score, reward_confidence, consolidated
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                row["timestamp"], row["context_vector"], row["action_index"],
                row["action_intensity"], row["reward_score"], row["reward_confidence"],
                row["consolidated"],
            ))
            new_id = int(cur.lastrowid)
        self.evict_overflow()
        return InteractionLog.from_row({**row, "id": new_id})

    def mark_consolidated(self, ids: Iterable[int], conn: Optional[sqlite3.Connection] = None) -> int:
        """Flag rows consumed. Pass `conn` to join an open transaction."""
        id_list = [int(i) for i in ids]
        if not id_list:
            return 0
        if conn is None:
            with self.transaction() as own:
                return self.mark_consolidated(id_list, conn=own)
        marked = 0
        # Chunked to stay under SQLite's bound-parameter limit
        for start in range(0, len(id_list), 500):
            chunk = id_list[start:start + 500]
            placeholders = ",".join("?" * len(chunk))
            cur = conn.execute(
                f"UPDATE interaction_logs SET consolidated = 1 WHERE id IN ({placeholders})",
                chunk,
            )
            marked += cur.rowcount
        return marked

    def delete_consolidated(self) -> int:
        """Idempotent: deletes whatever is flagged, 0 on a second call."""
        with self.connection() as conn:
            cur = conn.execute("DELETE FROM interaction_logs WHERE consolidated = 1")
            return cur.rowcount

    def evict_overflow(self) -> int:
        """Drop the oldest pending rows beyond max_pending_logs."""
        if self.max_pending_logs is None:
            return 0
        with self.transaction() as conn:
            cur = conn.execute("""
                DELETE FROM interaction_logs
                WHERE id IN (
                    SELECT id FROM interaction_logs
                    WHERE consolidated = 0
                    ORDER BY timestamp DESC, id DESC
                    LIMIT -1 OFFSET ?
                )
            """, (self.max_pending_logs,))
            evicted = cur.rowcount
        if evicted:
            log.warning(f"Pending log buffer full, evicted {evicted} oldest observation(s)")
        return evicted

    # ── Read ──────────────────────────────────────────────────────────────────

    def pending(self, limit: int = DEFAULT_BATCH_LIMIT) -> list[InteractionLog]:
        """Oldest-first unconsolidated observations, at most `limit`."""
        with self.connection() as conn:
            rows = conn.execute("""
                SELECT * FROM interaction_logs
                WHERE consolidated = 0
                ORDER BY timestamp ASC, id ASC
                LIMIT ?
            """, (int(limit),)).fetchall()
        return [InteractionLog.from_row(r) for r in rows]

    def recent(self, limit: int = 50) -> list[InteractionLog]:
        """Newest-first observations regardless of status (dashboard, CLI)."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM interaction_logs ORDER BY timestamp DESC, id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [InteractionLog.from_row(r) for r in rows]

    def pending_count(self) -> int:
        with self.connection() as conn:
            return int(conn.execute(
                "SELECT COUNT(*) FROM interaction_logs WHERE consolidated = 0"
            ).fetchone()[0])

    def total_count(self) -> int:
        with self.connection() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM interaction_logs").fetchone()[0])

    def __len__(self) -> int:
        return self.pending_count()
