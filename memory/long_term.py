"""
Long-term memory persistence using SQLite.
Stores the user profile (the bandit's personality state) and the AI diary.
"""

import logging
import sqlite3
from typing import Callable, List, Optional, Tuple

from memory.models import DEFAULT_USER_ID, DiaryEntry, UserProfile
from memory.sqlite_store import SQLiteStore

log = logging.getLogger("buddy.memory.long_term")

ProfileUpdate = Callable[[UserProfile], UserProfile]
# Runs inside the profile transaction with (conn, before, after)
SameTransaction = Callable[[sqlite3.Connection, UserProfile, UserProfile], None]


class LongTermMemory(SQLiteStore):
    """Owns the single profile row per user and the diary history."""

    def __init__(self, db_path: str, user_id: str = DEFAULT_USER_ID):
        """
        Initialize long-term memory.

        Args:
            db_path: Path to SQLite database file (shared with ShortTermMemory).
            user_id: Profile identity; "default" on single-user devices.
        """
        self.user_id = user_id
        super().__init__(db_path)

    @classmethod
    def from_config(cls, config) -> "LongTermMemory":
        return cls(
            config.get("memory", "sqlite_file", fallback="data/buddy.db"),
            user_id=config.get("memory", "user_id", fallback=DEFAULT_USER_ID),
        )

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_profiles (
                user_id               TEXT PRIMARY KEY,
                version               INTEGER NOT NULL,
                created_at            INTEGER NOT NULL,
                updated_at            INTEGER NOT NULL,
                alpha                 TEXT    NOT NULL,
                beta                  TEXT    NOT NULL,
                context_bias          TEXT    NOT NULL,
                total_interactions    INTEGER NOT NULL DEFAULT 0,
                total_consolidations  INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS ai_diary_entries (
                id                      INTEGER PRIMARY KEY AUTOINCREMENT,
                date                    TEXT    NOT NULL,
                created_at              INTEGER NOT NULL,
                total_interactions      INTEGER NOT NULL,
                top_action              TEXT    NOT NULL,
                top_success_rate        REAL    NOT NULL,
                worst_action            TEXT,
                worst_success_rate      REAL    NOT NULL DEFAULT 0,
                personality_changes     TEXT    NOT NULL,
                diary_text              TEXT    NOT NULL,
                profile_version_before  INTEGER NOT NULL,
                profile_version_after   INTEGER NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_diary_date ON ai_diary_entries(date)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_diary_created ON ai_diary_entries(created_at)")

    # === PROFILE ===

    def get_profile(self, user_id: Optional[str] = None) -> UserProfile:
        """
        Load the profile, creating the default one on first use.

        Corrupt numeric state is clamped to the documented floors on read.
        """
        user_id = user_id or self.user_id
        with self.transaction() as conn:
            profile = self._read_profile(conn, user_id)
            if profile is None:
                profile = UserProfile(user_id=user_id)
                self._write_profile(conn, profile)
                log.info(f"Created default profile for '{user_id}'")
        return profile

    def save_profile(self, profile: UserProfile) -> None:
        """Blind upsert. Prefer update_profile() for read-modify-write."""
        with self.transaction() as conn:
            self._write_profile(conn, profile)

    def update_profile(
        self,
        fn: ProfileUpdate,
        user_id: Optional[str] = None,
        then: Optional[SameTransaction] = None,
    ) -> Tuple[UserProfile, UserProfile]:
        """
        Atomic read → fn(profile) → write. Returns (before, after).

        The real-time learning path and the consolidation job both go
        through here, so neither can overwrite the other's update.
        `then` runs on the same connection before COMMIT; if it raises,
        the profile write is rolled back with everything it wrote.
        """
        user_id = user_id or self.user_id
        with self.transaction() as conn:
            before = self._read_profile(conn, user_id) or UserProfile(user_id=user_id)
            after = fn(before)
            if after.user_id != user_id:
                raise ValueError(f"profile update changed user_id {user_id!r} → {after.user_id!r}")
            self._write_profile(conn, after)
            if then is not None:
                then(conn, before, after)
        return before, after

    def _read_profile(self, conn: sqlite3.Connection, user_id: str) -> Optional[UserProfile]:
        row = conn.execute(
            "SELECT * FROM user_profiles WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None:
            return None
        return UserProfile.from_row(row).sanitized()

    def _write_profile(self, conn: sqlite3.Connection, profile: UserProfile) -> None:
        row = profile.to_row()
        conn.execute("""
            INSERT INTO user_profiles (
                user_id, version, created_at, updated_at, alpha, beta,
                context_bias, total_interactions, total_consolidations
            ) VALUES (
                :user_id, :version, :created_at, :updated_at, :alpha, :beta,
                :context_bias, :total_interactions, :total_consolidations
            )
            ON CONFLICT(user_id) DO UPDATE SET
                version              = excluded.version,
                updated_at           = excluded.updated_at,
                alpha                = excluded.alpha,
                beta                 = excluded.beta,
                context_bias         = excluded.context_bias,
                total_interactions   = excluded.total_interactions,
                total_consolidations = excluded.total_consolidations
        """, row)

    # === DIARY ===

    def save_diary(self, entry: DiaryEntry, conn: Optional[sqlite3.Connection] = None) -> DiaryEntry:
        """Insert a diary entry. Returns it with its row id. Pass `conn` to join an open transaction."""
        if conn is None:
            with self.connection() as own:
                return self.save_diary(entry, conn=own)
        row = entry.to_row()
        row.pop("id")
        cur = conn.execute("""
            INSERT INTO ai_diary_entries (
                date, created_at, total_interactions, top_action, top_success_rate,
                worst_action, worst_success_rate, personality_changes, diary_text,
                profile_version_before, profile_version_after
            ) VALUES (
                :date, :created_at, :total_interactions, :top_action, :top_success_rate,
                :worst_action, :worst_success_rate, :personality_changes, :diary_text,
                :profile_version_before, :profile_version_after
            )
        """, row)
        return DiaryEntry.from_row({**row, "id": int(cur.lastrowid)})

    def recent_diary(self, limit: int = 30) -> List[DiaryEntry]:
        """Newest first."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM ai_diary_entries ORDER BY created_at DESC, id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [DiaryEntry.from_row(r) for r in rows]

    def diary_by_date(self, date: str) -> Optional[DiaryEntry]:
        """Latest entry written on `date` ("YYYY-MM-DD")."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM ai_diary_entries WHERE date = ? ORDER BY created_at DESC, id DESC LIMIT 1",
                (date,),
            ).fetchone()
        return DiaryEntry.from_row(row) if row else None

    def diary_by_id(self, entry_id: int) -> Optional[DiaryEntry]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM ai_diary_entries WHERE id = ?", (int(entry_id),)
            ).fetchone()
        return DiaryEntry.from_row(row) if row else None

    def diary_count(self) -> int:
        with self.connection() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM ai_diary_entries").fetchone()[0])

    def delete_diary_older_than(self, cutoff_ms: int) -> int:
        """Prune entries created before cutoff_ms. Returns the number removed."""
        with self.connection() as conn:
            cur = conn.execute(
                "DELETE FROM ai_diary_entries WHERE created_at < ?", (int(cutoff_ms),)
            )
            return cur.rowcount
