"""
tests/test_stores.py — SQLite short-term log store and long-term profile/diary store.
Run: pytest tests/test_stores.py -v
"""

from __future__ import annotations

import math
import threading

import pytest

from core.bandit import ThompsonSamplingBandit
from memory.long_term import LongTermMemory
from memory.models import DiaryEntry, InteractionLog, UserProfile
from memory.short_term import ShortTermMemory
from memory.sqlite_store import StorageError


def _log(ts: int, action: int = 0, score: float = 0.5, confidence: float = 1.0) -> InteractionLog:
    return InteractionLog(
        context_vector=(0.25,) * 80,
        action_index=action,
        action_intensity=0.5,
        reward_score=score,
        reward_confidence=confidence,
        timestamp=ts,
    )


def _diary(date: str = "2026-03-01", created_at: int = 1000) -> DiaryEntry:
    return DiaryEntry(
        date=date, total_interactions=2, top_action="HUMOR", top_success_rate=1.0,
        personality_changes="HUMOR:0.500,0.600", diary_text="text",
        profile_version_before=1, profile_version_after=2, created_at=created_at,
    )


# ════════════════════════════════════════════════════════════════════════════
# 1. SHORT-TERM LOGS
# ════════════════════════════════════════════════════════════════════════════

class TestShortTermMemory:
    def test_append_assigns_id(self, short_term):
        saved = short_term.append(_log(10))
        assert saved.id is not None
        assert short_term.pending_count() == 1
        assert len(short_term) == 1

    def test_pending_oldest_first_with_limit(self, short_term):
        for ts in (30, 10, 20):
            short_term.append(_log(ts))
        assert [e.timestamp for e in short_term.pending()] == [10, 20, 30]
        assert [e.timestamp for e in short_term.pending(limit=2)] == [10, 20]

    def test_round_trip_is_bit_exact(self, short_term):
        vector = tuple(i / 7 + 0.1 for i in range(80))
        saved = short_term.append(InteractionLog(
            context_vector=vector, action_index=6, action_intensity=1 / 3,
            reward_score=-(0.1 + 0.2), reward_confidence=5 / 6, timestamp=42,
        ))
        (loaded,) = short_term.pending()
        assert loaded == saved
        assert loaded.context_vector == vector

    def test_mark_then_delete(self, short_term):
        ids = [short_term.append(_log(ts)).id for ts in (1, 2, 3)]
        assert short_term.mark_consolidated(ids[:2]) == 2
        assert short_term.pending_count() == 1
        assert short_term.total_count() == 3
        assert short_term.delete_consolidated() == 2
        assert short_term.total_count() == 1

    def test_delete_is_idempotent(self, short_term):
        short_term.mark_consolidated([short_term.append(_log(1)).id])
        assert short_term.delete_consolidated() == 1
        assert short_term.delete_consolidated() == 0

    def test_mark_empty_is_noop(self, short_term):
        assert short_term.mark_consolidated([]) == 0

    def test_mark_large_batch(self, short_term):
        ids = [short_term.append(_log(ts)).id for ts in range(600)]
        assert short_term.mark_consolidated(ids) == 600
        assert short_term.pending_count() == 0

    def test_pending_cap_evicts_oldest(self, db_path):
        stm = ShortTermMemory(db_path, max_pending_logs=3)
        for ts in (1, 2, 3, 4, 5):
            stm.append(_log(ts))
        assert [e.timestamp for e in stm.pending()] == [3, 4, 5]

    def test_cap_ignores_consolidated_rows(self, db_path):
        stm = ShortTermMemory(db_path, max_pending_logs=2)
        first = stm.append(_log(1))
        stm.mark_consolidated([first.id])
        stm.append(_log(2))
        stm.append(_log(3))
        assert stm.pending_count() == 2
        assert stm.total_count() == 3

    def test_no_cap(self, db_path):
        stm = ShortTermMemory(db_path, max_pending_logs=None)
        for ts in range(20):
            stm.append(_log(ts))
        assert stm.evict_overflow() == 0
        assert stm.pending_count() == 20

    def test_recent_newest_first(self, short_term):
        for ts in (1, 3, 2):
            short_term.append(_log(ts))
        assert [e.timestamp for e in short_term.recent(2)] == [3, 2]

    def test_from_config(self, tmp_config):
        tmp_config.set("memory", "max_pending_logs", "7")
        stm = ShortTermMemory.from_config(tmp_config)
        assert stm.max_pending_logs == 7
        assert stm.db_path == tmp_config.get("memory", "sqlite_file")

    def test_unopenable_path_raises_storage_error(self, tmp_path):
        # A directory cannot be opened as a database file
        with pytest.raises(StorageError):
            ShortTermMemory(tmp_path)


# ════════════════════════════════════════════════════════════════════════════
# 2. LONG-TERM PROFILE
# ════════════════════════════════════════════════════════════════════════════

class TestProfile:
    def test_default_profile_created_on_first_read(self, long_term):
        profile = long_term.get_profile()
        assert profile.user_id == "default"
        assert profile.version == 1
        assert profile.alpha == (1.0,) * 8
        assert long_term.get_profile() == profile

    def test_save_and_load_bit_exact(self, long_term):
        profile = UserProfile(alpha=tuple(1 + i / 3 for i in range(8)), version=3)
        long_term.save_profile(profile)
        assert long_term.get_profile() == profile

    def test_update_returns_before_and_after(self, long_term, bandit):
        before, after = long_term.update_profile(lambda p: bandit.update_from_reward(p, 1, 0.5))
        assert before.alpha[1] == 1.0
        assert after.alpha[1] == pytest.approx(1.5)
        assert long_term.get_profile() == after

    def test_failed_update_writes_nothing(self, long_term):
        long_term.get_profile()

        def boom(profile):
            raise RuntimeError("no")

        with pytest.raises(RuntimeError):
            long_term.update_profile(boom)
        assert long_term.get_profile().total_interactions == 0

    def test_then_hook_commits_with_the_profile(self, long_term, bandit):
        seen = []

        def then(conn, before, after):
            seen.append((before.alpha[2], after.alpha[2]))
            long_term.save_diary(_diary(created_at=5), conn=conn)

        long_term.update_profile(lambda p: bandit.update_from_reward(p, 2, 1.0), then=then)
        assert seen == [(1.0, pytest.approx(2.0))]
        assert long_term.diary_count() == 1

    def test_then_hook_failure_rolls_back_profile_and_its_writes(self, long_term, bandit):
        long_term.get_profile()

        def then(conn, before, after):
            long_term.save_diary(_diary(created_at=5), conn=conn)
            raise RuntimeError("late failure")

        with pytest.raises(RuntimeError):
            long_term.update_profile(lambda p: bandit.update_from_reward(p, 2, 1.0), then=then)
        assert long_term.get_profile().alpha[2] == 1.0
        assert long_term.diary_count() == 0

    def test_update_cannot_change_user(self, long_term):
        with pytest.raises(ValueError):
            long_term.update_profile(lambda p: UserProfile(user_id="someone-else"))

    def test_corrupt_row_clamped_on_read(self, long_term):
        long_term.save_profile(UserProfile(alpha=(math.nan, -1.0), beta=(math.inf,)))
        profile = long_term.get_profile()
        assert len(profile.alpha) == 8
        assert all(v >= 0.01 for v in profile.alpha + profile.beta)
        assert all(a + b <= 100.0 + 1e-9 for a, b in zip(profile.alpha, profile.beta))

    def test_concurrent_updates_are_not_lost(self, db_path):
        bandit = ThompsonSamplingBandit.seeded(0)
        stores = [LongTermMemory(db_path), LongTermMemory(db_path)]

        def worker(store, action):
            for _ in range(25):
                store.update_profile(lambda p: bandit.update_from_reward(p, action, 0.1))

        threads = [threading.Thread(target=worker, args=(stores[i % 2], i)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        profile = stores[0].get_profile()
        assert profile.total_interactions == 100
        for action in range(4):
            assert profile.alpha[action] == pytest.approx(1.0 + 25 * 0.1)

    def test_profiles_are_per_user(self, db_path):
        store = LongTermMemory(db_path, user_id="alice")
        store.get_profile()
        store.save_profile(UserProfile(user_id="bob", version=9))
        assert store.get_profile().version == 1
        assert store.get_profile("bob").version == 9


# ════════════════════════════════════════════════════════════════════════════
# 3. DIARY
# ════════════════════════════════════════════════════════════════════════════

class TestDiary:
    def test_save_assigns_id(self, long_term):
        saved = long_term.save_diary(_diary())
        assert saved.id is not None
        assert long_term.diary_by_id(saved.id) == saved

    def test_recent_newest_first(self, long_term):
        for i, date in enumerate(["2026-03-01", "2026-03-02", "2026-03-03"]):
            long_term.save_diary(_diary(date, created_at=1000 + i))
        assert [e.date for e in long_term.recent_diary(2)] == ["2026-03-03", "2026-03-02"]
        assert long_term.diary_count() == 3

    def test_by_date_returns_latest_of_day(self, long_term):
        long_term.save_diary(_diary("2026-03-01", created_at=1))
        latest = long_term.save_diary(_diary("2026-03-01", created_at=2))
        assert long_term.diary_by_date("2026-03-01") == latest
        assert long_term.diary_by_date("1999-01-01") is None

    def test_delete_older_than(self, long_term):
        long_term.save_diary(_diary(created_at=100))
        long_term.save_diary(_diary(created_at=200))
        keep = long_term.save_diary(_diary(created_at=300))
        assert long_term.delete_diary_older_than(250) == 2
        assert long_term.recent_diary() == [keep]

    def test_missing_id(self, long_term):
        assert long_term.diary_by_id(12345) is None
