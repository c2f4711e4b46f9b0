"""
dashboard.py
────────────
Read-only view of what Buddy has learned: personality, recent observations,
diary and audit trail.
Run with: streamlit run dashboard.py
"""

import configparser
import time
from pathlib import Path

import pandas as pd
import streamlit as st

from core.actions import ReactionType
from core.logger import AuditLog
from memory.long_term import LongTermMemory
from memory.short_term import ShortTermMemory

st.set_page_config(page_title="Buddy Dashboard", page_icon="🧸", layout="wide")

# ─── Config ───
CONFIG_PATH = Path(__file__).resolve().parent / "config" / "buddy.ini"
config = configparser.ConfigParser()
config.read(CONFIG_PATH, encoding="utf-8")

db_path = Path(config.get("memory", "sqlite_file", fallback="data/buddy.db"))
audit_path = Path(config.get("logging", "audit_file", fallback="logs/audit.jsonl"))

# ─── Sidebar ───
st.sidebar.title("🧸 Buddy")
st.sidebar.markdown("---")
refresh_s = st.sidebar.slider("Refresh every (s)", 2, 60, 5)
diary_limit = st.sidebar.number_input("Diary entries", 1, 90, 14)

if not db_path.exists():
    st.error(f"No database found at {db_path}")
    st.stop()


@st.cache_resource
def stores(path: str):
    return ShortTermMemory(path, max_pending_logs=None), LongTermMemory(path)


@st.cache_data(ttl=5)
def load_audit(path: str, limit: int = 200) -> list:
    return AuditLog(path).tail(limit) if Path(path).exists() else []


short_term, long_term = stores(str(db_path))
profile = long_term.get_profile()

# ─── Personality ───
st.subheader("🎭 Personality")
m1, m2, m3 = st.columns(3)
m1.metric("Profile version", profile.version)
m2.metric("Interactions", profile.total_interactions)
m3.metric("Consolidations", profile.total_consolidations)

df_profile = pd.DataFrame({
    "reaction": [t.label for t in ReactionType],
    "alpha": profile.alpha,
    "beta": profile.beta,
    "expectation": profile.expectations(),
}).set_index("reaction")

col1, col2 = st.columns([2, 1])
with col1:
    st.bar_chart(df_profile["expectation"])
with col2:
    st.dataframe(df_profile.round(3), use_container_width=True)

# ─── Observations ───
st.subheader("👀 Recent observations")
st.caption(f"{short_term.pending_count()} pending consolidation")
recent = short_term.recent(50)
if recent:
    df_logs = pd.DataFrame([{
        "time": pd.to_datetime(e.timestamp, unit="ms"),
        "reaction": e.action.label,
        "intensity": e.action_intensity,
        "reward": e.reward_score,
        "confidence": e.reward_confidence,
        "consolidated": e.consolidated,
    } for e in recent])
    st.dataframe(df_logs, use_container_width=True)
    st.line_chart(df_logs.set_index("time")["reward"].sort_index())
else:
    st.write("No observations yet.")

# ─── Diary ───
st.subheader("📔 Diary")
entries = long_term.recent_diary(int(diary_limit))
if not entries:
    st.write("No diary entries yet.")
for entry in entries:
    title = f"{entry.date} · {entry.total_interactions} interactions · v{entry.profile_version_after}"
    with st.expander(title, expanded=entry is entries[0]):
        st.text(entry.diary_text)

# ─── Audit ───
st.subheader("🛡️ Audit trail")
events = load_audit(str(audit_path))
if events:
    df_audit = pd.DataFrame(
        [{"seq": e.get("seq"), "ts": e.get("ts"), "event": e.get("event")} for e in events]
    )
    st.dataframe(df_audit.tail(20).iloc[::-1], use_container_width=True)
else:
    st.write("Audit log is empty.")

# Auto-refresh
time.sleep(refresh_s)
st.rerun()
