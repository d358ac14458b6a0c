import streamlit as st
import sys
from pathlib import Path

# Add project root to path so the pages can import dashboard.shared
sys.path.insert(0, str(Path(__file__).parent.parent))

from dashboard.shared import STATE_DIR, audit_db_path, list_ledgers  # noqa: E402

st.set_page_config(
    page_title="Patch Warden Dashboard",
    page_icon="🛡️",
    layout="wide",
)

st.title("Patch Warden Dashboard 🛡️")

st.markdown("""
Operator view of supervised remediation sessions.

**Navigation:**

- **📋 Audit Log**: Every write, command, read and proposal, with status breakdowns.
- **📜 Session Inspector**: Replay a session ledger turn by turn (messages, dispatches, nudges).

---
""")

st.subheader("State")
db_path = audit_db_path(STATE_DIR)
col1, col2 = st.columns(2)
col1.metric("Audit database", "present" if db_path.exists() else "missing")
col2.metric("Session ledgers", len(list_ledgers(STATE_DIR)))
st.caption(f"State dir: `{STATE_DIR.resolve()}` (set WARDEN_STATE_DIR to change)")

st.info("Select a page from the sidebar to get started.")
