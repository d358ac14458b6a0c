import streamlit as st
from dashboard.shared import STATE_DIR, list_ledgers, parse_ledger

st.set_page_config(page_title="Session Inspector", page_icon="📜", layout="wide")
st.title("Session Inspector 📜")

ledgers = list_ledgers(STATE_DIR)

if not ledgers:
    st.info(f"No ledgers found under {STATE_DIR / 'ledgers'}.")
    st.stop()

selected_ledger = st.selectbox(
    "Select Session Ledger",
    ledgers,
    format_func=lambda p: f"{p.name} ({p.stat().st_size} bytes)",
)

entries = parse_ledger(selected_ledger)
if not entries:
    st.warning("Ledger file is empty.")
    st.stop()

# --- High Level Summary ---
dispatches = [e for e in entries if e["entry_type"] == "dispatch"]
nudges = [e for e in entries if e["entry_type"] == "nudge"]
completion = next((e for e in reversed(entries) if e["entry_type"] == "completion"), None)
start = next((e for e in entries if e["entry_type"] == "start"), None)

if start:
    st.markdown(f"**Target:** `{start['data'].get('target_path')}` · **Model:** `{start['data'].get('model')}`")
    st.caption(start["data"].get("vulnerability", ""))

col1, col2, col3, col4 = st.columns(4)
col1.metric("Status", completion["data"]["status"] if completion else "incomplete")
col2.metric("Steps", completion["data"]["total_steps"] if completion else max(e["step_index"] for e in entries))
col3.metric("Dispatches", len(dispatches), delta=f"-{sum(1 for d in dispatches if not d['data']['ok'])} failed", delta_color="off")
col4.metric("Nudges", len(nudges))

if completion:
    st.markdown(f"**Completion reason:** {completion['data'].get('reason')}")
    if completion["data"].get("fatal_error"):
        st.error(completion["data"]["fatal_error"])

# --- Timeline View ---
st.subheader("Timeline")
show_messages = st.checkbox("Show transcript messages", value=True)

for entry in entries:
    evt_type = entry["entry_type"]
    data = entry["data"]
    if evt_type == "message" and not show_messages:
        continue

    if evt_type == "dispatch":
        color = "green" if data["ok"] else "red"
        label = f"Step {entry['step_index']}: {data['tool']} :{color}[{data['kind']}]"
    elif evt_type == "message":
        label = f"Step {entry['step_index']}: {data['role'].upper()} message"
    else:
        label = f"Step {entry['step_index']}: {evt_type.upper()}"

    with st.expander(label, expanded=(evt_type in ("nudge", "completion"))):
        if evt_type == "dispatch":
            st.markdown(f"**Path:** `{data.get('path')}`")
            st.code(data.get("arguments", ""), language="json")
        elif evt_type == "message":
            if data.get("content"):
                st.code(data["content"], language="text")
            for call in data.get("tool_calls") or []:
                st.markdown(f"→ `{call['function']['name']}`")
        elif evt_type == "nudge":
            st.markdown(f"**Guard:** `{data['guard']}`")
            st.write(data["text"])
        else:
            st.json(data)
