import streamlit as st
import altair as alt
from dashboard.shared import STATE_DIR, load_audit_logs, load_checkpoints

st.set_page_config(page_title="Audit Log", page_icon="📋", layout="wide")
st.title("Audit Log 📋")

limit = st.slider("Entries", min_value=50, max_value=5000, value=500, step=50)
audit_df = load_audit_logs(STATE_DIR, limit=limit)

if audit_df.empty:
    st.warning(f"No audit entries found in {STATE_DIR}. Have you run any sessions?")
    st.stop()

col1, col2 = st.columns(2)

with col1:
    st.subheader("Outcomes by Status")
    counts = audit_df.groupby(["action", "status"]).size().reset_index(name="count")
    chart = alt.Chart(counts).mark_bar().encode(
        x=alt.X("action", title="Action"),
        y=alt.Y("count", title="Entries"),
        color="status",
        tooltip=["action", "status", "count"],
    ).properties(title="Actions and their outcomes")
    st.altair_chart(chart, use_container_width=True)

with col2:
    st.subheader("Activity Over Time")
    timeline = alt.Chart(audit_df).mark_circle(size=60).encode(
        x="timestamp:T",
        y="action:N",
        color="status:N",
        tooltip=["id", "file_path", "action", "status"],
    )
    st.altair_chart(timeline, use_container_width=True)

st.divider()

st.subheader("Entries")
statuses = st.multiselect("Status", sorted(audit_df["status"].unique()), default=[])
path_filter = st.text_input("Path contains", value="")

filtered = audit_df
if statuses:
    filtered = filtered[filtered["status"].isin(statuses)]
if path_filter:
    filtered = filtered[filtered["file_path"].str.contains(path_filter, regex=False)]

st.dataframe(
    filtered[["id", "timestamp", "action", "file_path", "status", "detail"]],
    use_container_width=True,
)

if not filtered.empty:
    entry_id = st.selectbox("Show output of entry", filtered["id"].tolist())
    row = filtered[filtered["id"] == entry_id].iloc[0]
    st.code(row["output"] or "(no output)", language="text")

st.divider()

st.subheader("Checkpoints")
checkpoints_df = load_checkpoints(STATE_DIR)
if checkpoints_df.empty:
    st.info("No checkpoints saved.")
else:
    st.dataframe(checkpoints_df, use_container_width=True)
