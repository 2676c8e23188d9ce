from dataclasses import asdict

import pandas as pd
import streamlit as st
from streamlit_autorefresh import st_autorefresh

from config import DB_URL, TICK_INTERVAL_MS, configure_logging
from export import NOTHING_TO_EXPORT, export_csv
from monitor import MonitorState, TickOrchestrator, fmt_time, snapshot
from risk_engine import PERSISTED_KEYS, PRIORITY_CRITICAL, RuleBook
from storage import init_db, load_rules, load_theme, save_rules, save_theme

st.set_page_config(page_title="VitalStream", layout="wide")
configure_logging()

RULE_LABELS = {
    "hr_high": "HR high (bpm)",
    "hr_critical": "HR critical (bpm)",
    "spo2_low": "SpO₂ low (%)",
    "spo2_critical": "SpO₂ critical (%)",
    "temp_high": "Temp high (°F)",
    "temp_critical": "Temp critical (°F)",
}

DARK_CSS = """
<style>
  .stApp { background-color: #0e1117; color: #e6e6e6; }
  [data-testid="stSidebar"] { background-color: #161a23; }
</style>
"""


@st.cache_resource
def get_session_factory():
    return init_db(DB_URL)


Session = get_session_factory()

# ---- Session state init ----
if "monitor" not in st.session_state:
    st.session_state.monitor = MonitorState(rules=RuleBook(load_rules(Session)))
if "ticker" not in st.session_state:
    st.session_state.ticker = TickOrchestrator(st.session_state.monitor, interval_ms=TICK_INTERVAL_MS)
if "theme" not in st.session_state:
    st.session_state.theme = load_theme(Session)

monitor: MonitorState = st.session_state.monitor
ticker: TickOrchestrator = st.session_state.ticker


def _sync_rule_inputs():
    for name, value in asdict(monitor.rules.active).items():
        st.session_state[f"rule_{name}"] = float(value)


def _on_rule_change(name: str):
    monitor.rules.set_threshold(name, st.session_state[f"rule_{name}"])


def _on_undo():
    if monitor.rules.undo():
        _sync_rule_inputs()
        st.toast("Rule change undone.")
    else:
        st.toast("Nothing to undo.")


def _on_save_rules():
    save_rules(Session, monitor.rules.active)
    st.toast("Rules saved.")


def _on_live_toggle():
    if st.session_state.live:
        ticker.start()
    else:
        ticker.stop()


def _on_inject(pid: str):
    monitor.inject_event(pid)
    st.toast(f"Simulated event injected for {pid} (25 s).")


def _on_theme_toggle():
    st.session_state.theme = save_theme(Session, "light" if st.session_state.theme == "dark" else "dark")


if "rule_hr_high" not in st.session_state:
    _sync_rule_inputs()

# ---- Sidebar controls ----
st.sidebar.title("Controls")

patient_ids = monitor.patient_ids()
patient_id = st.sidebar.selectbox(
    "Select patient",
    patient_ids,
    format_func=lambda pid: monitor.patient(pid).label,
)

st.sidebar.toggle("Live monitoring", value=ticker.running, key="live", on_change=_on_live_toggle)
st.sidebar.button("Inject event", on_click=_on_inject, args=(patient_id,), use_container_width=True)

st.sidebar.subheader("Alert rules")
for name in PERSISTED_KEYS:
    st.sidebar.number_input(
        RULE_LABELS[name],
        key=f"rule_{name}",
        step=1.0 if not name.startswith("temp") else 0.1,
        on_change=_on_rule_change,
        args=(name,),
    )

c_undo, c_save = st.sidebar.columns(2)
c_undo.button("Undo", on_click=_on_undo, use_container_width=True)
c_save.button("Save rules", on_click=_on_save_rules, use_container_width=True)

st.sidebar.divider()
st.sidebar.button(
    "☀️ Light" if st.session_state.theme == "dark" else "🌙 Dark",
    on_click=_on_theme_toggle,
)

if not monitor.run_log:
    if st.sidebar.button("Export CSV"):
        st.sidebar.info(NOTHING_TO_EXPORT)
else:
    csv = export_csv(monitor.run_log)
    st.sidebar.download_button("Export CSV", data=csv.content, file_name=csv.filename, mime="text/csv")

# Auto refresh loop; twice per period so a due tick is never late by a whole period
if ticker.running:
    st_autorefresh(interval=max(100, ticker.interval_ms // 2), key="vs_refresh")
    ticker.poll()

# ---- UI ----
if st.session_state.theme == "dark":
    st.markdown(DARK_CSS, unsafe_allow_html=True)

view = snapshot(monitor, patient_id)

st.title("VitalStream")

colA, colB, colC = st.columns([2, 1, 1])
with colA:
    st.subheader(f"{view['patient_id']} — {view['label']}")
    st.caption(f"Status: {ticker.status.value} • Tick #{view['tick']}"
               + (f" • last {fmt_time(view['last_tick_ms'])}" if view["last_tick_ms"] else ""))
with colB:
    st.metric("Retained alerts", len(monitor.alerts))
with colC:
    if view["event_active"]:
        st.error(f"🚨 Simulated event — {view['event_remaining_s']} s left")
    else:
        st.success("No active event")

# Vitals
c1, c2, c3 = st.columns(3)
c1.metric("Heart rate (bpm)", view["latest"]["hr"])
c2.metric("SpO₂ (%)", view["latest"]["spo2"])
c3.metric("Temp (°F)", view["latest"]["temp"])

# Charts
g1, g2, g3 = st.columns(3)
for col, key, title in ((g1, "hr", "HR"), (g2, "spo2", "SpO₂"), (g3, "temp", "Temp")):
    with col:
        st.caption(f"{title} (last {len(view['series'][key])} samples)")
        if view["series"][key]:
            st.line_chart(pd.DataFrame({title: view["series"][key]}), height=180)
        else:
            st.info("No samples yet.")

left, right = st.columns([1.4, 1])
with left:
    st.subheader("Alert feed (top 12)")
    if view["alerts"]:
        df_alerts = pd.DataFrame([{
            "level": "CRITICAL" if a["priority"] == PRIORITY_CRITICAL else "warning",
            "time": fmt_time(a["ts"]),
            "patient": a["patient_id"],
            "type": a["type"],
            "message": a["msg"],
        } for a in view["alerts"]])
        st.dataframe(df_alerts, use_container_width=True, hide_index=True)
    else:
        st.info("No alerts in the last 2 minutes.")

with right:
    st.subheader("Accuracy (simulated)")
    m1, m2, m3 = st.columns(3)
    m1.metric("Alerts", view["metrics"]["total_alerts"])
    m2.metric("True +", view["metrics"]["true_positives"])
    m3.metric("False +", view["metrics"]["false_positives"])
    st.caption(f"Run log rows: {len(monitor.run_log)}")
