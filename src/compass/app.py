import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import streamlit as st

from compass.orchestrator import build_coordinator
from compass.state import ConstraintCategory

logger = logging.getLogger("compass.app")


@st.cache_resource
def get_coordinator():
    """One coordinator per server process, shared across browser sessions."""
    return build_coordinator()


def _init_ui_state():
    if "initialized" not in st.session_state:
        st.session_state.initialized = True
        st.session_state.session_id = None
        st.session_state.messages = []  # [{"role": ..., "content": ...}]
        st.session_state.components = []  # Rendered components from the latest turn
        st.session_state.phase = None
        st.session_state.turn = 0
        st.session_state.email = None


def _render_component(component: dict) -> None:
    meta = component["metadata"]
    if component["type"] == "collect_email":
        with st.form(f"email_capture_{meta.get('turn')}"):
            st.markdown("**Want a copy of what we've uncovered so far?**")
            email = st.text_input("Email")
            if st.form_submit_button("Send it to me") and email:
                st.session_state.email = email
                logger.info("Email captured at turn %s", meta.get("turn"))
                st.success("Got it. I'll send your summary there.")
    elif component["type"] == "view_summary":
        with st.container(border=True):
            st.markdown(f"### {meta['headline']}")
            st.caption(meta["subheadline"])
            st.markdown("\n".join(f"- {s}" for s in meta["sections"]))
            st.button(meta["action_label"], key=f"view_summary_{meta['turns_total']}")
    elif component["type"] == "save_progress":
        with st.container(border=True):
            st.markdown(component["text"])


_init_ui_state()
coordinator = get_coordinator()

# --- Sidebar: intake ---
with st.sidebar:
    st.header("Compass")
    if st.session_state.session_id is None:
        with st.form("intake"):
            business = st.text_input("What does your business do?")
            stage = st.selectbox("Stage", ["idea", "early revenue", "growing", "established"])
            stated = st.selectbox(
                "What feels like the biggest problem?",
                ["not sure"] + [c.value for c in ConstraintCategory],
            )
            if st.form_submit_button("Start"):
                module0_context = {"business": business, "stage": stage}
                if stated != "not sure":
                    module0_context["stated_constraint"] = stated
                session_id = asyncio.run(coordinator.start_session(module0_context))
                record = asyncio.run(coordinator.get_session(session_id))
                st.session_state.session_id = session_id
                st.session_state.messages = list(record.messages)
                st.session_state.phase = record.state.phase.value
                st.rerun()
    else:
        st.metric("Turn", st.session_state.turn)
        st.caption(f"Phase: {st.session_state.phase}")
        if st.button("Start over", use_container_width=True):
            st.session_state.clear()
            st.rerun()

# --- Main Chat ---
st.title("Compass")

for msg in st.session_state.messages:
    with st.chat_message(msg["role"]):
        st.markdown(msg["content"])

for component in st.session_state.components:
    _render_component(component)

if st.session_state.session_id and (user_input := st.chat_input("Tell me about your business...")):
    with st.chat_message("user"):
        st.markdown(user_input)

    with st.chat_message("assistant"):
        with st.spinner("Thinking..."):
            result = asyncio.run(coordinator.process_turn(st.session_state.session_id, user_input))
        st.markdown(result["message"])

    if result["ok"]:
        st.session_state.messages.append({"role": "user", "content": user_input})
        st.session_state.messages.append({"role": "assistant", "content": result["message"]})
        st.session_state.components = result["components"]
        st.session_state.phase = result["phase"]
        st.session_state.turn = result["turn"]
        st.rerun()
    else:
        st.session_state.components = []
        st.error(result["message"])
