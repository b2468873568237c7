"""
Extension Preview - Streamlit Application

Paste or upload a generated browser-extension bundle (or a generation-proxy
response), preview it in the sandbox, rebuild it with edits, and inspect
capability traffic and the assembled entry documents.
"""

import json
import uuid

import streamlit as st
import streamlit.components.v1 as components

from src.config import ConfigError, get_config
from src.logging_config import configure_logging
from src.orchestrator import apply_proxy_response
from src.sandbox.preview import (
    get_preview_documents,
    get_preview_resources,
    get_preview_status,
    get_viewer_url,
    inspect_preview,
    send_preview_message,
    stop_preview,
)
from src.sandbox.registry import get_session_preview


# Page configuration
st.set_page_config(
    page_title="Extension Preview",
    page_icon="🧩",
    layout="wide",
)

st.markdown("""
<style>
    .main-header {
        font-size: 2.5rem;
        font-weight: 700;
        color: #1E88E5;
        margin-bottom: 0.5rem;
    }
    .sub-header {
        font-size: 1.1rem;
        color: #666;
        margin-bottom: 2rem;
    }
</style>
""", unsafe_allow_html=True)


SAMPLE_BUNDLE = {
    "phase": "generate",
    "files": [
        {
            "path": "manifest.json",
            "content": json.dumps(
                {
                    "manifest_version": 3,
                    "name": "Hello Preview",
                    "version": "1.0.0",
                    "description": "A minimal popup",
                    "action": {"default_popup": "popup.html"},
                },
                indent=2,
            ),
        },
        {
            "path": "popup.html",
            "content": '<!DOCTYPE html><html><head><title>Hello</title></head>'
                       '<body><button id="go" data-action="sayHello">Hello</button>'
                       '<div id="result"></div><script src="popup.js"></script></body></html>',
        },
        {
            "path": "popup.js",
            "content": "function sayHello() { document.getElementById('result').textContent = 'Hi!'; }\n"
                       "chrome.runtime.onMessage.addListener(function (message, sender, respond) {\n"
                       "  respond({ pong: true, received: message });\n"
                       "});",
        },
    ],
    "notes": [],
}


def init_session_state():
    """Initialize session state variables."""
    if "session_id" not in st.session_state:
        st.session_state.session_id = str(uuid.uuid4())
    if "last_outcome" not in st.session_state:
        st.session_state.last_outcome = None
    if "last_message_result" not in st.session_state:
        st.session_state.last_message_result = None


def validate_config() -> bool:
    """Validate configuration and show error if malformed."""
    try:
        config = get_config()
    except ConfigError as e:
        st.error(f"⚠️ Configuration Error\n\n{str(e)}")
        st.info("Fix the PREVIEW_* variables in your environment or `.env` file.")
        return False
    configure_logging(config.log_level)
    return True


def display_result(result):
    """Show a PreviewResult."""
    if result is None:
        return
    if result.status in ("running", "already_running"):
        st.success(f"✅ {result.message}")
    elif result.status == "stopped":
        st.info("🛑 Preview stopped")
    elif result.status == "not_found":
        st.warning(result.message or "No preview found")
    else:
        st.error(f"❌ {result.message} (`{result.error_code}`)")
        if result.details:
            with st.expander("Details"):
                st.json(result.details)
    for warning in result.warnings:
        st.warning(warning)


def display_viewer():
    """The live preview, rendered by the preview server in sandboxed frames."""
    url = get_viewer_url(st.session_state.session_id)
    if url is None:
        st.caption("Previews run in simulated mode; bundle scripts are not executed in the browser.")
        return
    st.subheader("🖥️ Live Preview")
    components.iframe(url, height=600, scrolling=True)


def display_input_section():
    """Bundle input and the generate / revise actions."""
    st.subheader("📦 Bundle")

    uploaded = st.file_uploader("Upload a proxy response or file set (JSON)", type=["json"])
    default_text = uploaded.getvalue().decode("utf-8", errors="replace") if uploaded else ""
    body = st.text_area(
        "…or paste it here",
        value=default_text,
        height=240,
        placeholder='{"phase": "generate", "files": [{"path": "manifest.json", "content": "..."}]}',
    )

    col1, col2, col3 = st.columns(3)
    with col1:
        if st.button("📋 Load Sample", use_container_width=True):
            body = json.dumps(SAMPLE_BUNDLE)
            _apply(body)
    with col2:
        if st.button("✨ Generate", type="primary", use_container_width=True, disabled=not body.strip()):
            _apply(_with_phase(body, "generate"))
    with col3:
        if st.button("🔄 Apply as Edit", use_container_width=True, disabled=not body.strip()):
            _apply(_with_phase(body, "revise"))


def _with_phase(body: str, phase: str) -> str:
    """Wrap a bare file set in a proxy response of the given phase."""
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return body
    if isinstance(data, list):
        data = {"files": data}
    if isinstance(data, dict):
        data["phase"] = phase
        return json.dumps(data)
    return body


def _apply(body: str):
    with st.spinner("Building preview..."):
        st.session_state.last_outcome = apply_proxy_response(body, session_id=st.session_state.session_id)
    st.rerun()


def display_preview_section(handle_id: str):
    """Diagnostics, resources, documents and messaging for the live preview."""
    status = get_preview_status(handle_id)
    report = inspect_preview(handle_id)

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("Generation", report.live_generation or "-")
    with col2:
        st.metric("Resources", report.resource_count)
    with col3:
        st.metric("Pending messages", report.pending_message_count)
    with col4:
        st.metric("⏱️ Time Remaining", status.time_remaining or "-")

    docs_tab, files_tab, log_tab, msg_tab = st.tabs(
        ["📄 Entry Documents", "📁 Resources", "📜 Capability Log", "✉️ Messaging"]
    )

    with docs_tab:
        for context, markup in get_preview_documents(handle_id).items():
            st.markdown(f"**{context}**")
            st.code(markup, language="html")

    with files_tab:
        st.dataframe(get_preview_resources(handle_id), use_container_width=True)

    with log_tab:
        if not report.capability_log:
            st.info("No capability calls yet.")
        for call in reversed(report.capability_log):
            st.text(f"[gen {call.generation}/{call.context}] {call.namespace}.{call.method} -> {call.outcome}")
        if report.rejected_resolutions:
            st.warning(f"{report.rejected_resolutions} late or duplicate responses were rejected")

    with msg_tab:
        target = st.radio("Send to", ["extension", "page"], horizontal=True)
        payload = st.text_input("Message (JSON)", value='{"action": "ping"}')
        if st.button("✉️ Send", key="send_message"):
            try:
                message = json.loads(payload)
            except json.JSONDecodeError as e:
                st.error(f"Invalid JSON: {e.msg}")
            else:
                st.session_state.last_message_result = send_preview_message(handle_id, message, target)
        if st.session_state.last_message_result is not None:
            st.json(st.session_state.last_message_result.to_dict())

    st.divider()
    if st.button("🛑 Dispose Preview", type="primary", key="dispose_preview"):
        st.session_state.last_outcome = {"phase": None, "result": stop_preview(handle_id), "notes": []}
        st.rerun()


# =============================================================================
# MAIN APPLICATION
# =============================================================================

def main():
    """Main application entry point."""
    init_session_state()

    st.markdown('<p class="main-header">🧩 Extension Preview</p>', unsafe_allow_html=True)
    st.markdown(
        '<p class="sub-header">Run generated browser extensions in a sandbox, rebuild and inspect them</p>',
        unsafe_allow_html=True,
    )

    if not validate_config():
        return

    with st.sidebar:
        st.header("Session Info")
        st.caption(st.session_state.session_id)
        live = get_session_preview(st.session_state.session_id)
        st.write(f"🔖 Preview: {live.handle_id if live else 'none'}")

    display_viewer()
    display_input_section()

    outcome = st.session_state.last_outcome
    if outcome:
        display_result(outcome.get("result"))
        for note in outcome.get("notes") or []:
            st.info(f"📝 {note}")

    live = get_session_preview(st.session_state.session_id)
    if live is not None:
        st.divider()
        display_preview_section(live.handle_id)


if __name__ == "__main__":
    main()
