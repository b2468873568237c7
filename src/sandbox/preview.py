"""
Preview Hosting - Synchronous, result-returning entry points for the UI.

This module handles:
- Running the PreviewRunner (and, in browser mode, the preview server) on a
  dedicated background event loop
- Starting, rebuilding and stopping previews per UI session
- Converting every PreviewError into a PreviewResult the UI can render
- Registering previews with TTL-based expiry

Nothing here raises PreviewError to the caller.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Coroutine, Dict, List, Literal, Optional
from urllib.parse import quote

from src.config import get_config
from src.errors import PreviewError
from src.schemas import InspectReport, RawFileSet
from src.sandbox.bridge import ContextKind, MessageResult
from src.sandbox.context import browser_context_factory
from src.sandbox.document import DocumentAssembler
from src.sandbox.hub import PreviewHub
from src.sandbox.registry import PreviewSession, get_registry
from src.sandbox.runner import PreviewHandle, PreviewRunner
from src.sandbox.server import PreviewServer, create_app

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class PreviewResult:
    """Result of a preview operation."""
    status: Literal["running", "already_running", "error", "stopped", "not_found"]
    handle_id: Optional[str] = None
    generation: Optional[int] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    resource_count: int = 0
    warnings: List[str] = field(default_factory=list)
    time_remaining: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in ("running", "already_running", "stopped")

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "handle_id": self.handle_id,
            "generation": self.generation,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
            "resource_count": self.resource_count,
            "warnings": self.warnings,
            "time_remaining": self.time_remaining,
        }

    @classmethod
    def from_error(cls, error: PreviewError, handle_id: Optional[str] = None) -> "PreviewResult":
        return cls(
            status="error",
            handle_id=handle_id,
            message=error.message,
            error_code=error.code,
            details=error.details,
        )


# =============================================================================
# BACKGROUND LOOP
# =============================================================================

_state_lock = threading.Lock()
_loop_lock = threading.Lock()
_loop: Optional[asyncio.AbstractEventLoop] = None
_runner: Optional[PreviewRunner] = None
_server: Optional[PreviewServer] = None


def _get_loop() -> asyncio.AbstractEventLoop:
    global _loop
    with _loop_lock:
        if _loop is None or _loop.is_closed():
            _loop = asyncio.new_event_loop()
            thread = threading.Thread(target=_loop.run_forever, daemon=True, name="preview-loop")
            thread.start()
        return _loop


def _run(coro: Coroutine) -> Any:
    """Run a coroutine on the preview loop and wait for its result."""
    return asyncio.run_coroutine_threadsafe(coro, _get_loop()).result()


def get_runner() -> PreviewRunner:
    """Get the process-wide runner, creating it on first use."""
    global _runner
    with _state_lock:
        if _runner is None:
            _runner = _create_runner()
            get_registry().on_expire(_dispose_expired)
        return _runner


def _create_runner() -> PreviewRunner:
    """A runner for the configured context mode; browser mode also starts the server."""
    global _server
    config = get_config()
    if config.context_mode == "simulated":
        return PreviewRunner()

    hub = PreviewHub()
    runner = PreviewRunner(
        assembler=DocumentAssembler(origin=config.public_url),
        context_factory=browser_context_factory(hub),
    )
    _server = PreviewServer(create_app(runner, hub))
    _run(_server.start())
    return runner


def set_runner(runner: Optional[PreviewRunner]) -> None:
    """Replace the process-wide runner (used by tests and embedders)."""
    global _runner
    with _state_lock:
        _runner = runner
    if runner is not None:
        get_registry().on_expire(_dispose_expired)


def _dispose_expired(session: PreviewSession) -> None:
    _run(get_runner().dispose(_handle(session)))


def _handle(session: PreviewSession) -> PreviewHandle:
    return PreviewHandle(session.handle_id, session.generation)


def _running_result(session: PreviewSession, status: str = "running") -> PreviewResult:
    report = get_runner().inspect(_handle(session))
    return PreviewResult(
        status=status,
        handle_id=session.handle_id,
        generation=report.live_generation,
        message=f"Preview live at generation {report.live_generation}",
        resource_count=report.resource_count,
        warnings=report.warnings,
        time_remaining=session.time_remaining_formatted(),
    )


# =============================================================================
# PUBLIC API
# =============================================================================

def start_preview(files: RawFileSet, mode: str = "new", session_id: str = "default") -> PreviewResult:
    """
    Admit and start a preview for a UI session.

    Args:
        files: FileSet, ``{"files": [...]}`` mapping or list of entries
        mode: "new" (descriptor required) or "edit"
        session_id: UI session the preview belongs to

    Returns:
        PreviewResult; a session that already has a live preview gets
        "already_running" and should call rebuild_preview instead
    """
    registry = get_registry()
    existing = registry.get_by_session(session_id)
    if existing is not None:
        return _running_result(existing, "already_running")

    runner = get_runner()
    try:
        handle = _run(runner.generate(files, mode, channel=session_id))
    except PreviewError as e:
        logger.info("Preview for session %s rejected: %s", session_id, e.message)
        return PreviewResult.from_error(e)

    report = runner.inspect(handle)
    session = registry.register(handle.handle_id, session_id, handle.generation, report.resource_count)
    return _running_result(session)


def rebuild_preview(handle_id: str, files: RawFileSet, mode: str = "edit") -> PreviewResult:
    """
    Replace a preview's live generation; on failure the old one stays live.
    """
    registry = get_registry()
    session = registry.get(handle_id)
    if session is None or session.status != "running":
        return PreviewResult(status="not_found", handle_id=handle_id, message=f"No live preview {handle_id}")

    try:
        handle = _run(get_runner().rebuild(_handle(session), files, mode))
    except PreviewError as e:
        logger.info("Rebuild of %s rejected, generation %d stays live: %s", handle_id, session.generation, e.message)
        result = PreviewResult.from_error(e, handle_id)
        result.generation = session.generation
        return result

    report = get_runner().inspect(handle)
    registry.touch(handle_id, handle.generation, report.resource_count)
    return _running_result(session)


def stop_preview(handle_id: str) -> PreviewResult:
    """Dispose a preview. Stopping twice reports "stopped" both times."""
    registry = get_registry()
    session = registry.get(handle_id)
    if session is None:
        return PreviewResult(status="not_found", handle_id=handle_id, message=f"No preview {handle_id}")

    _run(get_runner().dispose(_handle(session)))
    registry.update_status(handle_id, "stopped")
    return PreviewResult(status="stopped", handle_id=handle_id, message="Preview stopped")


def get_preview_status(handle_id: str) -> PreviewResult:
    session = get_registry().get(handle_id)
    if session is None:
        return PreviewResult(status="not_found", handle_id=handle_id)
    if session.status != "running":
        return PreviewResult(status="stopped", handle_id=handle_id, message=f"Preview {session.status}")
    return _running_result(session)


def inspect_preview(handle_id: str) -> InspectReport:
    """Read-only diagnostics: live generation, capability log, pending messages."""
    session = get_registry().get(handle_id)
    generation = session.generation if session else 0
    return get_runner().inspect(PreviewHandle(handle_id, generation))


def send_preview_message(
    handle_id: str,
    payload: Any,
    target: str = ContextKind.EXTENSION.value,
    timeout: Optional[float] = None,
) -> MessageResult:
    """Send a message from the UI to the extension (or the simulated page)."""
    registry = get_registry()
    session = registry.get(handle_id)
    if session is None or session.status != "running":
        return MessageResult("not_routable", error=f"No live preview {handle_id}")
    registry.touch(handle_id)
    return _run(get_runner().send(_handle(session), payload, ContextKind(target), timeout))


def get_preview_documents(handle_id: str) -> Dict[str, str]:
    """Assembled entry documents of the live generation, keyed by context."""
    live = get_runner().live(PreviewHandle(handle_id, 0))
    if live is None:
        return {}
    return {doc.context.value: doc.html for doc in live.documents.documents}


def get_preview_resources(handle_id: str) -> List[Dict]:
    """Resource handles of the live generation (bundle files first)."""
    live = get_runner().live(PreviewHandle(handle_id, 0))
    if live is None:
        return []
    return [handle.to_dict() for handle in live.table.all_handles()]


def get_viewer_url(session_id: str) -> Optional[str]:
    """
    URL of the page that renders a UI session's previews in the browser.

    Returns:
        None when previews run in simulated mode and nothing is rendered
    """
    config = get_config()
    if config.context_mode != "browser":
        return None
    get_runner()
    return f"{config.public_url}{config.resource_base}/view/{quote(session_id, safe='')}"
