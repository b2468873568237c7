import uuid
from datetime import datetime, timedelta

import pytest

from src.config import reset_config
from src.sandbox import preview
from src.sandbox.admission import AdmissionLimits
from src.sandbox.context import simulated_context_factory
from src.sandbox.registry import PreviewRegistry, get_registry, get_session_preview
from src.sandbox.runner import PreviewRunner
from tests.helpers import bundle


def _echo(shim):
    shim.runtime.on_message.add_listener(lambda message, sender, respond: {"pong": message})


@pytest.fixture
def facade(materializer):
    runner = PreviewRunner(
        materializer=materializer,
        context_factory=simulated_context_factory({"background.js": _echo}),
        limits=AdmissionLimits(),
        ready_timeout=1.0,
        message_timeout=0.2,
        storage_policy="reset",
    )
    preview.set_runner(runner)
    yield runner
    preview.set_runner(None)


@pytest.fixture
def session_id():
    return f"test-{uuid.uuid4().hex[:8]}"


def _files(script="1;"):
    return bundle(("popup.js", script), ("background.js", "2;"), background={"service_worker": "background.js"})


def test_start_preview_registers_the_session(facade, session_id):
    result = preview.start_preview(_files(), session_id=session_id)

    assert result.status == "running"
    assert result.ok
    assert result.resource_count == 3
    assert get_session_preview(session_id).handle_id == result.handle_id
    assert preview.get_preview_status(result.handle_id).generation == result.generation


def test_second_start_reports_already_running(facade, session_id):
    first = preview.start_preview(_files(), session_id=session_id)

    second = preview.start_preview(_files("2;"), session_id=session_id)

    assert second.status == "already_running"
    assert second.handle_id == first.handle_id
    assert second.generation == first.generation


def test_rejected_bundle_returns_an_error_result(facade, session_id):
    result = preview.start_preview(bundle(("../x.js", "1")), session_id=session_id)

    assert result.status == "error"
    assert result.error_code == "unsafe_path"
    assert result.details["path"] == "../x.js"
    assert get_session_preview(session_id) is None


def test_rebuild_advances_the_generation(facade, session_id):
    started = preview.start_preview(_files(), session_id=session_id)

    rebuilt = preview.rebuild_preview(started.handle_id, {"files": [{"path": "popup.js", "content": "3;"}]})

    assert rebuilt.status == "running"
    assert rebuilt.generation > started.generation
    assert get_registry().get(started.handle_id).generation == rebuilt.generation


def test_failed_rebuild_reports_the_surviving_generation(facade, session_id):
    started = preview.start_preview(_files(), session_id=session_id)

    result = preview.rebuild_preview(started.handle_id, bundle(manifest_version=2), mode="new")

    assert result.status == "error"
    assert result.error_code == "unsupported_version"
    assert result.generation == started.generation
    assert preview.send_preview_message(started.handle_id, "ping").response == {"pong": "ping"}


def test_rebuild_of_unknown_preview(facade):
    assert preview.rebuild_preview("nope", _files()).status == "not_found"


def test_send_preview_message(facade, session_id):
    started = preview.start_preview(_files(), session_id=session_id)

    result = preview.send_preview_message(started.handle_id, {"n": 1})
    no_page = preview.send_preview_message(started.handle_id, {"n": 1}, target="page")

    assert result.ok and result.response == {"pong": {"n": 1}}
    assert no_page.status == "no_receiver"
    assert preview.send_preview_message("missing", "x").status == "not_routable"


def test_documents_and_resources(facade, session_id):
    started = preview.start_preview(_files(), session_id=session_id)

    documents = preview.get_preview_documents(started.handle_id)
    resources = preview.get_preview_resources(started.handle_id)

    assert list(documents) == ["extension"]
    assert "Content-Security-Policy" in documents["extension"]
    assert {r["path"] for r in resources if not r["system"]} == {"manifest.json", "popup.js", "background.js"}


def test_stop_preview_is_idempotent(facade, session_id, materializer):
    started = preview.start_preview(_files(), session_id=session_id)

    assert preview.stop_preview(started.handle_id).status == "stopped"
    assert preview.stop_preview(started.handle_id).status == "stopped"
    assert preview.get_preview_status(started.handle_id).status == "stopped"
    assert preview.inspect_preview(started.handle_id).disposed
    assert materializer.live_reference_count() == 0
    assert get_session_preview(session_id) is None


def test_expired_previews_are_disposed(facade, session_id, materializer):
    started = preview.start_preview(_files(), session_id=session_id)
    session = get_registry().get(started.handle_id)
    session.last_active = (datetime.now() - timedelta(minutes=session.ttl_minutes + 1)).isoformat()

    expired = get_registry().cleanup_expired()

    assert started.handle_id in expired
    assert get_registry().get(started.handle_id).status == "expired"
    assert facade.inspect(preview._handle(session)).disposed
    assert materializer.live_reference_count() == 0
    assert get_registry().clear_stale() >= 1
    assert get_registry().get(started.handle_id) is None


def test_registry_is_a_singleton():
    assert PreviewRegistry() is get_registry()


def test_result_to_dict():
    result = preview.PreviewResult(status="not_found", handle_id="h1")

    data = result.to_dict()

    assert data["status"] == "not_found"
    assert data["handle_id"] == "h1"
    assert not result.ok


def test_cleanup_sweep_drops_entries_from_earlier_sweeps(facade):
    registry = get_registry()
    stopped = preview.start_preview(_files(), session_id=f"test-{uuid.uuid4().hex[:8]}")
    idle = preview.start_preview(_files(), session_id=f"test-{uuid.uuid4().hex[:8]}")
    preview.stop_preview(stopped.handle_id)
    session = registry.get(idle.handle_id)
    session.last_active = (datetime.now() - timedelta(minutes=session.ttl_minutes + 1)).isoformat()

    assert idle.handle_id in registry.sweep()
    assert registry.get(stopped.handle_id) is None
    assert registry.get(idle.handle_id).status == "expired"

    registry.sweep()
    assert registry.get(idle.handle_id) is None
    assert facade._previews == {}


def test_viewer_url_names_the_session(facade, monkeypatch):
    monkeypatch.setenv("PREVIEW_PUBLIC_URL", "https://preview.example.com/")
    reset_config()

    assert preview.get_viewer_url("a b/c") == "https://preview.example.com/_preview/view/a%20b%2Fc"


def test_no_viewer_url_in_simulated_mode(facade, monkeypatch):
    monkeypatch.setenv("PREVIEW_CONTEXT_MODE", "simulated")
    reset_config()

    assert preview.get_viewer_url("session") is None
