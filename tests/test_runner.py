import asyncio

import pytest

from src.errors import AssemblyError, CapabilityError, ValidationError
from src.sandbox.admission import AdmissionLimits
from src.sandbox.bridge import KEEP_CHANNEL_OPEN, ContextKind
from src.sandbox.context import SimulatedContext, simulated_context_factory
from src.sandbox.runner import PreviewHandle, PreviewRunner
from tests.helpers import bundle

BACKGROUND = {"background": {"service_worker": "background.js"}}
CONTENT = {"content_scripts": [{"matches": ["<all_urls>"], "js": ["content.js"]}]}


def _echo_background(shim):
    shim.runtime.on_message.add_listener(lambda message, sender, respond: {"echo": message})


def _with_background(*files):
    return bundle(("popup.js", "1;"), ("background.js", "listen();"), *files, **BACKGROUND)


class _NeverReady(SimulatedContext):
    async def load(self):
        return None


async def test_minimal_bundle_yields_two_resources(runner):
    handle = await runner.generate(bundle(("popup.js", "console.log('hi');")))

    report = runner.inspect(handle)
    assert report.resource_count == 2
    assert report.live_generation == handle.generation
    assert report.pending_message_count == 0
    assert not report.disposed


async def test_rejected_bundle_materializes_nothing(runner, materializer):
    with pytest.raises(ValidationError):
        await runner.generate(bundle(("../evil.js", "x")))

    assert materializer.live_generations() == []
    assert materializer.live_reference_count() == 0


async def test_scripts_load_in_order_and_context_is_ready(runner):
    handle = await runner.generate(_with_background())
    [context] = runner.live(handle).contexts

    assert context.is_ready
    assert context.executed == ["__preview__/chrome-shim.js", "background.js", "popup.js", "__preview__/dom-bindings.js"]
    assert context.completed_phases == ["shim", "bundle", "binding"]


async def test_ui_message_reaches_background_listener(runner, behaviors):
    behaviors["background.js"] = _echo_background
    handle = await runner.generate(_with_background())

    result = await runner.send(handle, {"action": "ping"})

    assert result.ok
    assert result.response == {"echo": {"action": "ping"}}


async def test_popup_send_message_reaches_background(runner, behaviors):
    behaviors["background.js"] = _echo_background
    handle = await runner.generate(_with_background())
    popup = runner.live(handle).shims[ContextKind.EXTENSION]

    assert await popup.runtime.send_message("hello") == {"echo": "hello"}


async def test_message_without_listeners_is_no_receiver(runner):
    handle = await runner.generate(bundle(("popup.js", "1;")))
    popup = runner.live(handle).shims[ContextKind.EXTENSION]

    assert (await runner.send(handle, "anyone?")).status == "no_receiver"
    with pytest.raises(CapabilityError) as exc:
        await popup.runtime.send_message("anyone?")
    assert exc.value.code == "no_receiver"


async def test_content_script_answers_tab_messages(runner, behaviors):
    behaviors["content.js"] = lambda shim: shim.runtime.on_message.add_listener(
        lambda message, sender, respond: {"url": shim.page.url, "from": sender["context"]}
    )
    handle = await runner.generate(bundle(("popup.js", "1;"), ("content.js", "1;"), **CONTENT))
    live = runner.live(handle)

    assert set(live.shims) == {ContextKind.EXTENSION, ContextKind.PAGE}
    reply = await live.shims[ContextKind.EXTENSION].tabs.send_message(1, {"q": "url"})
    assert reply == {"url": "https://example.com", "from": "extension"}


async def test_tabs_send_message_without_content_scripts(runner):
    handle = await runner.generate(bundle(("popup.js", "1;")))

    with pytest.raises(CapabilityError) as exc:
        await runner.live(handle).shims[ContextKind.EXTENSION].tabs.send_message(1, "x")
    assert exc.value.code == "no_receiver"


async def test_script_errors_do_not_stop_the_load(runner, behaviors):
    def broken(shim):
        raise RuntimeError("undefined is not a function")

    behaviors["popup.js"] = broken
    handle = await runner.generate(bundle(("popup.js", "1;")))
    [context] = runner.live(handle).contexts

    assert context.is_ready
    assert "popup.js" in context.errors


async def test_rebuild_swaps_generations_and_retires_the_old_one(runner, materializer):
    handle = await runner.generate(bundle(("popup.js", "1;")))
    old = runner.live(handle)

    new_handle = await runner.rebuild(handle, bundle(("popup.js", "2;")))

    assert new_handle.handle_id == handle.handle_id
    assert new_handle.generation > handle.generation
    assert old.torn_down
    assert not old.bridge.is_open
    assert all(context.discarded for context in old.contexts)
    assert materializer.is_retired(old.generation)
    assert materializer.live_reference_count(old.generation) == 0
    assert materializer.live_generations() == [new_handle.generation]


async def test_failed_rebuild_keeps_previous_generation(runner, behaviors, materializer):
    behaviors["background.js"] = _echo_background
    handle = await runner.generate(_with_background())
    references = materializer.live_reference_count(handle.generation)

    with pytest.raises(ValidationError):
        await runner.rebuild(handle, bundle(("../evil.js", "x")))

    assert runner.live(handle).generation == handle.generation
    assert materializer.live_reference_count(handle.generation) == references
    assert (await runner.send(handle, "still there?")).response == {"echo": "still there?"}


async def test_ready_timeout_retires_the_new_generation(runner, materializer):
    handle = await runner.generate(bundle(("popup.js", "1;")))
    runner.ready_timeout = 0.05
    runner.context_factory = lambda document, shim, redeem, channel: _NeverReady(document, shim, redeem)

    with pytest.raises(AssemblyError) as exc:
        await runner.rebuild(handle, bundle(("popup.js", "2;")))

    assert exc.value.code == "ready_timeout"
    failed_generation = handle.generation + 1
    assert materializer.is_retired(failed_generation)
    assert materializer.live_reference_count(failed_generation) == 0
    assert runner.live(handle).generation == handle.generation
    assert runner.live(handle).bridge.is_open


async def test_never_ready_generate_leaves_nothing_behind(materializer):
    runner = PreviewRunner(
        materializer=materializer,
        context_factory=lambda document, shim, redeem, channel: _NeverReady(document, shim, redeem),
        limits=AdmissionLimits(),
        ready_timeout=0.05,
        storage_policy="reset",
    )

    with pytest.raises(AssemblyError):
        await runner.generate(bundle(("popup.js", "1;")))

    assert materializer.live_reference_count() == 0


async def test_unexpected_context_failure_becomes_load_failed(runner, materializer):
    def explode(document, shim, redeem, channel):
        raise OSError("browser crashed")

    runner.context_factory = explode

    with pytest.raises(AssemblyError) as exc:
        await runner.generate(bundle(("popup.js", "1;")))

    assert exc.value.code == "load_failed"
    assert materializer.live_generations() == []


async def test_pending_messages_are_discarded_on_rebuild(runner, behaviors):
    behaviors["background.js"] = lambda shim: shim.runtime.on_message.add_listener(
        lambda message, sender, respond: KEEP_CHANNEL_OPEN
    )
    handle = await runner.generate(_with_background())
    waiting = asyncio.ensure_future(runner.send(handle, "slow", timeout=5.0))
    await asyncio.sleep(0.01)
    assert runner.inspect(handle).pending_message_count == 1

    await runner.rebuild(handle, _with_background())

    assert (await waiting).status == "discarded"


async def test_edit_mode_overlays_the_live_files(runner):
    handle = await runner.generate(bundle(("popup.js", "1;"), ("style.css", "body{}")))

    await runner.rebuild(handle, {"files": [{"path": "popup.js", "content": "2;"}]}, mode="edit")

    table = runner.live(handle).table
    assert table.content("popup.js") == "2;"
    assert table.content("style.css") == "body{}"
    assert "manifest.json" in table


async def test_storage_resets_between_generations(runner):
    handle = await runner.generate(bundle(("popup.js", "1;")))
    await runner.live(handle).shims[ContextKind.EXTENSION].storage.local.set({"count": 1})

    await runner.rebuild(handle, bundle(("popup.js", "2;")))

    assert runner.live(handle).state.storage == {}


async def test_storage_carries_forward_when_configured(materializer):
    runner = PreviewRunner(
        materializer=materializer,
        context_factory=simulated_context_factory(),
        limits=AdmissionLimits(),
        storage_policy="carry_forward",
    )
    handle = await runner.generate(bundle(("popup.js", "1;")))
    old_state = runner.live(handle).state
    await runner.live(handle).shims[ContextKind.EXTENSION].storage.local.set({"todos": ["a"]})

    await runner.rebuild(handle, bundle(("popup.js", "2;")))

    new_state = runner.live(handle).state
    assert new_state.storage == {"todos": ["a"]}
    assert new_state is not old_state
    new_state.storage["todos"].append("b")
    assert old_state.storage == {"todos": ["a"]}


def test_unknown_storage_policy_is_rejected():
    with pytest.raises(ValueError):
        PreviewRunner(storage_policy="forever")


async def test_concurrent_rebuilds_leave_one_live_generation(runner, materializer):
    handle = await runner.generate(bundle(("popup.js", "1;")))

    handles = await asyncio.gather(
        runner.rebuild(handle, bundle(("popup.js", "2;"))),
        runner.rebuild(handle, bundle(("popup.js", "3;"))),
    )

    live = runner.live(handle)
    assert live.generation == max(h.generation for h in handles)
    assert materializer.live_generations() == [live.generation]


async def test_dispose_twice_is_a_no_op(runner, materializer):
    handle = await runner.generate(bundle(("popup.js", "1;")))

    await runner.dispose(handle)
    await runner.dispose(handle)

    report = runner.inspect(handle)
    assert report.disposed
    assert report.live_generation is None
    assert materializer.live_reference_count() == 0
    with pytest.raises(AssemblyError) as exc:
        await runner.rebuild(handle, bundle(("popup.js", "2;")))
    assert exc.value.code == "not_live"
    assert (await runner.send(handle, "x")).status == "not_routable"


async def test_disposed_previews_are_forgotten(runner, materializer):
    for _ in range(50):
        handle = await runner.generate(bundle(("popup.js", "1;")))
        await runner.dispose(handle)

    assert runner._previews == {}
    assert materializer.live_generations() == []
    assert runner.inspect(handle).disposed


async def test_inspect_reports_capability_calls_and_warnings(runner):
    handle = await runner.generate(bundle(("popup.js", "1;"), description=""))
    await runner.live(handle).shims[ContextKind.EXTENSION].storage.local.set({"a": 1})

    report = runner.inspect(handle)

    assert [(c.namespace, c.method) for c in report.capability_log] == [("storage", "local.set")]
    assert report.capability_log[0].generation == handle.generation
    assert any("description" in w for w in report.warnings)
    assert any("placeholder" in w for w in report.warnings)
    assert runner.inspect(PreviewHandle("missing", 0)).disposed


async def test_shutdown_disposes_everything(runner, materializer):
    await runner.generate(bundle(("popup.js", "1;")))
    await runner.generate(bundle(("popup.js", "2;")))

    await runner.shutdown()

    assert materializer.live_generations() == []
