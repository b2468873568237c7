import pytest

from src.errors import CapabilityError
from src.sandbox.bridge import ContextKind, MessageBridge
from src.sandbox.capabilities import (
    EXTENSION_ID,
    CapabilityShim,
    CapabilityState,
    ShimMode,
    SimulatedPage,
    detect_mode,
)


class FakeHost:
    def __init__(self, token="issued-token", fail=False):
        self.token = token
        self.fail = fail
        self.calls = []

    def attest(self, identity_token):
        if self.fail:
            raise RuntimeError("host unreachable")
        return identity_token == self.token

    async def call(self, namespace, method, *args):
        self.calls.append((namespace, method, args))
        return {"forwarded": f"{namespace}.{method}"}


def _shim(context=ContextKind.EXTENSION, page=None, state=None, bridge=None, **kwargs):
    if bridge is None:
        bridge = MessageBridge(generation=1, timeout=0.1)
        bridge.open()
    return CapabilityShim(1, state or CapabilityState.fresh(), bridge, context=context, page=page, **kwargs)


async def test_storage_get_variants():
    shim = _shim()
    await shim.storage.local.set({"a": 1, "b": {"nested": [1, 2]}})

    assert await shim.storage.local.get() == {"a": 1, "b": {"nested": [1, 2]}}
    assert await shim.storage.local.get("a") == {"a": 1}
    assert await shim.storage.local.get("missing") == {}
    assert await shim.storage.local.get(["a", "missing"]) == {"a": 1}
    assert await shim.storage.local.get({"a": 0, "c": "default"}) == {"a": 1, "c": "default"}


async def test_storage_values_are_copied():
    shim = _shim()
    value = {"items": [1]}
    await shim.storage.local.set({"list": value})
    value["items"].append(2)

    fetched = await shim.storage.local.get("list")
    fetched["list"]["items"].append(3)

    assert shim.state.storage["list"] == {"items": [1]}


async def test_storage_remove_and_clear():
    shim = _shim()
    await shim.storage.local.set({"a": 1, "b": 2, "c": 3})

    await shim.storage.local.remove("a")
    assert await shim.storage.local.get() == {"b": 2, "c": 3}
    await shim.storage.local.remove(["b", "unknown"])
    assert await shim.storage.local.get() == {"c": 3}
    await shim.storage.local.clear()
    assert await shim.storage.local.get() == {}


def test_copy_forward_is_a_deep_copy():
    state = CapabilityState(storage={"todo": ["one"]})

    carried = state.copy_forward()
    carried.storage["todo"].append("two")

    assert state.storage == {"todo": ["one"]}
    assert CapabilityState.fresh().storage == {}


def test_detect_mode_requires_attestation():
    host = FakeHost()

    assert detect_mode("issued-token", host) == ShimMode.HOST
    assert detect_mode("forged-token", host) == ShimMode.SANDBOX
    assert detect_mode("issued-token", None) == ShimMode.SANDBOX
    assert detect_mode("issued-token", FakeHost(fail=True)) == ShimMode.SANDBOX


def test_host_mode_needs_an_adapter():
    with pytest.raises(ValueError):
        _shim(mode=ShimMode.HOST)


async def test_host_mode_forwards_unchanged():
    host = FakeHost()
    shim = _shim(mode=ShimMode.HOST, host=host)

    assert await shim.storage.local.get("k") == {"forwarded": "storage.local.get"}
    await shim.tabs.query({"active": True})

    assert host.calls == [("storage", "local.get", ("k",)), ("tabs", "query", ({"active": True},))]
    assert shim.state.storage == {}
    assert all(call.mode == "host" for call in shim.log)


def test_runtime_identity():
    shim = _shim()

    assert shim.runtime.id == EXTENSION_ID
    assert shim.runtime.get_url("/popup.html").endswith("/popup.html")


async def test_tabs_query_filters_on_known_keys():
    shim = _shim()

    [tab] = await shim.tabs.query({"active": True, "currentWindow": True})
    assert tab["id"] == 1
    assert await shim.tabs.query({"active": False}) == []
    assert len(await shim.tabs.query()) == 1


async def test_runtime_send_message_reaches_listener():
    bridge = MessageBridge(generation=1, timeout=0.2)
    bridge.open()
    popup = _shim(bridge=bridge)
    background = _shim(bridge=bridge)

    def on_message(message, sender, respond):
        return {"greeting": message["name"].upper()}

    background.runtime.on_message.add_listener(on_message)

    assert await popup.runtime.send_message({"name": "ada"}) == {"greeting": "ADA"}
    assert background.runtime.on_message.has_listener(on_message)


async def test_runtime_send_message_without_listener():
    shim = _shim()

    with pytest.raises(CapabilityError) as exc:
        await shim.runtime.send_message({"ping": True})

    assert exc.value.code == "no_receiver"
    assert shim.log[-1].outcome == "no_receiver"


async def test_removed_listener_no_longer_receives():
    bridge = MessageBridge(generation=1, timeout=0.1)
    bridge.open()
    shim = _shim(bridge=bridge)

    def listener(message, sender, respond):
        return "yes"

    shim.runtime.on_message.add_listener(listener)
    shim.runtime.on_message.remove_listener(listener)

    assert not shim.runtime.on_message.has_listeners()
    with pytest.raises(CapabilityError):
        await shim.runtime.send_message("x")


async def test_tabs_send_message_without_page_has_no_receiver():
    shim = _shim(page=None)

    with pytest.raises(CapabilityError) as exc:
        await shim.tabs.send_message(1, {"ping": True})

    assert exc.value.code == "no_receiver"


async def test_tabs_send_message_reaches_content_script():
    bridge = MessageBridge(generation=1, timeout=0.2)
    bridge.open()
    page = SimulatedPage()
    extension = _shim(bridge=bridge, page=page)
    content = _shim(context=ContextKind.PAGE, bridge=bridge, page=page)
    content.runtime.on_message.add_listener(lambda message, sender, respond: {"title": page.title})

    assert await extension.tabs.send_message(1, {"q": "title"}) == {"title": page.title}

    with pytest.raises(CapabilityError):
        await extension.tabs.send_message(2, {"q": "title"})


async def test_execute_script_returns_injection_results():
    page = SimulatedPage(document="<h1>Hello</h1>")
    shim = _shim(page=page)

    def count_chars(target_page, extra):
        return len(target_page.document) + extra

    results = await shim.scripting.execute_script({"tabId": 1}, count_chars, [1])

    assert results == [{"frameId": 0, "result": len(page.document) + 1}]


async def test_execute_script_accepts_coroutines_and_mutates_page():
    page = SimulatedPage()
    shim = _shim(page=page)

    async def mark(target_page):
        target_page.globals["marked"] = True
        return "done"

    assert (await shim.scripting.execute_script({"tabId": 1}, mark))[0]["result"] == "done"
    assert page.globals["marked"] is True


async def test_execute_script_failures():
    shim = _shim(page=SimulatedPage())

    def broken(target_page):
        raise ValueError("no such element")

    with pytest.raises(CapabilityError) as exc:
        await shim.scripting.execute_script({"tabId": 1}, broken)
    assert exc.value.code == "injection_failed"

    with pytest.raises(CapabilityError) as exc:
        await _shim(page=None).scripting.execute_script({"tabId": 1}, broken)
    assert exc.value.code == "no_receiver"


async def test_calls_are_logged_and_hooked():
    seen = []

    def bad_hook(call):
        raise RuntimeError("bad hook")

    shim = _shim(hooks=[seen.append])
    shim.add_hook(bad_hook)

    await shim.storage.local.set({"a": 1})
    await shim.storage.local.get("a")

    assert [(c.namespace, c.method) for c in shim.log] == [("storage", "local.set"), ("storage", "local.get")]
    assert seen == list(shim.log)
    assert all(c.generation == 1 and c.context == "extension" and c.mode == "sandbox" for c in seen)


async def test_function_source_needs_a_live_page():
    shim = _shim(page=SimulatedPage())

    with pytest.raises(CapabilityError) as exc:
        await shim.scripting.execute_script({"tabId": 1}, "() => document.title")
    assert exc.value.code == "injection_failed"


async def test_function_source_goes_to_the_page_injector():
    seen = []

    async def injector(source, args):
        seen.append((source, args))
        return "Extension Preview Tab"

    shim = _shim(page=SimulatedPage(injector=injector))

    results = await shim.scripting.execute_script({"tabId": 1}, "() => document.title", ("x",))

    assert results == [{"frameId": 0, "result": "Extension Preview Tab"}]
    assert seen == [("() => document.title", ["x"])]


async def test_invoke_dispatches_by_name():
    shim = _shim()

    await shim.invoke("storage", "local.set", [{"k": "v"}])

    assert await shim.invoke("storage", "local.get", ["k"]) == {"k": "v"}
    with pytest.raises(CapabilityError) as exc:
        await shim.invoke("bookmarks", "create", [{}])
    assert exc.value.code == "unsupported"
    assert exc.value.details == {"namespace": "bookmarks", "method": "create"}
