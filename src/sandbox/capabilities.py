"""
Capability Shim - The extension host's storage / runtime / tabs / scripting surface.

In sandbox mode every call is served from the generation's own
CapabilityState and MessageBridge. In host mode every call is forwarded
unchanged to a HostAdapter. The mode is decided once per generation.
"""

import copy
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Protocol, Union

from src.errors import CapabilityError
from src.schemas import CapabilityCall
from src.sandbox.bridge import ContextKind, MessageBridge

logger = logging.getLogger(__name__)


EXTENSION_ID = "preview-extension-id"
EXTENSION_ORIGIN = "chrome-extension://preview-extension/"

SIMULATED_TAB = {
    "id": 1,
    "url": "https://example.com",
    "title": "Extension Preview Tab",
    "active": True,
    "windowId": 1,
    "index": 0,
}

CAPABILITY_LOG_SIZE = 200

CapabilityHook = Callable[[CapabilityCall], None]

# Evaluates function source inside a live page: (source, args) -> result
Injector = Callable[[str, List[Any]], Awaitable[Any]]


# =============================================================================
# STATE & MODE
# =============================================================================

@dataclass
class CapabilityState:
    """In-memory state behind one generation's shim."""
    storage: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def fresh(cls) -> "CapabilityState":
        return cls()

    def copy_forward(self) -> "CapabilityState":
        """Explicit carry-over for the next generation: storage contents only."""
        return CapabilityState(storage=copy.deepcopy(self.storage))


class ShimMode(str, Enum):
    SANDBOX = "sandbox"
    HOST = "host"


class HostAdapter(Protocol):
    """A genuine extension host the shim can forward to."""

    def attest(self, identity_token: str) -> bool:
        """True only if the host recognizes the token the assembler issued."""
        ...

    async def call(self, namespace: str, method: str, *args: Any) -> Any:
        ...


def detect_mode(identity_token: str, host: Optional[HostAdapter] = None) -> ShimMode:
    """
    Decide sandbox vs. host for a generation.

    Only the trusted side can answer this: the token is issued by the
    assembler before any bundle code loads, and attestation happens in
    this process. Globals or markers set by bundle code are never consulted.
    """
    if host is None:
        return ShimMode.SANDBOX
    try:
        attested = bool(host.attest(identity_token))
    except Exception as e:
        logger.warning("Host attestation failed, using sandbox mode: %s", e)
        return ShimMode.SANDBOX
    return ShimMode.HOST if attested else ShimMode.SANDBOX


@dataclass
class SimulatedPage:
    """The secondary page context content scripts and injected functions run against."""
    url: str = SIMULATED_TAB["url"]
    title: str = SIMULATED_TAB["title"]
    document: str = ""
    globals: Dict[str, Any] = field(default_factory=dict)
    injector: Optional[Injector] = None


# =============================================================================
# NAMESPACES
# =============================================================================

class _StorageArea:
    def __init__(self, shim: "CapabilityShim"):
        self._shim = shim

    @property
    def _data(self) -> Dict[str, Any]:
        return self._shim.state.storage

    async def get(self, keys: Union[None, str, Iterable[str], Dict[str, Any]] = None) -> Dict[str, Any]:
        """None returns everything; a mapping supplies defaults for missing keys."""
        if self._shim.mode == ShimMode.HOST:
            return await self._shim._forward("storage", "local.get", keys)
        if keys is None:
            result = dict(self._data)
        elif isinstance(keys, str):
            result = {keys: self._data[keys]} if keys in self._data else {}
        elif isinstance(keys, dict):
            result = {key: self._data.get(key, default) for key, default in keys.items()}
        else:
            result = {key: self._data[key] for key in keys if key in self._data}
        self._shim._record("storage", "local.get", detail=f"{len(result)} keys")
        return copy.deepcopy(result)

    async def set(self, items: Dict[str, Any]) -> None:
        if self._shim.mode == ShimMode.HOST:
            return await self._shim._forward("storage", "local.set", items)
        self._data.update(copy.deepcopy(items))
        self._shim._record("storage", "local.set", detail=", ".join(items))

    async def remove(self, keys: Union[str, Iterable[str]]) -> None:
        if self._shim.mode == ShimMode.HOST:
            return await self._shim._forward("storage", "local.remove", keys)
        keys = [keys] if isinstance(keys, str) else list(keys)
        for key in keys:
            self._data.pop(key, None)
        self._shim._record("storage", "local.remove", detail=", ".join(keys))

    async def clear(self) -> None:
        if self._shim.mode == ShimMode.HOST:
            return await self._shim._forward("storage", "local.clear")
        self._data.clear()
        self._shim._record("storage", "local.clear")


class _Storage:
    def __init__(self, shim: "CapabilityShim"):
        self.local = _StorageArea(shim)


class _OnMessage:
    def __init__(self, shim: "CapabilityShim"):
        self._shim = shim
        self._removers: Dict[Callable, Callable[[], None]] = {}

    def add_listener(self, listener: Callable) -> None:
        if listener in self._removers:
            return
        self._removers[listener] = self._shim.bridge.on_deliver(self._shim.context, listener)
        self._shim._record("runtime", "onMessage.addListener")

    def remove_listener(self, listener: Callable) -> None:
        remover = self._removers.pop(listener, None)
        if remover:
            remover()

    def has_listener(self, listener: Callable) -> bool:
        return listener in self._removers

    def has_listeners(self) -> bool:
        return bool(self._removers)


class _Runtime:
    id = EXTENSION_ID

    def __init__(self, shim: "CapabilityShim"):
        self._shim = shim
        self.on_message = _OnMessage(shim)

    async def send_message(self, message: Any) -> Any:
        """
        Send to the extension's listeners and return the first response.

        Raises:
            CapabilityError: "no_receiver" when nobody answers in time,
                "discarded" when the generation is torn down first
        """
        if self._shim.mode == ShimMode.HOST:
            return await self._shim._forward("runtime", "sendMessage", message)
        return await self._shim._request("runtime", "sendMessage", ContextKind.EXTENSION, message)

    def get_url(self, path: str) -> str:
        return EXTENSION_ORIGIN + path.lstrip("/")


class _Tabs:
    def __init__(self, shim: "CapabilityShim"):
        self._shim = shim

    async def query(self, query_info: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Return the simulated tab if it matches every key of ``query_info``."""
        if self._shim.mode == ShimMode.HOST:
            return await self._shim._forward("tabs", "query", query_info)
        tab = dict(SIMULATED_TAB)
        matches = all(tab.get(key) == value for key, value in (query_info or {}).items() if key in tab)
        self._shim._record("tabs", "query", detail=f"{int(matches)} tabs")
        return [tab] if matches else []

    async def send_message(self, tab_id: int, message: Any) -> Any:
        """Deliver to the simulated page's content scripts; no page means no receiver."""
        if self._shim.mode == ShimMode.HOST:
            return await self._shim._forward("tabs", "sendMessage", tab_id, message)
        if self._shim.page is None or tab_id != SIMULATED_TAB["id"]:
            self._shim._record("tabs", "sendMessage", outcome="no_receiver", detail=f"tab {tab_id}")
            raise CapabilityError(
                "Could not establish connection. Receiving end does not exist.",
                code="no_receiver",
                details={"tab_id": tab_id},
            )
        return await self._shim._request("tabs", "sendMessage", ContextKind.PAGE, message)


class _Scripting:
    def __init__(self, shim: "CapabilityShim"):
        self._shim = shim

    async def execute_script(
        self, target: Dict[str, Any], func: Union[Callable, str], args: Iterable[Any] = ()
    ) -> List[Dict]:
        """
        Run ``func(page, *args)`` against the simulated page.

        ``func`` may also be JavaScript function source, as sent by the
        browser shim; it is handed to the page's injector, which evaluates it
        in the live page document.

        Returns:
            Injection results in the host's shape: ``[{"frameId": 0, "result": ...}]``
        """
        if self._shim.mode == ShimMode.HOST:
            return await self._shim._forward("scripting", "executeScript", target, func, list(args))
        tab_id = (target or {}).get("tabId")
        page = self._shim.page
        if page is None or tab_id != SIMULATED_TAB["id"]:
            self._shim._record("scripting", "executeScript", outcome="no_receiver", detail=f"tab {tab_id}")
            raise CapabilityError(
                f"No page context for tab {tab_id}", code="no_receiver", details={"tab_id": tab_id}
            )
        if isinstance(func, str) and page.injector is None:
            self._shim._record("scripting", "executeScript", outcome="injection_failed", detail="no live page")
            raise CapabilityError(
                "Function source can only be injected into a live page",
                code="injection_failed",
                details={"tab_id": tab_id},
            )
        try:
            if isinstance(func, str):
                result = await page.injector(func, list(args))
            else:
                result = func(page, *args)
                if inspect.isawaitable(result):
                    result = await result
        except CapabilityError as e:
            self._shim._record("scripting", "executeScript", outcome=e.code, detail=e.message)
            raise
        except Exception as e:
            self._shim._record("scripting", "executeScript", outcome="injection_failed", detail=str(e))
            raise CapabilityError(
                f"Injected function failed: {e}", code="injection_failed", details={"tab_id": tab_id}
            ) from e
        self._shim._record("scripting", "executeScript", detail=getattr(func, "__name__", None))
        return [{"frameId": 0, "result": result}]


# =============================================================================
# SHIM
# =============================================================================

class CapabilityShim:
    """
    Host capability surface for one context of one generation.

    Attributes mirror the host namespaces: ``storage.local``, ``runtime``,
    ``tabs`` and ``scripting``.
    """

    def __init__(
        self,
        generation: int,
        state: CapabilityState,
        bridge: MessageBridge,
        mode: ShimMode = ShimMode.SANDBOX,
        context: ContextKind = ContextKind.EXTENSION,
        host: Optional[HostAdapter] = None,
        page: Optional[SimulatedPage] = None,
        hooks: Optional[List[CapabilityHook]] = None,
        log: Optional[Deque[CapabilityCall]] = None,
    ):
        if mode == ShimMode.HOST and host is None:
            raise ValueError("Host mode requires a host adapter")
        self.generation = generation
        self.state = state
        self.bridge = bridge
        self.mode = mode
        self.context = ContextKind(context)
        self.host = host
        self.page = page
        self.hooks: List[CapabilityHook] = list(hooks or [])
        self.log: Deque[CapabilityCall] = log if log is not None else deque(maxlen=CAPABILITY_LOG_SIZE)

        self.storage = _Storage(self)
        self.runtime = _Runtime(self)
        self.tabs = _Tabs(self)
        self.scripting = _Scripting(self)

    def add_hook(self, hook: CapabilityHook):
        self.hooks.append(hook)

    async def invoke(self, namespace: str, method: str, args: Optional[List[Any]] = None) -> Any:
        """
        Serve a call that arrived by name, as the browser shim sends them.

        Raises:
            CapabilityError: "unsupported" for a method the shim does not offer
        """
        targets = {
            ("storage", "local.get"): self.storage.local.get,
            ("storage", "local.set"): self.storage.local.set,
            ("storage", "local.remove"): self.storage.local.remove,
            ("storage", "local.clear"): self.storage.local.clear,
            ("runtime", "sendMessage"): self.runtime.send_message,
            ("tabs", "query"): self.tabs.query,
            ("tabs", "sendMessage"): self.tabs.send_message,
            ("scripting", "executeScript"): self.scripting.execute_script,
        }
        target = targets.get((namespace, method))
        if target is None:
            self._record(namespace, method, outcome="unsupported")
            raise CapabilityError(
                f"chrome.{namespace}.{method} is not available in the preview",
                code="unsupported",
                details={"namespace": namespace, "method": method},
            )
        return await target(*(args or []))

    def _record(self, namespace: str, method: str, outcome: str = "ok", detail: Optional[str] = None):
        call = CapabilityCall(
            generation=self.generation,
            context=self.context.value,
            namespace=namespace,
            method=method,
            mode=self.mode.value,
            outcome=outcome,
            detail=detail,
            timestamp=time.time(),
        )
        self.log.append(call)
        logger.debug("[gen %d/%s] %s.%s -> %s", self.generation, call.context, namespace, method, outcome)
        for hook in self.hooks:
            try:
                hook(call)
            except Exception as e:
                logger.warning("Capability hook failed: %s", e)

    async def _forward(self, namespace: str, method: str, *args: Any) -> Any:
        try:
            result = await self.host.call(namespace, method, *args)
        except Exception as e:
            self._record(namespace, method, outcome="error", detail=str(e))
            raise
        self._record(namespace, method)
        return result

    async def _request(self, namespace: str, method: str, receiver: ContextKind, message: Any) -> Any:
        result = await self.bridge.request(self.context, receiver, message)
        self._record(namespace, method, outcome=result.status, detail=result.correlation_id)
        if not result.ok:
            raise CapabilityError(
                result.error or f"Message was not answered ({result.status})",
                code=result.status,
                details={"correlation_id": result.correlation_id, "receiver": receiver.value},
            )
        return result.response

