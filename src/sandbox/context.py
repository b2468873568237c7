"""
Isolated execution contexts.

A context loads one EntryDocument: it fetches every script the document
references (in document order, through the materializer) and reports
readiness once the shim, bundle and binding phases have all completed.

SimulatedContext runs in-process: it parses the document the way a
browser would, redeems each ephemeral reference, and runs the Python
behaviour registered for a bundle path (if any) against the shim.

BrowserContext hands the document to a real browser frame through the
PreviewHub and serves the frame's shim traffic from the CapabilityShim.
"""

import asyncio
import inspect
import logging
import uuid
from html.parser import HTMLParser
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Set, Tuple

from src.errors import AssemblyError, CapabilityError, PreviewError
from src.sandbox.bridge import KEEP_CHANNEL_OPEN, ContextKind
from src.sandbox.capabilities import CapabilityShim
from src.sandbox.document import EntryDocument, Phase
from src.sandbox.hub import PreviewHub, Socket

logger = logging.getLogger(__name__)

Behavior = Callable[[CapabilityShim], Any]
Redeemer = Callable[[str], Tuple[str, bytes]]

PHASES: Tuple[Phase, ...] = ("shim", "bundle", "binding")


class IsolatedContext(Protocol):
    """What the runner needs from an execution context."""

    document: EntryDocument

    async def load(self) -> None:
        ...

    async def wait_ready(self, timeout: float) -> None:
        ...

    async def discard(self) -> None:
        ...


class _ScriptCollector(HTMLParser):
    def __init__(self):
        super().__init__()
        self.sources: List[str] = []

    def handle_starttag(self, tag, attrs):
        if tag == "script":
            src = dict(attrs).get("src")
            if src:
                self.sources.append(src)


def script_sources(markup: str) -> List[str]:
    """Script src values in document order."""
    collector = _ScriptCollector()
    collector.feed(markup)
    collector.close()
    return collector.sources


class SimulatedContext:
    """In-process stand-in for a sandboxed browsing context."""

    def __init__(
        self,
        document: EntryDocument,
        shim: CapabilityShim,
        redeem: Redeemer,
        behaviors: Optional[Mapping[str, Behavior]] = None,
    ):
        self.document = document
        self.shim = shim
        self.redeem = redeem
        self.behaviors = dict(behaviors or {})
        self.executed: List[str] = []
        self.errors: Dict[str, str] = {}
        self.completed_phases: List[Phase] = []
        self.discarded = False
        self._ready = asyncio.Event()
        self._steps = {step.reference: step for step in document.load_plan}

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    async def load(self):
        """
        Load every script in document order.

        Raises:
            AssemblyError: If a referenced script cannot be redeemed
        """
        for reference in script_sources(self.document.html):
            if self.discarded:
                return
            step = self._steps.get(reference)
            if step is None:
                raise AssemblyError(
                    f"Document references a script outside its load plan: {reference}",
                    code="load_failed",
                    details={"reference": reference},
                )
            self.redeem(reference)
            self.executed.append(step.path)
            await self._run(step.path)
            self._complete(step.phase)

        if all(phase in self.completed_phases for phase in PHASES):
            self._ready.set()
            logger.debug(
                "Context %s of generation %d ready (%d scripts)",
                self.document.context.value, self.shim.generation, len(self.executed),
            )

    def _complete(self, phase: Phase):
        # Starting a later phase means every earlier phase is done
        for earlier in PHASES[: PHASES.index(phase)]:
            if earlier not in self.completed_phases:
                self.completed_phases.append(earlier)
        remaining = [s for s in self.document.load_plan if s.phase == phase and s.path not in self.executed]
        if not remaining and phase not in self.completed_phases:
            self.completed_phases.append(phase)

    async def _run(self, path: str):
        behavior = self.behaviors.get(path)
        if behavior is None:
            return
        try:
            result = behavior(self.shim)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # Bundle errors show up in diagnostics; they do not stop the load
            self.errors[path] = str(e)
            logger.warning("Script %s raised during load: %s", path, e)

    async def wait_ready(self, timeout: float):
        """
        Raises:
            AssemblyError: "ready_timeout" if readiness is not signalled in time
        """
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError as e:
            raise AssemblyError(
                f"{self.document.context.value} context did not signal ready within {timeout}s",
                code="ready_timeout",
                details={"completed_phases": list(self.completed_phases), "timeout": timeout},
            ) from e

    async def discard(self):
        self.discarded = True
        self._ready.clear()


class BrowserContext:
    """
    A context whose document runs in a real, sandboxed browser frame.

    ``load`` asks the viewer pages of ``channel`` to mount the document,
    which the preview server serves together with every resource it
    references. The document's shim connects back over a WebSocket:
    capability calls are served by ``shim``, runtime messages addressed to
    this context are delivered to the page's listeners, and readiness is
    taken from the document's own ready signal.
    """

    def __init__(
        self,
        document: EntryDocument,
        shim: CapabilityShim,
        redeem: Redeemer,
        hub: PreviewHub,
        channel: str,
    ):
        self.document = document
        self.shim = shim
        self.redeem = redeem
        self.hub = hub
        self.channel = channel
        self.identity = document.identity
        self.kind = document.context.value
        self.generation = shim.generation
        self.url = hub.document_url(self.identity, self.kind)
        self.errors: Dict[str, str] = {}
        self.completed_phases: List[Phase] = []
        self.discarded = False
        self._ready = asyncio.Event()
        self._socket: Optional[Socket] = None
        self._responders: Dict[str, Callable[[Any], bool]] = {}
        self._executions: Dict[str, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()
        if document.context == ContextKind.PAGE and shim.page is not None:
            shim.page.injector = self.inject

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def connected(self) -> bool:
        return self._socket is not None

    async def load(self):
        await self.hub.register(self)

    async def wait_ready(self, timeout: float):
        """
        Raises:
            AssemblyError: "ready_timeout" if the frame does not signal ready in time
        """
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError as e:
            if self.hub.viewer_count(self.channel) == 0:
                reason = "no preview viewer is open"
            elif not self.connected:
                reason = "the document never connected"
            else:
                reason = "the document did not signal ready"
            raise AssemblyError(
                f"{self.kind} context did not signal ready within {timeout}s: {reason}",
                code="ready_timeout",
                details={
                    "completed_phases": list(self.completed_phases),
                    "timeout": timeout,
                    "connected": self.connected,
                    "errors": dict(self.errors),
                },
            ) from e

    async def discard(self):
        self.discarded = True
        self._ready.clear()
        if self.shim.page is not None and self.shim.page.injector == self.inject:
            self.shim.page.injector = None
        self.shim.runtime.on_message.remove_listener(self._deliver)
        for task in list(self._tasks):
            task.cancel()
        for future in self._executions.values():
            if not future.done():
                future.cancel()
        self._executions.clear()
        self._responders.clear()
        socket, self._socket = self._socket, None
        if socket is not None:
            try:
                await socket.close(code=1000)
            except Exception as e:
                logger.debug("Closing the %s socket of generation %d failed: %s", self.kind, self.generation, e)
        await self.hub.unregister(self)

    # ------------------------------------------------------------------
    # Socket
    # ------------------------------------------------------------------

    async def attach(self, socket: Socket) -> bool:
        """Adopt the document's connection. A reloaded frame replaces the old one."""
        if self.discarded:
            await socket.close(code=1008)
            return False
        previous, self._socket = self._socket, socket
        if previous is not None and previous is not socket:
            logger.info("%s context of generation %d reconnected", self.kind, self.generation)
        return True

    def detach(self, socket: Socket):
        if self._socket is not socket:
            return
        self._socket = None
        for future in self._executions.values():
            if not future.done():
                future.set_exception(
                    CapabilityError("The page context disconnected", code="no_receiver")
                )

    async def handle(self, message: Dict[str, Any]):
        """Dispatch one message from the document's shim."""
        kind = message.get("type")
        if kind == "capability":
            # Calls can wait on messages answered over this same socket
            self._spawn(self._call(message))
        elif kind == "phase":
            self._complete(message.get("phase"))
        elif kind == "ready":
            await self._signal_ready()
        elif kind == "response":
            responder = self._responders.pop(str(message.get("deliveryId")), None)
            if responder is None:
                logger.warning("Response for unknown delivery %s", message.get("deliveryId"))
            else:
                responder(message.get("response"))
        elif kind == "executed":
            self._finish_execution(message)
        elif kind == "error":
            source = self._path_for(message.get("source"))
            self.errors[source] = str(message.get("message"))
            logger.warning("Script %s raised in generation %d: %s", source, self.generation, message.get("message"))
        else:
            logger.warning("Unknown message type from %s context: %s", self.kind, kind)

    async def _call(self, message: Dict[str, Any]):
        call_id = message.get("id")
        namespace, method = str(message.get("namespace")), str(message.get("method"))
        try:
            if (namespace, method) == ("runtime", "onMessage.addListener"):
                if not self.shim.runtime.on_message.has_listener(self._deliver):
                    self.shim.runtime.on_message.add_listener(self._deliver)
                result = None
            else:
                result = await self.shim.invoke(namespace, method, message.get("args") or [])
        except PreviewError as e:
            reply = {"type": "result", "id": call_id, "ok": False, "error": e.message, "code": e.code}
        except Exception as e:
            logger.warning("chrome.%s.%s from the %s context failed: %s", namespace, method, self.kind, e)
            reply = {"type": "result", "id": call_id, "ok": False, "error": str(e), "code": "error"}
        else:
            reply = {"type": "result", "id": call_id, "ok": True, "result": result}
        await self._send(reply)

    def _deliver(self, message: Any, sender: Dict[str, Any], send_response: Callable[[Any], bool]):
        # Bridge listener standing in for every onMessage listener of the page
        if self._socket is None:
            return None
        delivery_id = uuid.uuid4().hex[:12]
        self._responders[delivery_id] = send_response
        self._spawn(self._send({"type": "deliver", "deliveryId": delivery_id, "message": message, "sender": sender}))
        return KEEP_CHANNEL_OPEN

    async def inject(self, source: str, args: List[Any]) -> Any:
        """Evaluate function source in the live page and return its result."""
        if self._socket is None:
            raise CapabilityError(
                "The page context is not connected", code="no_receiver", details={"generation": self.generation}
            )
        execution_id = uuid.uuid4().hex[:12]
        future = asyncio.get_running_loop().create_future()
        self._executions[execution_id] = future
        try:
            await self._send({"type": "execute", "id": execution_id, "source": source, "args": args})
            return await asyncio.wait_for(future, self.shim.bridge.timeout)
        except asyncio.TimeoutError as e:
            raise CapabilityError(
                "Injected function did not finish in time",
                code="injection_failed",
                details={"timeout": self.shim.bridge.timeout},
            ) from e
        finally:
            self._executions.pop(execution_id, None)

    def _finish_execution(self, message: Dict[str, Any]):
        future = self._executions.get(str(message.get("id")))
        if future is None or future.done():
            return
        if message.get("ok"):
            future.set_result(message.get("result"))
        else:
            future.set_exception(
                CapabilityError(f"Injected function failed: {message.get('error')}", code="injection_failed")
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _complete(self, phase: Optional[str]):
        if phase not in PHASES:
            logger.warning("Unknown phase from %s context: %s", self.kind, phase)
            return
        for done in PHASES[: PHASES.index(phase) + 1]:
            if done not in self.completed_phases:
                self.completed_phases.append(done)

    async def _signal_ready(self):
        if self.discarded or self.is_ready:
            return
        self._complete("binding")
        self._ready.set()
        logger.debug("Context %s of generation %d ready in the browser", self.kind, self.generation)
        await self.hub.context_ready(self)

    def _path_for(self, source: Optional[str]) -> str:
        for step in self.document.load_plan:
            if source and source.endswith(step.reference):
                return step.path
        return source or "<document>"

    async def _send(self, payload: Dict[str, Any]):
        if self._socket is None:
            logger.debug("Dropping %s for disconnected %s context", payload.get("type"), self.kind)
            return
        await self._socket.send_json(payload)

    def _spawn(self, coro: Awaitable):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Task of the %s context failed: %s", self.kind, task.exception())


# (document, shim, redeem, channel) -> context; channel names the UI session rendering it
ContextFactory = Callable[[EntryDocument, CapabilityShim, Redeemer, str], IsolatedContext]


def simulated_context_factory(behaviors: Optional[Mapping[str, Behavior]] = None) -> ContextFactory:
    """Factory producing SimulatedContexts that share one behaviour map."""

    def factory(document: EntryDocument, shim: CapabilityShim, redeem: Redeemer, channel: str) -> IsolatedContext:
        return SimulatedContext(document, shim, redeem, behaviors)

    return factory


def browser_context_factory(hub: PreviewHub) -> ContextFactory:
    """Factory producing BrowserContexts rendered through ``hub``."""

    def factory(document: EntryDocument, shim: CapabilityShim, redeem: Redeemer, channel: str) -> IsolatedContext:
        return BrowserContext(document, shim, redeem, hub, channel)

    return factory
