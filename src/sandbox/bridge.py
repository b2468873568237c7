"""Message bridge between the UI, the extension context and the simulated page.

Delivery model (mirrors how the extension host delivers runtime messages):
- ``send`` records a PendingMessage and queues it for the receiver
- messages on one sender -> receiver pair are delivered in send order
- every listener of the receiver is called with ``(message, sender, send_response)``
- the first response to arrive wins; later ones are rejected and reported
- no listener, or no response within the timeout, yields "no_receiver"
- closing the bridge settles everything still pending as "discarded"
"""

import asyncio
import inspect
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple

from src.errors import CapabilityError

logger = logging.getLogger(__name__)


class ContextKind(str, Enum):
    """Parties that can exchange messages."""
    UI = "ui"
    EXTENSION = "extension"
    PAGE = "page"


# Listener return value meaning "I will call send_response later"
KEEP_CHANNEL_OPEN = True

Handler = Callable[[Any, Dict[str, Any], Callable[[Any], bool]], Any]

# Settled outcomes kept for late waiters and duplicate reporting
SETTLED_HISTORY = 1024


@dataclass
class MessageResult:
    """Outcome of a request through the bridge."""
    status: Literal["ok", "no_receiver", "discarded", "not_routable"]
    correlation_id: Optional[str] = None
    response: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "correlation_id": self.correlation_id,
            "response": self.response,
            "error": self.error,
        }


@dataclass
class PendingMessage:
    correlation_id: str
    sender: ContextKind
    receiver: ContextKind
    payload: Any
    future: "asyncio.Future[MessageResult]"
    response_resolved: bool = False
    created_at: float = field(default_factory=time.monotonic)


class MessageBridge:
    """Routes correlated request/response messages for one generation.

    A bridge starts closed. The runner opens it only after the generation's
    readiness handshake, and closes it exactly once on teardown.
    """

    def __init__(self, generation: int, timeout: float = 3.0):
        self.generation = generation
        self.timeout = timeout
        self._handlers: Dict[ContextKind, List[Handler]] = {kind: [] for kind in ContextKind}
        self._pending: Dict[str, PendingMessage] = {}
        self._settled: "OrderedDict[str, MessageResult]" = OrderedDict()
        self._queues: Dict[Tuple[ContextKind, ContextKind], asyncio.Queue] = {}
        self._pumps: Dict[Tuple[ContextKind, ContextKind], asyncio.Task] = {}
        self._callbacks: set = set()
        self._open = False
        self._closed = False
        self.rejected_resolutions = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open and not self._closed

    def open(self):
        """Start routing. Called once the generation has signalled ready."""
        if self._closed:
            raise CapabilityError(
                f"Bridge for generation {self.generation} is closed",
                code="not_routable",
                details={"generation": self.generation},
            )
        self._open = True

    async def close(self, reason: str = "context discarded"):
        """Stop routing and settle every pending message as discarded."""
        if self._closed:
            return
        self._closed = True
        self._open = False

        for task in list(self._pumps.values()) + list(self._callbacks):
            task.cancel()
        for task in list(self._pumps.values()) + list(self._callbacks):
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass
        self._pumps.clear()
        self._callbacks.clear()

        for correlation_id in list(self._pending):
            self._settle(correlation_id, MessageResult("discarded", correlation_id, error=reason))
        logger.debug("Bridge for generation %d closed: %s", self.generation, reason)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_deliver(self, context: ContextKind, handler: Handler) -> Callable[[], None]:
        """Register a listener for messages addressed to ``context``.

        Returns:
            A callable that removes the listener again
        """
        self._handlers[ContextKind(context)].append(handler)

        def remove():
            try:
                self._handlers[ContextKind(context)].remove(handler)
            except ValueError:
                pass

        return remove

    def has_receiver(self, context: ContextKind) -> bool:
        return bool(self._handlers[ContextKind(context)])

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send(self, sender: ContextKind, receiver: ContextKind, payload: Any) -> str:
        """Queue a message for delivery and return its correlation id.

        Raises:
            CapabilityError: If the bridge is not routable (not ready or closed)
        """
        if not self.is_open:
            raise CapabilityError(
                f"Generation {self.generation} is not routable",
                code="not_routable",
                details={"generation": self.generation, "closed": self._closed},
            )
        sender, receiver = ContextKind(sender), ContextKind(receiver)
        loop = asyncio.get_running_loop()
        correlation_id = f"{self.generation}-{uuid.uuid4().hex[:12]}"
        self._pending[correlation_id] = PendingMessage(
            correlation_id, sender, receiver, payload, loop.create_future()
        )

        pair = (sender, receiver)
        queue = self._queues.get(pair)
        if queue is None:
            queue = self._queues[pair] = asyncio.Queue()
        if pair not in self._pumps or self._pumps[pair].done():
            self._pumps[pair] = loop.create_task(self._pump(queue))
        queue.put_nowait(correlation_id)

        logger.debug("[Bridge TX] %s -> %s id=%s", sender.value, receiver.value, correlation_id)
        return correlation_id

    async def wait(self, correlation_id: str, timeout: Optional[float] = None) -> MessageResult:
        """Wait for the outcome of a sent message; never waits past the timeout."""
        pending = self._pending.get(correlation_id)
        if pending is None:
            settled = self._settled.get(correlation_id)
            if settled is None:
                return MessageResult("no_receiver", correlation_id, error="Unknown correlation id")
            return settled
        if timeout is None:
            timeout = self.timeout
        try:
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout)
        except asyncio.TimeoutError:
            result = MessageResult(
                "no_receiver",
                correlation_id,
                error="Could not establish connection. Receiving end does not exist.",
            )
            self._settle(correlation_id, result)
            return pending.future.result() if pending.future.done() else result

    async def request(
        self,
        sender: ContextKind,
        receiver: ContextKind,
        payload: Any,
        timeout: Optional[float] = None,
    ) -> MessageResult:
        """Send and wait in one step. Routing failures come back as results."""
        try:
            correlation_id = self.send(sender, receiver, payload)
        except CapabilityError as e:
            return MessageResult("not_routable", error=e.message)
        return await self.wait(correlation_id, timeout)

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def resolve(self, correlation_id: str, response: Any, strict: bool = False) -> bool:
        """Deliver a response. Only the first response per message is accepted.

        Args:
            correlation_id: Id returned by ``send``
            response: Value handed to the waiting caller
            strict: Raise instead of returning False for a rejected response

        Returns:
            True if this response reached the caller, False if it was rejected

        Raises:
            CapabilityError: "duplicate_resolution", only when ``strict`` is set
        """
        if correlation_id not in self._pending:
            self.rejected_resolutions += 1
            settled = self._settled.get(correlation_id)
            if settled is not None:
                logger.warning("Rejected response for %s: already settled as %s", correlation_id, settled.status)
            else:
                logger.warning("Rejected response for unknown message %s", correlation_id)
            if strict:
                raise CapabilityError(
                    f"Message {correlation_id} already has an outcome",
                    code="duplicate_resolution",
                    details={"correlation_id": correlation_id, "settled_as": settled.status if settled else None},
                )
            return False
        return self._settle(correlation_id, MessageResult("ok", correlation_id, response=response))

    def _settle(self, correlation_id: str, result: MessageResult) -> bool:
        pending = self._pending.pop(correlation_id, None)
        if pending is None:
            return False
        pending.response_resolved = result.status == "ok"
        self._settled[correlation_id] = result
        while len(self._settled) > SETTLED_HISTORY:
            self._settled.popitem(last=False)
        if not pending.future.done():
            pending.future.set_result(result)
        return True

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _pump(self, queue: asyncio.Queue):
        while True:
            correlation_id = await queue.get()
            try:
                self._deliver(correlation_id)
            finally:
                queue.task_done()
            # Let listener callbacks scheduled by this delivery start first
            await asyncio.sleep(0)

    def _deliver(self, correlation_id: str):
        pending = self._pending.get(correlation_id)
        if pending is None:
            return
        handlers = list(self._handlers[pending.receiver])
        if not handlers:
            self._settle(
                correlation_id,
                MessageResult(
                    "no_receiver",
                    correlation_id,
                    error="Could not establish connection. Receiving end does not exist.",
                ),
            )
            return

        sender_info = {"context": pending.sender.value, "generation": self.generation}

        def send_response(response: Any = None) -> bool:
            return self.resolve(correlation_id, response)

        for handler in handlers:
            if correlation_id not in self._pending:
                break
            try:
                result = handler(pending.payload, sender_info, send_response)
            except Exception as e:
                logger.warning("Listener for %s raised: %s", pending.receiver.value, e)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._await_listener(correlation_id, result))
                self._callbacks.add(task)
                task.add_done_callback(self._callbacks.discard)
            elif result is not None and result is not KEEP_CHANNEL_OPEN:
                self.resolve(correlation_id, result)

    async def _await_listener(self, correlation_id: str, awaitable):
        try:
            result = await awaitable
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Async listener for %s raised: %s", correlation_id, e)
            return
        if result is not None and result is not KEEP_CHANNEL_OPEN and correlation_id in self._pending:
            self.resolve(correlation_id, result)
