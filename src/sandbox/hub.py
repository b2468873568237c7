"""
Preview Hub - Connections between browser pages and the contexts they host.

Two kinds of browser pages talk to the hub over WebSockets:
- Viewer pages, one per UI session channel, are told which generation
  documents to mount, which generation to show and what to unmount
- Context documents connect back per (identity, context) and are handed
  to the BrowserContext that owns them

A generation is shown only once every one of its contexts has signalled
ready. A viewer that (re)connects is replayed the current state.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from src.config import get_config
from src.sandbox.document import EntryDocument

logger = logging.getLogger(__name__)


class Socket(Protocol):
    """The part of a WebSocket the hub and the contexts use."""

    async def send_json(self, data: Any) -> None:
        ...

    async def close(self, code: int = 1000) -> None:
        ...


class HostedContext(Protocol):
    """A context whose document is rendered by a viewer page."""

    channel: str
    identity: str
    kind: str
    generation: int
    url: str
    document: EntryDocument

    @property
    def is_ready(self) -> bool:
        ...


class PreviewHub:
    """
    Tracks viewer sockets per channel and hosted contexts per document.

    All methods run on the preview event loop, so no locking is needed.
    """

    def __init__(self, resource_base: Optional[str] = None):
        self.resource_base = resource_base if resource_base is not None else get_config().resource_base
        self._contexts: Dict[Tuple[str, str], HostedContext] = {}
        self._viewers: Dict[str, Set[Socket]] = {}

    def document_url(self, identity: str, kind: str) -> str:
        return f"{self.resource_base}/doc/{identity}/{kind}"

    # ------------------------------------------------------------------
    # Contexts
    # ------------------------------------------------------------------

    def context(self, identity: str, kind: str) -> Optional[HostedContext]:
        return self._contexts.get((identity, kind))

    def contexts(self, channel: str, generation: Optional[int] = None) -> List[HostedContext]:
        return [
            c for c in self._contexts.values()
            if c.channel == channel and (generation is None or c.generation == generation)
        ]

    async def register(self, context: HostedContext) -> None:
        """Track a context and ask the channel's viewers to mount its document."""
        self._contexts[(context.identity, context.kind)] = context
        logger.debug("Hosting %s context of generation %d on %s", context.kind, context.generation, context.channel)
        await self._broadcast(context.channel, _mount(context))

    async def unregister(self, context: HostedContext) -> None:
        if self._contexts.get((context.identity, context.kind)) is not context:
            return
        del self._contexts[(context.identity, context.kind)]
        await self._broadcast(
            context.channel,
            {"type": "unmount", "generation": context.generation, "context": context.kind},
        )

    async def context_ready(self, context: HostedContext) -> None:
        """Show the context's generation once all of its contexts are ready."""
        siblings = self.contexts(context.channel, context.generation)
        if siblings and all(c.is_ready for c in siblings):
            logger.info("Generation %d ready on %s", context.generation, context.channel)
            await self._broadcast(context.channel, {"type": "show", "generation": context.generation})

    # ------------------------------------------------------------------
    # Viewers
    # ------------------------------------------------------------------

    async def connect_viewer(self, channel: str, socket: Socket) -> None:
        """Register a viewer and replay every hosted document of its channel."""
        self._viewers.setdefault(channel, set()).add(socket)
        hosted = sorted(self.contexts(channel), key=lambda c: c.generation)
        for context in hosted:
            await socket.send_json(_mount(context))
        generations = sorted({c.generation for c in hosted})
        ready = [g for g in generations if all(c.is_ready for c in self.contexts(channel, g))]
        if ready:
            await socket.send_json({"type": "show", "generation": ready[-1]})
        logger.info("Viewer connected to %s (%d documents)", channel, len(hosted))

    def disconnect_viewer(self, channel: str, socket: Socket) -> None:
        viewers = self._viewers.get(channel)
        if viewers is None:
            return
        viewers.discard(socket)
        if not viewers:
            del self._viewers[channel]
        logger.info("Viewer disconnected from %s", channel)

    def viewer_count(self, channel: str) -> int:
        return len(self._viewers.get(channel, ()))

    async def shutdown(self) -> None:
        for channel, viewers in list(self._viewers.items()):
            for socket in list(viewers):
                try:
                    await socket.close(code=1001)
                except Exception as e:
                    logger.debug("Error closing viewer on %s: %s", channel, e)
        self._viewers.clear()

    async def _broadcast(self, channel: str, message: Dict[str, Any]) -> None:
        for socket in list(self._viewers.get(channel, ())):
            try:
                await socket.send_json(message)
            except Exception as e:
                logger.debug("Dropping viewer on %s: %s", channel, e)
                self.disconnect_viewer(channel, socket)


def _mount(context: HostedContext) -> Dict[str, Any]:
    return {
        "type": "mount",
        "generation": context.generation,
        "context": context.kind,
        "identity": context.identity,
        "url": context.url,
    }
