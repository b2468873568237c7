"""
Preview Runner - Drive generations through build, readiness, rebuild and teardown.

Exactly one generation per handle is live (routable) at a time. A rebuild
builds the next generation completely, waits for its readiness handshake,
swaps it in, and only then tears the previous generation down. Any failure
before the swap leaves the previous generation untouched.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from src.config import STORAGE_POLICIES, get_config
from src.errors import AssemblyError, PreviewError
from src.schemas import CapabilityCall, InspectReport, RawFileSet
from src.sandbox.admission import AdmissionLimits, ValidatedFileSet, coerce_file_set, merge_delta, validate
from src.sandbox.bridge import ContextKind, MessageBridge, MessageResult
from src.sandbox.capabilities import (
    CAPABILITY_LOG_SIZE,
    CapabilityHook,
    CapabilityShim,
    CapabilityState,
    HostAdapter,
    SimulatedPage,
    detect_mode,
)
from src.sandbox.context import ContextFactory, IsolatedContext, simulated_context_factory
from src.sandbox.document import AssembledDocuments, DocumentAssembler, issue_identity, system_assets
from src.sandbox.virtual_fs import ResourceMaterializer, ResourceTable

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class PreviewHandle:
    """What the UI holds on to: a stable id and the generation it last saw."""
    handle_id: str
    generation: int


@dataclass
class LiveGeneration:
    """Everything one generation owns."""
    generation: int
    files: ValidatedFileSet
    table: ResourceTable
    state: CapabilityState
    bridge: MessageBridge
    documents: AssembledDocuments
    shims: Dict[ContextKind, CapabilityShim]
    contexts: List[IsolatedContext]
    torn_down: bool = False

    @property
    def warnings(self) -> List[str]:
        return list(self.files.warnings) + list(self.documents.warnings)


@dataclass
class _Preview:
    handle_id: str
    channel: str = "default"
    live: Optional[LiveGeneration] = None
    log: Deque[CapabilityCall] = field(default_factory=lambda: deque(maxlen=CAPABILITY_LOG_SIZE))
    disposed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


# =============================================================================
# RUNNER
# =============================================================================

class PreviewRunner:
    """
    Owns the previews of one process.

    All public coroutines run on a single event loop; the synchronous
    facade in ``src.sandbox.preview`` schedules onto it.
    """

    def __init__(
        self,
        materializer: Optional[ResourceMaterializer] = None,
        assembler: Optional[DocumentAssembler] = None,
        context_factory: Optional[ContextFactory] = None,
        limits: Optional[AdmissionLimits] = None,
        ready_timeout: Optional[float] = None,
        message_timeout: Optional[float] = None,
        storage_policy: Optional[str] = None,
        host: Optional[HostAdapter] = None,
        hooks: Optional[List[CapabilityHook]] = None,
    ):
        config = get_config()
        self.materializer = materializer or ResourceMaterializer()
        self.assembler = assembler or DocumentAssembler()
        self.context_factory = context_factory or simulated_context_factory()
        self.limits = limits or AdmissionLimits.from_config()
        self.ready_timeout = ready_timeout if ready_timeout is not None else config.ready_timeout
        self.message_timeout = message_timeout if message_timeout is not None else config.message_timeout
        self.storage_policy = storage_policy or config.storage_policy
        if self.storage_policy not in STORAGE_POLICIES:
            raise ValueError(f"Unknown storage policy '{self.storage_policy}'")
        self.host = host
        self.hooks = list(hooks or [])
        self._previews: Dict[str, _Preview] = {}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def generate(self, file_set: RawFileSet, mode: str = "new", channel: str = "default") -> PreviewHandle:
        """
        Admit, materialize and assemble a bundle as a new preview.

        ``channel`` names the UI session whose viewer renders the preview.

        Raises:
            ValidationError: The file set was rejected; nothing was materialized
            AssemblyError: The generation could not be built or never became ready
        """
        files = validate(file_set, mode, self.limits)
        preview = _Preview(handle_id=uuid.uuid4().hex[:12], channel=channel)
        live = await self.build(files, CapabilityState.fresh(), preview)
        preview.live = live
        self._previews[preview.handle_id] = preview
        logger.info("Preview %s live at generation %d", preview.handle_id, live.generation)
        return PreviewHandle(preview.handle_id, live.generation)

    async def rebuild(self, handle: PreviewHandle, file_set: RawFileSet, mode: str = "new") -> PreviewHandle:
        """
        Replace a preview's live generation.

        In "edit" mode the file set is a delta overlaid on the live files.
        On any failure the previous generation stays live and unchanged.
        """
        preview = self._require(handle)
        async with preview.lock:
            self._require(handle)
            return await self._rebuild(preview, file_set, mode)

    async def _rebuild(self, preview: _Preview, file_set: RawFileSet, mode: str) -> PreviewHandle:
        previous = preview.live

        if mode == "edit" and previous is not None:
            merged = merge_delta(previous.files, coerce_file_set(file_set))
            files = validate(merged, "edit", self.limits)
        else:
            files = validate(file_set, mode, self.limits)

        if previous is not None and self.storage_policy == "carry_forward":
            state = previous.state.copy_forward()
        else:
            state = CapabilityState.fresh()

        live = await self.build(files, state, preview)
        preview.live = live
        logger.info(
            "Preview %s live at generation %d (replacing %s)",
            preview.handle_id, live.generation, previous.generation if previous else None,
        )
        if previous is not None:
            await self.teardown(previous)
        return PreviewHandle(preview.handle_id, live.generation)

    async def dispose(self, handle: PreviewHandle) -> None:
        """Tear the preview down. Disposing twice is a no-op."""
        preview = self._previews.get(handle.handle_id)
        if preview is None or preview.disposed:
            logger.debug("Dispose of %s ignored: not live", handle.handle_id)
            return
        async with preview.lock:
            preview.disposed = True
            live, preview.live = preview.live, None
            if live is not None:
                await self.teardown(live)
        self._previews.pop(handle.handle_id, None)
        logger.info("Preview %s disposed", handle.handle_id)

    def inspect(self, handle: PreviewHandle) -> InspectReport:
        preview = self._previews.get(handle.handle_id)
        if preview is None:
            return InspectReport(handle_id=handle.handle_id, disposed=True)
        live = preview.live
        return InspectReport(
            handle_id=preview.handle_id,
            live_generation=live.generation if live else None,
            capability_log=list(preview.log),
            pending_message_count=live.bridge.pending_count if live else 0,
            resource_count=len(live.table) if live else 0,
            live_reference_count=self.materializer.live_reference_count(live.generation) if live else 0,
            rejected_resolutions=live.bridge.rejected_resolutions if live else 0,
            warnings=live.warnings if live else [],
            disposed=preview.disposed,
        )

    async def send(
        self,
        handle: PreviewHandle,
        payload: Any,
        receiver: ContextKind = ContextKind.EXTENSION,
        timeout: Optional[float] = None,
    ) -> MessageResult:
        """Send a message from the UI into the live generation."""
        preview = self._previews.get(handle.handle_id)
        if preview is None or preview.live is None:
            return MessageResult("not_routable", error=f"Preview {handle.handle_id} has no live generation")
        return await preview.live.bridge.request(ContextKind.UI, receiver, payload, timeout)

    def live(self, handle: PreviewHandle) -> Optional[LiveGeneration]:
        preview = self._previews.get(handle.handle_id)
        return preview.live if preview else None

    # ------------------------------------------------------------------
    # Build / teardown
    # ------------------------------------------------------------------

    async def build(self, files: ValidatedFileSet, state: CapabilityState, preview: _Preview) -> LiveGeneration:
        """
        Materialize and assemble one generation and wait for it to be ready.

        The returned generation is routable. If anything fails, whatever was
        created for it is torn down before the error propagates.
        """
        table = self.materializer.materialize(files, system_assets())
        generation = table.generation
        bridge = MessageBridge(generation, self.message_timeout)
        live: Optional[LiveGeneration] = None
        try:
            identity = issue_identity()
            documents = self.assembler.assemble(table, identity)
            mode = detect_mode(identity, self.host)

            def record(call: CapabilityCall):
                preview.log.append(call)

            hooks = self.hooks + [record]
            page = SimulatedPage(document=documents.page.html) if documents.page else None
            shims = {
                doc.context: CapabilityShim(
                    generation, state, bridge, mode, doc.context, self.host, page, hooks
                )
                for doc in documents.documents
            }
            contexts = [
                self.context_factory(doc, shims[doc.context], self.materializer.redeem, preview.channel)
                for doc in documents.documents
            ]
            live = LiveGeneration(generation, files, table, state, bridge, documents, shims, contexts)

            for context in contexts:
                await context.load()
            for context in contexts:
                await context.wait_ready(self.ready_timeout)
            bridge.open()
        except PreviewError as e:
            logger.warning("Generation %d failed to build: %s", generation, e.message)
            await self._abandon(generation, bridge, live)
            raise
        except Exception as e:
            logger.exception("Generation %d failed to build", generation)
            await self._abandon(generation, bridge, live)
            raise AssemblyError(
                f"Generation {generation} failed to load: {e}",
                code="load_failed",
                details={"generation": generation},
            ) from e

        logger.debug("Generation %d ready with %d contexts", generation, len(live.contexts))
        return live

    async def _abandon(self, generation: int, bridge: MessageBridge, live: Optional[LiveGeneration]):
        if live is not None:
            await self.teardown(live)
        else:
            await bridge.close("build failed")
            self.materializer.retire(generation)

    async def teardown(self, live: LiveGeneration) -> None:
        """Close routing, discard contexts and retire resources, exactly once."""
        if live.torn_down:
            return
        live.torn_down = True
        await live.bridge.close("context discarded")
        for context in live.contexts:
            try:
                await context.discard()
            except Exception as e:
                logger.warning("Discarding a context of generation %d failed: %s", live.generation, e)
        self.materializer.retire(live.generation)
        logger.debug("Generation %d torn down", live.generation)

    async def shutdown(self):
        for handle_id in list(self._previews):
            await self.dispose(PreviewHandle(handle_id, 0))

    def _require(self, handle: PreviewHandle) -> _Preview:
        preview = self._previews.get(handle.handle_id)
        if preview is None or preview.disposed:
            raise AssemblyError(
                f"Preview {handle.handle_id} is not live",
                code="not_live",
                details={"handle_id": handle.handle_id},
            )
        return preview
