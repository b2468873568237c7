"""
Sandbox module for previewing generated browser-extension bundles.

Components:
- admission: Validate inbound file sets before anything is materialized
- virtual_fs: Mint and revoke per-generation ephemeral references
- document: Assemble entry documents with a nonce-only script policy
- capabilities / bridge: Simulated host surface and message routing
- context / hub / server: Run entry documents in simulated or real browser frames
- runner: Build, rebuild and tear down generations
- preview: Synchronous facade used by the app
- registry: Track previews per session with TTL
"""

from src.sandbox.admission import AdmissionLimits, ValidatedFileSet, validate
from src.sandbox.bridge import ContextKind, MessageBridge, MessageResult
from src.sandbox.capabilities import CapabilityShim, CapabilityState, HostAdapter, ShimMode, detect_mode
from src.sandbox.context import BrowserContext, SimulatedContext
from src.sandbox.document import DocumentAssembler
from src.sandbox.hub import PreviewHub
from src.sandbox.virtual_fs import ResourceMaterializer, ResourceTable
from src.sandbox.runner import PreviewHandle, PreviewRunner
from src.sandbox.preview import (
    start_preview,
    rebuild_preview,
    stop_preview,
    get_preview_status,
    inspect_preview,
    send_preview_message,
    get_viewer_url,
    PreviewResult,
)
from src.sandbox.registry import (
    PreviewSession,
    get_registry,
    get_session_preview,
    cleanup_expired,
)

__all__ = [
    # Admission
    "AdmissionLimits",
    "ValidatedFileSet",
    "validate",
    # Resources & documents
    "ResourceMaterializer",
    "ResourceTable",
    "DocumentAssembler",
    # Capabilities & messaging
    "CapabilityShim",
    "CapabilityState",
    "HostAdapter",
    "ShimMode",
    "detect_mode",
    "ContextKind",
    "MessageBridge",
    "MessageResult",
    # Contexts
    "SimulatedContext",
    "BrowserContext",
    "PreviewHub",
    # Runner
    "PreviewHandle",
    "PreviewRunner",
    # Preview
    "start_preview",
    "rebuild_preview",
    "stop_preview",
    "get_preview_status",
    "inspect_preview",
    "send_preview_message",
    "get_viewer_url",
    "PreviewResult",
    # Registry
    "PreviewSession",
    "get_registry",
    "get_session_preview",
    "cleanup_expired",
]
