"""
Virtual File System - Turn admitted files into revocable resource handles.

Responsibilities:
- Mint one ephemeral reference per file, scoped to a single generation
- Serve (redeem) references while their generation is live
- Retire a generation exactly once, revoking every reference it minted

References look like ``/_preview/<token>/<filename>``. The token is random
and only meaningful to the materializer that minted it, in this process.
"""

import itertools
import logging
import secrets
import threading
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from src.config import get_config
from src.errors import AssemblyError, LifecycleError
from src.sandbox.admission import ValidatedFileSet
from src.utils import decode_binary_payload, is_binary_path, media_type_for, normalize_path

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class ResourceHandle:
    """An addressable, revocable reference to one file of one generation."""
    path: str
    media_type: str
    ephemeral_reference: str
    generation: int
    system: bool = False

    def to_dict(self) -> Dict:
        return {
            "path": self.path,
            "media_type": self.media_type,
            "ephemeral_reference": self.ephemeral_reference,
            "generation": self.generation,
            "system": self.system,
        }


@dataclass(frozen=True)
class _Blob:
    generation: int
    path: str
    media_type: str
    payload: bytes


class ResourceTable:
    """
    The complete set of handles for one generation.

    Bundle files and preview system files (shim, DOM bindings) are kept
    apart so that ``len(table)`` counts only what the bundle supplied.
    """

    def __init__(
        self,
        generation: int,
        files: ValidatedFileSet,
        handles: Dict[str, ResourceHandle],
        system_handles: Dict[str, ResourceHandle],
    ):
        self.generation = generation
        self.files = files
        self._handles = handles
        self._system_handles = system_handles

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, path: str) -> bool:
        return normalize_path(path) in self._handles

    def __iter__(self) -> Iterator[ResourceHandle]:
        return iter(self._handles.values())

    @property
    def handles(self) -> List[ResourceHandle]:
        return list(self._handles.values())

    @property
    def system_handles(self) -> List[ResourceHandle]:
        return list(self._system_handles.values())

    def all_handles(self) -> List[ResourceHandle]:
        return self.handles + self.system_handles

    def handle_for(self, path: str) -> Optional[ResourceHandle]:
        """Look up a bundle file by the path used to reference it."""
        return self._handles.get(normalize_path(path))

    def system_handle(self, path: str) -> ResourceHandle:
        return self._system_handles[path]

    def reference_for(self, path: str) -> Optional[str]:
        handle = self.handle_for(path)
        return handle.ephemeral_reference if handle else None

    def path_for_reference(self, reference: str) -> Optional[str]:
        for handle in self.all_handles():
            if handle.ephemeral_reference == reference:
                return handle.path
        return None

    def content(self, path: str) -> Optional[str]:
        entry = self.files.get(normalize_path(path))
        return entry.content if entry else None


# =============================================================================
# MATERIALIZER
# =============================================================================

class ResourceMaterializer:
    """
    Owns every ephemeral reference in the process.

    Thread-safe: the UI facade calls in from Streamlit threads while the
    preview event loop redeems references.
    """

    def __init__(self, resource_base: Optional[str] = None):
        self.resource_base = (resource_base or get_config().resource_base).rstrip("/")
        self._lock = threading.Lock()
        self._generation_counter = itertools.count(1)
        self._tables: Dict[int, ResourceTable] = {}
        self._live: Dict[str, _Blob] = {}
        self._retired: set = set()

    def _mint(self, generation: int, path: str, media_type: str, payload: bytes, system: bool) -> ResourceHandle:
        token = secrets.token_urlsafe(18)
        while token in self._live:
            token = secrets.token_urlsafe(18)
        self._live[token] = _Blob(generation, path, media_type, payload)
        reference = f"{self.resource_base}/{token}/{PurePosixPath(path).name}"
        return ResourceHandle(path, media_type, reference, generation, system)

    def materialize(
        self,
        files: ValidatedFileSet,
        system_files: Optional[Mapping[str, str]] = None,
    ) -> ResourceTable:
        """
        Mint handles for every admitted file under a fresh generation.

        Args:
            files: Output of admission
            system_files: Preview-owned files (path -> content) to mint alongside

        Returns:
            A fully populated ResourceTable; nothing is minted lazily
        """
        with self._lock:
            generation = next(self._generation_counter)
            handles: Dict[str, ResourceHandle] = {}
            for entry in files.files:
                handles[entry.path] = self._mint(
                    generation, entry.path, media_type_for(entry.path), _payload(entry.path, entry.content), False
                )
            system_handles: Dict[str, ResourceHandle] = {}
            for path, content in (system_files or {}).items():
                system_handles[path] = self._mint(
                    generation, path, media_type_for(path), content.encode("utf-8"), True
                )
            table = ResourceTable(generation, files, handles, system_handles)
            self._tables[generation] = table

        logger.debug(
            "Materialized generation %d: %d bundle + %d system resources",
            generation, len(handles), len(system_handles),
        )
        return table

    def retire(self, generation: int) -> bool:
        """
        Revoke every reference minted for a generation.

        Retiring an unknown or already-retired generation is a logged no-op.

        Returns:
            True if references were revoked by this call
        """
        with self._lock:
            table = self._tables.pop(generation, None)
            if table is None:
                code = "already_retired" if generation in self._retired else "unknown_generation"
                logger.info("Ignoring retire: %s", LifecycleError(generation, code))
                return False
            revoked = [token for token, blob in self._live.items() if blob.generation == generation]
            for token in revoked:
                del self._live[token]
            self._retired.add(generation)

        logger.info("Retired generation %d (%d references revoked)", generation, len(revoked))
        return True

    def redeem(self, reference: str) -> Tuple[str, bytes]:
        """
        Resolve a reference to (media_type, payload).

        Raises:
            AssemblyError: If the reference was never minted or has been revoked
        """
        token = self._token_of(reference)
        with self._lock:
            blob = self._live.get(token) if token else None
        if blob is None:
            raise AssemblyError(
                f"Resource reference is revoked or unknown: {reference}",
                code="reference_exhausted",
                details={"reference": reference},
            )
        return blob.media_type, blob.payload

    def _token_of(self, reference: str) -> Optional[str]:
        prefix = self.resource_base + "/"
        if not reference.startswith(prefix):
            return None
        return reference[len(prefix):].split("/", 1)[0] or None

    def table(self, generation: int) -> Optional[ResourceTable]:
        with self._lock:
            return self._tables.get(generation)

    def is_retired(self, generation: int) -> bool:
        with self._lock:
            return generation in self._retired

    def live_generations(self) -> List[int]:
        with self._lock:
            return sorted(self._tables)

    def live_reference_count(self, generation: Optional[int] = None) -> int:
        """Count references that can still be redeemed (optionally for one generation)."""
        with self._lock:
            if generation is None:
                return len(self._live)
            return sum(1 for blob in self._live.values() if blob.generation == generation)


def _payload(path: str, content: str) -> bytes:
    if is_binary_path(path):
        decoded = decode_binary_payload(content)
        if decoded is not None:
            return decoded
    return content.encode("utf-8")
