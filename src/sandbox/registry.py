"""
Preview Registry - Track live previews per UI session with TTL management.

Responsibilities:
- Store preview info (handle, generation, session, last activity)
- Look up the live preview of a UI session
- Track TTL and dispose idle previews from a background thread
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from src.config import get_config

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

DEFAULT_TTL_MINUTES = 15

# Seconds between expiry sweeps
CLEANUP_INTERVAL = 60


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class PreviewSession:
    """Information about a live preview."""
    handle_id: str
    session_id: str
    generation: int
    last_active: str  # ISO format
    ttl_minutes: int
    resource_count: int
    status: str  # "running", "stopped", "expired"

    def to_dict(self) -> Dict:
        return asdict(self)

    def is_expired(self) -> bool:
        """Check if the preview has been idle longer than its TTL."""
        expiry = datetime.fromisoformat(self.last_active) + timedelta(minutes=self.ttl_minutes)
        return datetime.now() > expiry

    def time_remaining(self) -> int:
        """Get remaining idle time in seconds."""
        expiry = datetime.fromisoformat(self.last_active) + timedelta(minutes=self.ttl_minutes)
        return max(0, int((expiry - datetime.now()).total_seconds()))

    def time_remaining_formatted(self) -> str:
        seconds = self.time_remaining()
        return f"{seconds // 60}m {seconds % 60}s"


ExpiryCallback = Callable[[PreviewSession], None]


# =============================================================================
# REGISTRY CLASS
# =============================================================================

class PreviewRegistry:
    """
    Manages the registry of live previews.

    Thread-safe: Streamlit reruns, the preview event loop and the cleanup
    thread all touch it.
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        """Singleton pattern for registry."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._sessions: Dict[str, PreviewSession] = {}
        self._on_expire: List[ExpiryCallback] = []
        self._initialized = True

        self._start_cleanup_thread()

    def _start_cleanup_thread(self):
        """Start background thread for periodic cleanup."""
        def cleanup_loop():
            while True:
                time.sleep(CLEANUP_INTERVAL)
                self.sweep()

        thread = threading.Thread(target=cleanup_loop, daemon=True, name="preview-registry-cleanup")
        thread.start()

    def on_expire(self, callback: ExpiryCallback) -> None:
        """Register a callback that disposes an expired preview."""
        with self._lock:
            if callback not in self._on_expire:
                self._on_expire.append(callback)

    def register(
        self,
        handle_id: str,
        session_id: str,
        generation: int,
        resource_count: int = 0,
        ttl_minutes: Optional[int] = None,
    ) -> PreviewSession:
        session = PreviewSession(
            handle_id=handle_id,
            session_id=session_id,
            generation=generation,
            last_active=datetime.now().isoformat(),
            ttl_minutes=ttl_minutes or get_config().ttl_minutes or DEFAULT_TTL_MINUTES,
            resource_count=resource_count,
            status="running",
        )
        with self._lock:
            self._sessions[handle_id] = session
        return session

    def get(self, handle_id: str) -> Optional[PreviewSession]:
        return self._sessions.get(handle_id)

    def get_by_session(self, session_id: str) -> Optional[PreviewSession]:
        """Get the running preview for a UI session."""
        for session in list(self._sessions.values()):
            if session.session_id == session_id and session.status == "running":
                return session
        return None

    def get_running(self) -> List[PreviewSession]:
        return [s for s in self._sessions.values() if s.status == "running"]

    def touch(self, handle_id: str, generation: Optional[int] = None, resource_count: Optional[int] = None):
        """Record activity (and optionally a new generation) for a preview."""
        with self._lock:
            session = self._sessions.get(handle_id)
            if session is None:
                return
            session.last_active = datetime.now().isoformat()
            if generation is not None:
                session.generation = generation
            if resource_count is not None:
                session.resource_count = resource_count

    def update_status(self, handle_id: str, status: str) -> None:
        with self._lock:
            if handle_id in self._sessions:
                self._sessions[handle_id].status = status

    def cleanup_expired(self) -> List[str]:
        """
        Dispose previews idle past their TTL.

        Returns:
            Handle ids that expired in this sweep
        """
        with self._lock:
            expired = [s for s in self._sessions.values() if s.status == "running" and s.is_expired()]
            for session in expired:
                session.status = "expired"
            callbacks = list(self._on_expire)

        for session in expired:
            logger.info("Preview %s expired after %d idle minutes", session.handle_id, session.ttl_minutes)
            for callback in callbacks:
                try:
                    callback(session)
                except Exception as e:
                    logger.warning("Disposing expired preview %s failed: %s", session.handle_id, e)
        return [s.handle_id for s in expired]

    def clear_stale(self) -> int:
        """Drop entries for stopped or expired previews."""
        with self._lock:
            stale = [k for k, s in self._sessions.items() if s.status in ("stopped", "expired")]
            for handle_id in stale:
                del self._sessions[handle_id]
        return len(stale)

    def sweep(self) -> List[str]:
        """
        One pass of the cleanup thread.

        Entries that were already stopped or expired are dropped first, so a
        preview that expires in this pass stays visible until the next one.

        Returns:
            Handle ids that expired in this pass
        """
        cleared = self.clear_stale()
        if cleared:
            logger.debug("Dropped %d stale preview entries", cleared)
        return self.cleanup_expired()


# =============================================================================
# MODULE-LEVEL FUNCTIONS
# =============================================================================

def get_registry() -> PreviewRegistry:
    """Get the singleton registry instance."""
    return PreviewRegistry()


def get_session_preview(session_id: str) -> Optional[PreviewSession]:
    """Get the running preview for a UI session."""
    return get_registry().get_by_session(session_id)


def cleanup_expired() -> List[str]:
    return get_registry().cleanup_expired()
