"""Error types for the preview sandbox.

Every failure carries a stable machine-readable ``code`` plus a ``details``
dict so the UI layer can decide how to word it for the user.
"""

from typing import Any, Dict, Optional


class PreviewError(Exception):
    """Base exception for all preview sandbox errors."""

    def __init__(self, message: str, code: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "code": self.code, "message": self.message, "details": self.details}


class ValidationError(PreviewError):
    """Raised when an inbound file set is rejected by admission.

    Always recoverable: the file set is rejected as a whole and nothing
    downstream has seen it.
    """

    def __init__(
        self,
        message: str,
        code: str,
        path: Optional[str] = None,
        limit: Optional[Any] = None,
        actual: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = dict(details or {})
        if path is not None:
            merged["path"] = path
        if limit is not None:
            merged["limit"] = limit
        if actual is not None:
            merged["actual"] = actual
        super().__init__(message, code, merged)
        self.path = path
        self.limit = limit
        self.actual = actual


class AssemblyError(PreviewError):
    """Raised when a generation cannot be built or never becomes ready.

    The previous generation (if any) stays live; retrying the rebuild is safe.
    """


class CapabilityError(PreviewError):
    """Raised for capability calls that have no receiver or cannot be routed."""


class LifecycleError(PreviewError):
    """Describes a retire/teardown of an unknown or already-retired generation.

    Only ever logged; lifecycle operations treat it as a no-op.
    """

    def __init__(self, generation: int, code: str):
        message = f"Generation {generation} is {code.replace('_', ' ')}"
        super().__init__(message, code, {"generation": generation})
        self.generation = generation
