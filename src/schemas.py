"""
Pydantic schemas for file sets handed over by the generation collaborator.
"""

from typing import List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator


class FileEntry(BaseModel):
    """A single bundle file as produced by the generator."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    path: str = Field(..., description="File path relative to the bundle root")
    content: str = Field(..., description="File content (text, or base64 for binary assets)")
    is_binary_hint: bool = Field(
        False,
        alias="isBinaryHint",
        description="Generator's claim that the content is binary",
    )


class FileSet(BaseModel):
    """Ordered set of files making up a full bundle or an edit delta."""
    files: List[FileEntry] = Field(..., description="Bundle files in generation order")
    summary: Optional[str] = Field(None, description="Free-text summary from the generator")
    notes: List[str] = Field(default_factory=list, description="Free-text notes from the generator")

    @field_validator("notes", mode="before")
    @classmethod
    def _coerce_notes(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class ProxyResponse(BaseModel):
    """Response body of the generation proxy (generate / revise phases)."""
    phase: Literal["plan", "generate", "revise"] = Field(..., description="Proxy phase that produced this body")
    files: List[FileEntry] = Field(default_factory=list, description="Generated or changed files")
    notes: List[str] = Field(default_factory=list, description="Optional notes")
    summary: Optional[str] = Field(None, description="Optional summary")

    @field_validator("notes", mode="before")
    @classmethod
    def _coerce_notes(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    def to_file_set(self) -> FileSet:
        return FileSet(files=self.files, summary=self.summary, notes=self.notes)


class CapabilityCall(BaseModel):
    """One instrumented capability invocation, as shown in diagnostics."""
    generation: int
    context: str = Field(..., description="Context the call was made from (extension, page, ui)")
    namespace: str = Field(..., description="storage, runtime, tabs or scripting")
    method: str
    mode: Literal["sandbox", "host"]
    outcome: str = Field("ok", description="ok, or the failure code")
    detail: Optional[str] = None
    timestamp: float


class InspectReport(BaseModel):
    """Read-only diagnostics for a preview handle."""
    handle_id: str
    live_generation: Optional[int] = None
    capability_log: List[CapabilityCall] = Field(default_factory=list)
    pending_message_count: int = 0
    resource_count: int = 0
    live_reference_count: int = 0
    rejected_resolutions: int = 0
    warnings: List[str] = Field(default_factory=list)
    disposed: bool = False


RawFileSet = Union[FileSet, dict, list]
