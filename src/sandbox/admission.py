"""
Admission Validator - Reject unsafe file sets before anything executes.

Checks, in order:
- Shape: the inbound value parses as a FileSet (pydantic)
- Count: number of files against the file-count ceiling
- Path safety: relative, non-hidden, no traversal, restricted charset, recognized extension
- Size: cumulative and per-file UTF-8 byte ceilings
- Content hygiene: cheap "is this really text" heuristic for non-binary paths
- Descriptor: manifest.json presence (new bundles) and supported manifest_version

Validation is all-or-nothing: the first failure raises ValidationError and
nothing from the file set is admitted. Non-fatal findings are returned as
warnings on the ValidatedFileSet.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Literal, Optional, Tuple

import esprima
from esprima.error_handler import Error as ScriptSyntaxError
from pydantic import ValidationError as SchemaError

from src.config import get_config
from src.errors import ValidationError
from src.schemas import FileEntry, FileSet, RawFileSet
from src.sandbox import policy
from src.utils import (
    EXTENSION_MEDIA_TYPES,
    get_extension,
    is_binary_path,
    is_remote_url,
    is_script_path,
    normalize_path,
    sanitize_path,
    utf8_length,
)


# =============================================================================
# CONSTANTS
# =============================================================================

DESCRIPTOR_PATH = "manifest.json"
SUPPORTED_MANIFEST_VERSIONS = (3,)

MAX_PATH_LENGTH = 200
SAFE_PATH_PATTERN = re.compile(r"^[A-Za-z0-9_.\-/]+$")

# Chrome's limit on extension names
MAX_NAME_LENGTH = 45
VERSION_PATTERN = re.compile(r"^\d+\.\d+(\.\d+)?$")
REQUIRED_MANIFEST_FIELDS = ("name", "version", "description")

Mode = Literal["new", "edit"]
MODES = ("new", "edit")

_SCRIPT_SRC = re.compile(r"<script\b[^>]*\bsrc\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)
_STYLESHEET_HREF = re.compile(
    r"<link\b(?=[^>]*rel\s*=\s*[\"']?stylesheet)[^>]*\bhref\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE
)
_MODULE_SYNTAX = re.compile(r"^\s*(import|export)\b", re.MULTILINE)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class AdmissionLimits:
    """Fixed ceilings applied by the validator."""
    max_files: int = 40
    max_total_bytes: int = 400 * 1024
    max_file_bytes: int = 256 * 1024
    text_sample_chars: int = 5000
    max_control_ratio: float = 0.05

    @classmethod
    def from_config(cls) -> "AdmissionLimits":
        config = get_config()
        return cls(
            max_files=config.max_files,
            max_total_bytes=config.max_total_bytes,
            max_file_bytes=config.max_file_bytes,
            text_sample_chars=config.text_sample_chars,
            max_control_ratio=config.max_control_ratio,
        )


@dataclass(frozen=True)
class ValidatedFileSet:
    """A file set that passed admission. Immutable; owned by one generation."""
    files: Tuple[FileEntry, ...]
    mode: Mode
    total_bytes: int
    manifest: Optional[Dict] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]

    def get(self, path: str) -> Optional[FileEntry]:
        for entry in self.files:
            if entry.path == path:
                return entry
        return None

    def as_dict(self) -> Dict[str, str]:
        return {f.path: f.content for f in self.files}


# =============================================================================
# SHAPE
# =============================================================================

def coerce_file_set(raw: RawFileSet) -> FileSet:
    """
    Parse an untrusted inbound value into a FileSet.

    Accepts a FileSet, a ``{"files": [...]}`` mapping, or a bare list of
    ``{"path", "content"}`` entries.

    Raises:
        ValidationError: If the value does not have the expected shape
    """
    if isinstance(raw, FileSet):
        return raw
    if isinstance(raw, list):
        raw = {"files": raw}
    if not isinstance(raw, dict):
        raise ValidationError(
            f"File set must be an object or a list of files, got {type(raw).__name__}",
            code="malformed",
        )
    try:
        return FileSet.model_validate(raw)
    except SchemaError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(
            f"Malformed file set at '{location or 'files'}': {first.get('msg', str(e))}",
            code="malformed",
            details={"errors": e.error_count()},
        ) from e


# =============================================================================
# INDIVIDUAL CHECKS
# =============================================================================

def check_path(path: str) -> Optional[str]:
    """
    Check a bundle path against the path-safety rules.

    Args:
        path: Path after separator sanitising

    Returns:
        Reason the path is unsafe, or None if it is acceptable
    """
    if not path:
        return "path is empty"
    if len(path) > MAX_PATH_LENGTH:
        return f"path is longer than {MAX_PATH_LENGTH} characters"
    if path.startswith("/"):
        return "path is absolute"
    if path.startswith("."):
        return "path starts with '.'"
    if not SAFE_PATH_PATTERN.match(path):
        return "path contains characters outside [A-Za-z0-9_.-/]"
    segments = path.split("/")
    if any(segment == ".." for segment in segments):
        return "path contains a '..' traversal"
    if any(segment == "" for segment in segments):
        return "path contains an empty segment"
    if any(segment.startswith(".") for segment in segments):
        return "path contains a hidden segment"
    extension = get_extension(path)
    if not extension:
        return "path has no file extension"
    if extension not in EXTENSION_MEDIA_TYPES:
        return f"extension '{extension}' is not recognized"
    return None


def looks_like_text(content: str, sample_chars: int = 5000, max_control_ratio: float = 0.05) -> bool:
    """
    Cheap heuristic: is this content actually text?

    Samples a prefix and counts control characters other than tab, newline
    and carriage return. Not an encoding validator.
    """
    sample = content[:sample_chars]
    if not sample:
        return True
    control = 0
    for char in sample:
        code = ord(char)
        if code in (9, 10, 13):
            continue
        if code < 32 or code == 127:
            control += 1
    return control / len(sample) <= max_control_ratio


def check_descriptor(content: str) -> Dict:
    """
    Parse manifest.json and check its declared version.

    Raises:
        ValidationError: On parse errors or an unsupported manifest_version
    """
    try:
        manifest = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValidationError(
            f"Invalid {DESCRIPTOR_PATH}: {e.msg} (line {e.lineno}, column {e.colno})",
            code="invalid_descriptor",
            path=DESCRIPTOR_PATH,
        ) from e

    if not isinstance(manifest, dict):
        raise ValidationError(
            f"Invalid {DESCRIPTOR_PATH}: expected a JSON object, got {type(manifest).__name__}",
            code="invalid_descriptor",
            path=DESCRIPTOR_PATH,
        )

    declared = manifest.get("manifest_version")
    if _as_version(declared) not in SUPPORTED_MANIFEST_VERSIONS:
        supported = ", ".join(str(v) for v in SUPPORTED_MANIFEST_VERSIONS)
        raise ValidationError(
            f"Unsupported manifest_version {declared!r} in {DESCRIPTOR_PATH}; supported: {supported}",
            code="unsupported_version",
            path=DESCRIPTOR_PATH,
            limit=list(SUPPORTED_MANIFEST_VERSIONS),
            actual=declared,
        )
    return manifest


def _as_version(declared) -> Optional[int]:
    # 3 and "3" are accepted; 3.5, True and "v3" are not
    if isinstance(declared, bool):
        return None
    if isinstance(declared, int):
        return declared
    if isinstance(declared, str) and declared.strip().isdigit():
        return int(declared.strip())
    return None


# =============================================================================
# WARNINGS
# =============================================================================

def check_script_syntax(content: str) -> Optional[Tuple[int, int, str]]:
    """
    Parse a script and report the first syntax error.

    Files using import/export are parsed as modules, everything else as a
    classic script.

    Returns:
        (line, column, message) of the first error, or None if it parses
    """
    parse = esprima.parseModule if _MODULE_SYNTAX.search(content) else esprima.parseScript
    try:
        parse(content)
    except ScriptSyntaxError as e:
        message = getattr(e, "description", None) or str(e)
        return getattr(e, "lineNumber", None) or 0, getattr(e, "column", None) or 0, message
    return None


def declared_files(manifest: Dict) -> Iterator[Tuple[str, str]]:
    """Yield (field, path) for every bundle file the manifest points at."""
    icons = manifest.get("icons")
    if isinstance(icons, dict):
        for path in icons.values():
            yield "manifest.icons", path

    action = manifest.get("action")
    if isinstance(action, dict):
        icon = action.get("default_icon")
        if isinstance(icon, dict):
            for path in icon.values():
                yield "manifest.action.default_icon", path
        elif icon is not None:
            yield "manifest.action.default_icon", icon
        if action.get("default_popup") is not None:
            yield "manifest.action.default_popup", action["default_popup"]

    background = manifest.get("background")
    if isinstance(background, dict):
        if background.get("service_worker") is not None:
            yield "manifest.background.service_worker", background["service_worker"]
        for path in background.get("scripts") or []:
            yield "manifest.background.scripts", path

    for entry in manifest.get("content_scripts") or []:
        if not isinstance(entry, dict):
            continue
        for key in ("js", "css"):
            for path in entry.get(key) or []:
                yield f"manifest.content_scripts.{key}", path


def collect_warnings(files: Dict[str, str], manifest: Optional[Dict]) -> List[str]:
    """Non-fatal findings worth surfacing next to the preview."""
    warnings: List[str] = []

    if manifest is not None:
        for name in REQUIRED_MANIFEST_FIELDS:
            if not manifest.get(name):
                warnings.append(f"manifest.{name}: required field is missing")
        name = manifest.get("name")
        if isinstance(name, str) and len(name) > MAX_NAME_LENGTH:
            warnings.append(f"manifest.name: {len(name)} characters, Chrome allows {MAX_NAME_LENGTH}")
        version = manifest.get("version")
        if isinstance(version, str) and not VERSION_PATTERN.match(version):
            warnings.append(f"manifest.version: '{version}' is not in x.y.z format")
        for name, path in declared_files(manifest):
            if not isinstance(path, str) or not path.strip():
                warnings.append(f"{name}: expected a file path, got {path!r}")
            elif is_remote_url(path) or normalize_path(path) not in files:
                warnings.append(f"{name}: '{path}' is not in the bundle")

    for path, content in files.items():
        if is_script_path(path):
            error = check_script_syntax(content)
            if error:
                line, column, message = error
                warnings.append(f"{path}: syntax error at line {line}, column {column}: {message}")
            continue
        if get_extension(path) not in (".html", ".htm"):
            continue
        for violation in policy.scan_policy_violations(content):
            warnings.append(f"{path}: {violation.kind.replace('_', ' ')} will be removed ({violation.snippet})")
        for src in _SCRIPT_SRC.findall(content):
            if is_remote_url(src):
                warnings.append(f"{path}: remote script '{src}' is not allowed and will not load")
            elif normalize_path(src) not in files:
                warnings.append(f"{path}: referenced script '{src}' is not in the bundle")
        for href in _STYLESHEET_HREF.findall(content):
            if is_remote_url(href):
                warnings.append(f"{path}: remote stylesheet '{href}' is blocked by the preview policy")
            elif normalize_path(href) not in files:
                warnings.append(f"{path}: referenced stylesheet '{href}' is not in the bundle")

    return warnings


# =============================================================================
# VALIDATION
# =============================================================================

def validate(
    file_set: RawFileSet,
    mode: Mode = "new",
    limits: Optional[AdmissionLimits] = None,
) -> ValidatedFileSet:
    """
    Validate an inbound file set.

    Args:
        file_set: FileSet, ``{"files": [...]}`` mapping or list of entries
        mode: "new" for a full bundle (descriptor required), "edit" for a delta
        limits: Ceilings to enforce (defaults from configuration)

    Returns:
        ValidatedFileSet with sanitised paths and parsed descriptor

    Raises:
        ValidationError: On the first failed check; nothing is admitted
    """
    if mode not in MODES:
        raise ValidationError(f"Unknown validation mode '{mode}'", code="malformed", details={"mode": mode})
    limits = limits or AdmissionLimits.from_config()
    parsed = coerce_file_set(file_set)

    if not parsed.files:
        raise ValidationError("No files in file set", code="empty")
    if len(parsed.files) > limits.max_files:
        raise ValidationError(
            f"File count {len(parsed.files)} exceeds limit of {limits.max_files}",
            code="too_many_files",
            limit=limits.max_files,
            actual=len(parsed.files),
        )

    admitted: List[FileEntry] = []
    seen = set()
    total = 0
    for entry in parsed.files:
        path = sanitize_path(entry.path)
        reason = check_path(path)
        if reason:
            raise ValidationError(f"Unsafe path '{entry.path}': {reason}", code="unsafe_path", path=entry.path)
        if path in seen:
            raise ValidationError(f"Duplicate path '{path}'", code="duplicate_path", path=path)
        seen.add(path)

        try:
            size = utf8_length(entry.content)
        except UnicodeEncodeError as e:
            raise ValidationError(
                f"File '{path}' is not valid text: {e.reason} at character {e.start}",
                code="non_text",
                path=path,
            ) from e
        total += size
        if total > limits.max_total_bytes:
            raise ValidationError(
                f"Total size {total} bytes exceeds limit of {limits.max_total_bytes} bytes (at '{path}')",
                code="total_too_large",
                path=path,
                limit=limits.max_total_bytes,
                actual=total,
            )
        if size > limits.max_file_bytes:
            raise ValidationError(
                f"File '{path}' is {size} bytes, limit is {limits.max_file_bytes} bytes",
                code="file_too_large",
                path=path,
                limit=limits.max_file_bytes,
                actual=size,
            )

        binary_path = is_binary_path(path)
        if entry.is_binary_hint and not binary_path:
            raise ValidationError(
                f"File '{path}' is declared binary but has a text extension",
                code="binary_mismatch",
                path=path,
            )
        if not binary_path and not looks_like_text(entry.content, limits.text_sample_chars, limits.max_control_ratio):
            raise ValidationError(
                f"File appears non-text: '{path}'",
                code="non_text",
                path=path,
                limit=limits.max_control_ratio,
            )

        admitted.append(entry if path == entry.path else entry.model_copy(update={"path": path}))

    manifest = None
    descriptor = next((f for f in admitted if f.path == DESCRIPTOR_PATH), None)
    if descriptor is None:
        if mode == "new":
            raise ValidationError(
                f"{DESCRIPTOR_PATH} missing from new bundle", code="missing_descriptor", path=DESCRIPTOR_PATH
            )
    else:
        manifest = check_descriptor(descriptor.content)

    contents = {f.path: f.content for f in admitted}
    return ValidatedFileSet(
        files=tuple(admitted),
        mode=mode,
        total_bytes=total,
        manifest=manifest,
        warnings=tuple(collect_warnings(contents, manifest)),
    )


def merge_delta(base: ValidatedFileSet, delta: FileSet) -> FileSet:
    """
    Overlay an edit delta on a previously admitted file set.

    Changed paths replace the base entry in place; new paths are appended.
    The result still has to go through validate().
    """
    replacements = {sanitize_path(f.path): f for f in delta.files}
    merged: List[FileEntry] = []
    for entry in base.files:
        merged.append(replacements.pop(entry.path, entry))
    merged.extend(replacements.values())
    return FileSet(files=merged, summary=delta.summary, notes=delta.notes)
