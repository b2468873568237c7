"""
Document Assembler - Build the entry documents of an isolated preview context.

Load order inside every assembled document:
1. capability shim (head, before anything else can run)
2. bundle scripts: background scripts, then the entry page's declared
   scripts in document order (content scripts for the simulated page)
3. DOM binding module (end of body)

Every script is referenced through an ephemeral reference from the
generation's ResourceTable and carries the document's nonce; the
Content-Security-Policy only admits nonce-bearing scripts, so nothing
inline and nothing from a network origin can run.
"""

import html as html_lib
import posixpath
import re
import secrets
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Literal, Optional, Tuple

from src.config import get_config
from src.errors import AssemblyError
from src.sandbox import policy
from src.sandbox.bridge import ContextKind
from src.sandbox.virtual_fs import ResourceTable
from src.utils import is_remote_url, is_script_path, normalize_path


# =============================================================================
# CONSTANTS
# =============================================================================

ASSETS_DIR = Path(__file__).parent / "assets"
SHIM_PATH = "__preview__/chrome-shim.js"
BINDING_PATH = "__preview__/dom-bindings.js"

DEFAULT_ENTRY_PATH = "popup.html"
DEFAULT_SCRIPT_ORDER = ("popup.js",)

PLACEHOLDER_POPUP = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Extension Preview</title></head>
<body><div id="app"><p>This bundle has no popup page.</p></div></body>
</html>"""

DEMO_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Extension Preview Tab</title></head>
<body>
<header><h1>Example Domain</h1></header>
<main>
<p>This page stands in for the active tab. Content scripts run here.</p>
<ul><li><a href="#one">First item</a></li><li><a href="#two">Second item</a></li></ul>
</main>
</body>
</html>"""

Phase = Literal["shim", "bundle", "binding"]

_SCRIPT_SRC = re.compile(r"<script\b[^>]*\bsrc\s*=\s*([\"'])(.*?)\1[^>]*>", re.IGNORECASE)
_HEAD_OPEN = re.compile(r"<head\b[^>]*>", re.IGNORECASE)
_HTML_OPEN = re.compile(r"<html\b[^>]*>", re.IGNORECASE)
_BODY_CLOSE = re.compile(r"</body\s*>", re.IGNORECASE)
_ASSET_ATTR = re.compile(r"\b(src|href)\s*=\s*([\"'])(.*?)\2", re.IGNORECASE)
_CSS_URL = re.compile(r"url\(\s*([\"']?)([^\"')]+)\1\s*\)", re.IGNORECASE)
_CSS_IMPORT = re.compile(r"@import\s+([\"'])([^\"']+)\1", re.IGNORECASE)

_PASSTHROUGH_PREFIXES = ("data:", "blob:", "#", "mailto:", "chrome-extension:", "about:")


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class LoadStep:
    phase: Phase
    path: str
    reference: str


@dataclass
class EntryDocument:
    """One assembled HTML document and the script order it encodes."""
    context: ContextKind
    entry_path: Optional[str]
    html: str
    load_plan: List[LoadStep]
    nonce: str
    identity: str = ""

    def scripts(self, phase: Optional[Phase] = None) -> List[str]:
        return [step.path for step in self.load_plan if phase is None or step.phase == phase]


@dataclass
class AssembledDocuments:
    """Documents for one generation: the popup, and the simulated page if any."""
    generation: int
    identity: str
    popup: EntryDocument
    page: Optional[EntryDocument] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def documents(self) -> List[EntryDocument]:
        return [self.popup] + ([self.page] if self.page else [])


# =============================================================================
# SYSTEM ASSETS
# =============================================================================

@lru_cache(maxsize=1)
def system_assets() -> Dict[str, str]:
    """Preview-owned scripts minted next to every generation's bundle files."""
    return {
        SHIM_PATH: (ASSETS_DIR / "chrome-shim.js").read_text(encoding="utf-8"),
        BINDING_PATH: (ASSETS_DIR / "dom-bindings.js").read_text(encoding="utf-8"),
    }


def issue_identity() -> str:
    """Fresh identity token, injected by the assembler before any bundle code runs."""
    return secrets.token_urlsafe(24)


# =============================================================================
# MANIFEST HELPERS
# =============================================================================

def resolve_entry_path(manifest: Optional[Dict], table: ResourceTable) -> Optional[str]:
    """action.default_popup, then browser_action.default_popup, then popup.html."""
    manifest = manifest or {}
    for key in ("action", "browser_action"):
        section = manifest.get(key)
        if isinstance(section, dict) and isinstance(section.get("default_popup"), str):
            candidate = normalize_path(section["default_popup"])
            if candidate in table:
                return candidate
    return DEFAULT_ENTRY_PATH if DEFAULT_ENTRY_PATH in table else None


def background_scripts(manifest: Optional[Dict]) -> List[str]:
    background = (manifest or {}).get("background")
    if not isinstance(background, dict):
        return []
    if isinstance(background.get("service_worker"), str):
        return [normalize_path(background["service_worker"])]
    scripts = background.get("scripts")
    if isinstance(scripts, list):
        return [normalize_path(s) for s in scripts if isinstance(s, str)]
    return []


def content_scripts(manifest: Optional[Dict]) -> List[str]:
    """Content script paths in declared order, de-duplicated."""
    ordered: List[str] = []
    entries = (manifest or {}).get("content_scripts")
    for entry in entries if isinstance(entries, list) else []:
        if not isinstance(entry, dict) or not isinstance(entry.get("js"), list):
            continue
        for path in entry["js"]:
            if isinstance(path, str) and normalize_path(path) not in ordered:
                ordered.append(normalize_path(path))
    return ordered


def declared_scripts(markup: str, base_dir: str = "") -> Tuple[List[str], List[str]]:
    """
    Script sources declared by an HTML page, in document order.

    Returns:
        (local paths relative to the bundle root, remote URLs)
    """
    local: List[str] = []
    remote: List[str] = []
    for match in _SCRIPT_SRC.finditer(markup):
        src = html_lib.unescape(match.group(2).strip())
        if is_remote_url(src):
            remote.append(src)
        elif src:
            local.append(_join(base_dir, src))
    return local, remote


def _join(base_dir: str, reference: str) -> str:
    if reference.startswith("/"):
        return normalize_path(reference)
    return normalize_path(posixpath.normpath(posixpath.join(base_dir, normalize_path(reference))))


# =============================================================================
# ASSEMBLER
# =============================================================================

class DocumentAssembler:
    """Turns a ResourceTable into the entry documents for one generation.

    Args:
        origin: Origin the documents are served from (e.g. the preview
            server). Added to the style, image, font and connect sources so
            resources still load inside an opaque-origin sandboxed frame.
        resource_base: Path prefix the capability channel lives under
    """

    def __init__(self, origin: Optional[str] = None, resource_base: Optional[str] = None):
        self.origin = origin.rstrip("/") if origin else None
        self.resource_base = resource_base if resource_base is not None else get_config().resource_base

    @property
    def resource_sources(self) -> List[str]:
        if not self.origin:
            return []
        socket_origin = re.sub(r"^http", "ws", self.origin)
        return [self.origin, socket_origin]

    def assemble(self, table: ResourceTable, identity: str) -> AssembledDocuments:
        """
        Build the popup document (and the simulated page when the manifest
        declares content scripts).

        Raises:
            AssemblyError: If a system asset is missing from the table or the
                finished document still needs inline execution
        """
        manifest = table.files.manifest
        warnings: List[str] = []

        entry_path = resolve_entry_path(manifest, table)
        markup = table.content(entry_path) if entry_path else None
        if markup is None:
            markup = PLACEHOLDER_POPUP
            warnings.append("No popup page found; showing a placeholder")

        base_dir = posixpath.dirname(entry_path) if entry_path else ""
        declared, remote = declared_scripts(markup, base_dir)
        for src in remote:
            warnings.append(f"Remote script dropped: {src}")

        background = background_scripts(manifest)
        injected = set(content_scripts(manifest))
        if not declared:
            declared = self._default_order(table, set(background) | injected)

        bundle_scripts = self._present(table, background + declared, warnings)
        popup = self._build(
            table, identity, ContextKind.EXTENSION, entry_path, markup, base_dir, bundle_scripts
        )

        page = None
        if injected:
            page_scripts = self._present(table, content_scripts(manifest), warnings)
            page = self._build(table, identity, ContextKind.PAGE, None, DEMO_PAGE, "", page_scripts)

        return AssembledDocuments(table.generation, identity, popup, page, warnings)

    def _default_order(self, table: ResourceTable, exclude: set) -> List[str]:
        return [path for path in DEFAULT_SCRIPT_ORDER if path in table and path not in exclude]

    def _present(self, table: ResourceTable, paths: List[str], warnings: List[str]) -> List[str]:
        present: List[str] = []
        for path in paths:
            if path in present:
                continue
            if path not in table:
                warnings.append(f"Script not in bundle, skipped: {path}")
            elif not is_script_path(path):
                warnings.append(f"Not a script, skipped: {path}")
            else:
                present.append(path)
        return present

    def _build(
        self,
        table: ResourceTable,
        identity: str,
        context: ContextKind,
        entry_path: Optional[str],
        markup: str,
        base_dir: str,
        bundle_scripts: List[str],
    ) -> EntryDocument:
        try:
            shim = table.system_handle(SHIM_PATH)
            binding = table.system_handle(BINDING_PATH)
        except KeyError as e:
            raise AssemblyError(
                f"System asset missing from generation {table.generation}: {e}",
                code="load_failed",
                details={"generation": table.generation},
            ) from e

        nonce = secrets.token_urlsafe(16)
        plan = [LoadStep("shim", SHIM_PATH, shim.ephemeral_reference)]
        plan += [LoadStep("bundle", path, table.reference_for(path)) for path in bundle_scripts]
        plan.append(LoadStep("binding", BINDING_PATH, binding.ephemeral_reference))

        markup = policy.strip_inline_execution(markup)
        markup = policy.ANY_SCRIPT.sub("", markup)
        markup = policy.EXISTING_CSP_META.sub("", markup)
        markup = self._rewrite_assets(markup, table, base_dir)

        head = "\n".join(
            [
                policy.csp_meta_tag(policy.build_csp([f"'nonce-{nonce}'"], self.resource_sources)),
                f'<meta name="preview-identity" content="{identity}" data-context="{context.value}"'
                f' data-base="{html_lib.escape(self.resource_base)}">',
                _script_tag(plan[0].reference, nonce),
            ]
        )
        tail = "\n".join(_script_tag(step.reference, nonce) for step in plan[1:])
        markup = _insert_head(markup, head)
        markup = _insert_before_body_close(markup, tail)

        violations = policy.scan_policy_violations(markup)
        if violations:
            raise AssemblyError(
                f"Assembled {context.value} document still needs inline execution: {violations[0].kind}",
                code="policy_violation",
                details={"violations": [v.kind for v in violations]},
            )
        return EntryDocument(context, entry_path, markup, plan, nonce, identity)

    def _rewrite_assets(self, markup: str, table: ResourceTable, base_dir: str) -> str:
        """Point local src/href, url() and @import references at ephemeral references."""

        def resolve(reference: str) -> Optional[str]:
            reference = html_lib.unescape(reference.strip())
            if not reference or is_remote_url(reference) or reference.lower().startswith(_PASSTHROUGH_PREFIXES):
                return None
            return table.reference_for(_join(base_dir, reference))

        def attr(match: re.Match) -> str:
            replaced = resolve(match.group(3))
            return f"{match.group(1)}={match.group(2)}{replaced}{match.group(2)}" if replaced else match.group(0)

        def css_url(match: re.Match) -> str:
            replaced = resolve(match.group(2))
            return f"url({match.group(1)}{replaced}{match.group(1)})" if replaced else match.group(0)

        def css_import(match: re.Match) -> str:
            replaced = resolve(match.group(2))
            return f"@import {match.group(1)}{replaced}{match.group(1)}" if replaced else match.group(0)

        markup = _ASSET_ATTR.sub(attr, markup)
        markup = _CSS_URL.sub(css_url, markup)
        return _CSS_IMPORT.sub(css_import, markup)


def _script_tag(reference: str, nonce: str) -> str:
    return f'<script src="{html_lib.escape(reference)}" nonce="{nonce}"></script>'


def _insert_head(markup: str, content: str) -> str:
    head = _HEAD_OPEN.search(markup)
    if head:
        return markup[: head.end()] + "\n" + content + markup[head.end():]
    root = _HTML_OPEN.search(markup)
    if root:
        return markup[: root.end()] + "\n<head>\n" + content + "\n</head>" + markup[root.end():]
    return "<head>\n" + content + "\n</head>\n" + markup


def _insert_before_body_close(markup: str, content: str) -> str:
    closes = list(_BODY_CLOSE.finditer(markup))
    if closes:
        last = closes[-1]
        return markup[: last.start()] + content + "\n" + markup[last.start():]
    return markup + "\n" + content
