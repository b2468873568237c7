"""
Script-origin policy for preview documents.

The preview trusts the browser's own isolation for real security; this module
only keeps generated markup from *accidentally* relying on inline execution,
which the policy below forbids.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

# Inline <script> with a body (external scripts have an empty body)
INLINE_SCRIPT = re.compile(r"<script\b(?![^>]*\bsrc\s*=)[^>]*>[\s\S]*?</script\s*>", re.IGNORECASE)
# Any <script ...>...</script>, used when re-ordering scripts
ANY_SCRIPT = re.compile(r"<script\b[^>]*>[\s\S]*?</script\s*>", re.IGNORECASE)
START_TAG = re.compile(r"<[a-zA-Z][^<>]*>")
INLINE_HANDLER = re.compile(r"\s+on[a-z]+\s*=\s*(\"[^\"]*\"|'[^']*'|[^\s>]+)", re.IGNORECASE)
JAVASCRIPT_URL = re.compile(r"(href|src|action)\s*=\s*([\"'])\s*javascript:[^\"']*\2", re.IGNORECASE)
HTML_DATA_URL = re.compile(r"src\s*=\s*[\"']data:text/html[^\"']*[\"']", re.IGNORECASE)
SRCDOC = re.compile(r"\ssrcdoc\s*=\s*(\"[^\"]*\"|'[^']*')", re.IGNORECASE)
EXISTING_CSP_META = re.compile(
    r"<meta\b[^>]*http-equiv\s*=\s*[\"']?content-security-policy[\"']?[^>]*>", re.IGNORECASE
)

VIOLATION_PATTERNS = {
    "inline_script": INLINE_SCRIPT,
    "javascript_url": JAVASCRIPT_URL,
    "html_data_url": HTML_DATA_URL,
    "srcdoc": SRCDOC,
}


@dataclass(frozen=True)
class PolicyViolation:
    kind: str
    snippet: str


def build_csp(script_sources: Iterable[str] = ("'self'",), resource_sources: Iterable[str] = ()) -> str:
    """
    Build the Content-Security-Policy for a preview document.

    Scripts may only come from the given sources; eval and inline scripts
    without the document nonce are never allowed. Styles may be inline
    since generated popups lean on them and they cannot execute code.
    ``resource_sources`` are origins (such as the preview server) added next
    to 'self' for styles, images, fonts and connections.
    """
    sources = " ".join(dict.fromkeys(script_sources)) or "'none'"
    extra = "".join(f" {source}" for source in dict.fromkeys(resource_sources))
    return "; ".join(
        [
            "default-src 'none'",
            f"script-src {sources}",
            f"script-src-elem {sources}",
            f"style-src 'self'{extra} 'unsafe-inline'",
            f"img-src 'self'{extra} data:",
            f"font-src 'self'{extra} data:",
            f"connect-src 'self'{extra}",
            "object-src 'none'",
            "base-uri 'none'",
            "form-action 'none'",
        ]
    )


def csp_meta_tag(policy: str) -> str:
    return f'<meta http-equiv="Content-Security-Policy" content="{policy}">'


def scan_policy_violations(html: str) -> list[PolicyViolation]:
    """Find markup that needs inline execution."""
    violations: list[PolicyViolation] = []
    for kind, pattern in VIOLATION_PATTERNS.items():
        for match in pattern.finditer(html):
            snippet = match.group(0).strip()
            violations.append(PolicyViolation(kind, _clip(snippet)))
    # Handler attributes only count inside start tags, not in text content
    for tag in START_TAG.finditer(html):
        for match in INLINE_HANDLER.finditer(tag.group(0)):
            violations.append(PolicyViolation("inline_handler", _clip(match.group(0).strip())))
    return violations


def _clip(snippet: str) -> str:
    return snippet[:100] + ("..." if len(snippet) > 100 else "")


def strip_inline_execution(html: str) -> str:
    """Remove inline scripts, handler attributes, javascript: URLs and srcdoc."""
    html = INLINE_SCRIPT.sub("", html)
    html = START_TAG.sub(lambda m: INLINE_HANDLER.sub("", m.group(0)), html)
    html = JAVASCRIPT_URL.sub(lambda m: f'{m.group(1)}="#"', html)
    html = HTML_DATA_URL.sub('src="about:blank"', html)
    html = SRCDOC.sub("", html)
    return html
