"""
Utility functions for the extension preview sandbox.
"""

import base64
import binascii
import re
from pathlib import PurePosixPath
from typing import Optional


# Mapping of recognized file extensions to media types
EXTENSION_MEDIA_TYPES = {
    # Markup / scripts / styles
    ".html": "text/html",
    ".htm": "text/html",
    ".js": "application/javascript",
    ".mjs": "application/javascript",
    ".css": "text/css",
    # Data
    ".json": "application/json",
    ".map": "application/json",
    ".xml": "application/xml",
    ".txt": "text/plain",
    ".md": "text/markdown",
    # Images
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".ico": "image/x-icon",
    # Fonts
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".eot": "application/vnd.ms-fontobject",
    # Media / archives
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".mp4": "video/mp4",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
    ".pdf": "application/pdf",
    ".zip": "application/zip",
    ".tar": "application/x-tar",
    ".gz": "application/gzip",
}

# Extensions whose content is exempt from the "is this actually text" check
BINARY_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico", ".webp",
    ".woff", ".woff2", ".ttf", ".otf", ".eot",
    ".mp3", ".mp4", ".avi", ".mov", ".wav",
    ".pdf", ".zip", ".tar", ".gz",
}

SCRIPT_EXTENSIONS = {".js", ".mjs"}

_DATA_URL_PREFIX = re.compile(r"^data:[\w.+\-/]+;base64,", re.IGNORECASE)
_REMOTE_PREFIXES = ("http://", "https://", "//")


def sanitize_path(path: str) -> str:
    """Convert Windows separators to forward slashes."""
    return path.replace("\\", "/")


def normalize_path(path: str) -> str:
    """
    Normalize a reference found inside bundle content for table lookup.

    Strips a leading "./" or "/" and any query/fragment suffix so that
    ``./popup.js?v=2`` and ``popup.js`` resolve to the same file.
    """
    path = sanitize_path(path.strip())
    path = re.split(r"[?#]", path, maxsplit=1)[0]
    return re.sub(r"^\.?/*", "", path)


def get_extension(path: str) -> str:
    """Lowercased extension including the dot, or "" if there is none."""
    return PurePosixPath(path).suffix.lower()


def media_type_for(path: str) -> str:
    """
    Derive the media type served for a bundle path.

    Args:
        path: File path inside the bundle

    Returns:
        Media type, defaults to "text/plain"
    """
    return EXTENSION_MEDIA_TYPES.get(get_extension(path), "text/plain")


def is_binary_path(path: str) -> bool:
    """Check whether a path carries one of the known binary extensions."""
    return get_extension(path) in BINARY_EXTENSIONS


def is_script_path(path: str) -> bool:
    return get_extension(path) in SCRIPT_EXTENSIONS


def is_remote_url(url: str) -> bool:
    """Check if a reference points at a network origin."""
    return url.strip().lower().startswith(_REMOTE_PREFIXES)


def utf8_length(content: str) -> int:
    """Size of text content in UTF-8 bytes."""
    return len(content.encode("utf-8"))


def decode_binary_payload(content: str) -> Optional[bytes]:
    """
    Decode base64 (optionally wrapped in a data: URL) binary file content.

    Args:
        content: File content as delivered in the file set

    Returns:
        Raw bytes, or None if the content is not base64
    """
    payload = _DATA_URL_PREFIX.sub("", content.strip(), count=1)
    if not payload:
        return None
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None
