"""
Orchestrator for generation-proxy responses.

Takes the JSON body the generation proxy returns and routes it into the
preview: a "generate" body starts (or replaces) the session's preview, a
"revise" body is applied as an edit delta to the live preview.
"""

import json
import logging
import re
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError as SchemaError

from src.errors import ValidationError
from src.schemas import ProxyResponse
from src.sandbox.preview import PreviewResult, get_preview_status, rebuild_preview, start_preview
from src.sandbox.registry import get_session_preview

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


# =============================================================================
# PARSING
# =============================================================================

def parse_proxy_response(raw: Union[str, bytes, Dict[str, Any]]) -> ProxyResponse:
    """
    Parse a proxy response body.

    Accepts the decoded mapping or the raw JSON text (optionally wrapped in
    a markdown code fence, as models sometimes return it).

    Raises:
        ValidationError: If the body is not JSON or not a proxy response
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(_CODE_FENCE.sub("", raw))
        except json.JSONDecodeError as e:
            raise ValidationError(
                f"Proxy response is not valid JSON: {e.msg} (line {e.lineno})",
                code="malformed",
            ) from e
    try:
        return ProxyResponse.model_validate(raw)
    except SchemaError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(
            f"Malformed proxy response at '{location or 'body'}': {first.get('msg', str(e))}",
            code="malformed",
        ) from e


# =============================================================================
# ROUTING
# =============================================================================

def apply_proxy_response(
    raw: Union[str, bytes, Dict[str, Any]],
    session_id: str = "default",
    handle_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Route a proxy response into the session's preview.

    Args:
        raw: Proxy response body
        session_id: UI session the preview belongs to
        handle_id: Preview to revise (defaults to the session's live preview)

    Returns:
        Dict with 'phase', 'result' (PreviewResult or None), 'notes' and 'summary'
    """
    try:
        response = parse_proxy_response(raw)
    except ValidationError as e:
        return {"phase": None, "result": PreviewResult.from_error(e), "notes": [], "summary": None}

    outcome: Dict[str, Any] = {
        "phase": response.phase,
        "result": None,
        "notes": response.notes,
        "summary": response.summary,
    }

    if response.phase == "plan":
        # Plans carry no files; nothing to preview yet
        return outcome

    live = get_session_preview(session_id)
    target = handle_id or (live.handle_id if live else None)

    if response.phase == "generate":
        if target is not None and get_preview_status(target).status == "running":
            outcome["result"] = rebuild_preview(target, response.to_file_set(), mode="new")
        else:
            outcome["result"] = start_preview(response.to_file_set(), mode="new", session_id=session_id)
    elif target is None:
        logger.info("Revise response for session %s has no live preview to apply to", session_id)
        outcome["result"] = PreviewResult(
            status="not_found",
            message="No live preview to revise; generate a bundle first",
        )
    else:
        outcome["result"] = rebuild_preview(target, response.to_file_set(), mode="edit")

    return outcome
