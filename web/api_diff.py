"""
Diff view for a paused session's working tree.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from agent.diff import get_current_diff, parse_diff_output, summarize_diff
from errors import PilotError, error_payload, status_for
import web.state as _state

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/diff")
async def session_diff(session_id: str = ""):
    """Return {diff, files, summary} for the session's pending change."""
    if not session_id:
        return JSONResponse({"error": "session_id is required", "code": "VALIDATION_ERROR"}, status_code=400)
    try:
        async with _state.registry.use(session_id) as session:
            diff = await get_current_diff(session.sandbox, session.base_commit)
    except PilotError as e:
        return JSONResponse(error_payload(e), status_code=status_for(e))
    return {
        "diff": diff,
        "files": parse_diff_output(diff),
        "summary": summarize_diff(diff),
    }
