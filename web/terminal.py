"""
Terminal REST endpoints for a paused session's sandbox.

Commands run through the session's backend in a worker thread. Disabled in
production.
"""

import asyncio
import logging
import posixpath
from typing import Tuple

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from config import app_config
from errors import ForbiddenError, PilotError, error_payload, status_for
from tools import scrub_credentials
import web.state as _state

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_TIMEOUT = 300


def _disabled() -> JSONResponse:
    err = ForbiddenError("Terminal is disabled in production")
    return JSONResponse({"ok": False, **error_payload(err)}, status_code=status_for(err))


def _terminal_cwd_ok(root: str, requested_cwd: str) -> Tuple[bool, str]:
    """Validate requested cwd is the sandbox root or a subdir of it.
    Returns (ok, resolved_cwd)."""
    if not requested_cwd or requested_cwd == ".":
        return True, root
    root_norm = posixpath.normpath(root)
    if posixpath.isabs(requested_cwd):
        req_norm = posixpath.normpath(requested_cwd)
    else:
        req_norm = posixpath.normpath(posixpath.join(root_norm, requested_cwd))
    if req_norm == root_norm or req_norm.startswith(root_norm.rstrip("/") + "/"):
        return True, req_norm
    return False, root


@router.get("/api/terminal/cwd")
async def terminal_cwd(session_id: str = ""):
    """Return the sandbox root for the session's terminal."""
    if app_config.is_production():
        return _disabled()
    try:
        async with _state.registry.use(session_id) as session:
            return {"ok": True, "cwd": session.sandbox.working_directory}
    except PilotError as e:
        return JSONResponse(error_payload(e), status_code=status_for(e))


@router.post("/api/terminal/run")
async def terminal_run(request: Request):
    """Run a shell command in the session's sandbox. Returns stdout, stderr, returncode, cwd."""
    if app_config.is_production():
        return _disabled()
    try:
        body = await request.json()
    except Exception as e:
        return JSONResponse({"ok": False, "error": f"Invalid request: {e!s}"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"ok": False, "error": "Request body must be a JSON object"}, status_code=400)
    session_id = (body.get("session_id") or "").strip()
    command = (body.get("command") or "").strip()
    if not command:
        return JSONResponse({"ok": False, "error": "No command"}, status_code=400)
    try:
        timeout = min(int(body.get("timeout", 60)), MAX_TIMEOUT)
    except (TypeError, ValueError):
        timeout = 60

    try:
        async with _state.registry.use(session_id) as session:
            backend = session.sandbox.backend
            ok, cwd = _terminal_cwd_ok(backend.working_directory, (body.get("cwd") or "").strip() or ".")
            if not ok:
                return JSONResponse({"ok": False, "error": "Directory not under sandbox root"}, status_code=400)
            try:
                stdout, stderr, returncode = await asyncio.to_thread(backend.run_command, command, cwd, timeout)
            except Exception as e:
                logger.exception("Terminal run failed")
                return JSONResponse({"ok": False, "error": str(e).strip() or "Command failed"}, status_code=500)
    except PilotError as e:
        return JSONResponse(error_payload(e), status_code=status_for(e))

    return {
        "ok": True,
        "stdout": scrub_credentials(stdout or ""),
        "stderr": scrub_credentials(stderr or ""),
        "returncode": returncode,
        "cwd": cwd,
    }
