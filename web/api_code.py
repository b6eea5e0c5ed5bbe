"""
Agent run endpoints: start a run and publish a paused one, both streamed as SSE.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from agent import CodingAgent, claim_session
from errors import PilotError, error_payload, status_for
import web.state as _state
from web.sse import sse_response

logger = logging.getLogger(__name__)

router = APIRouter()


async def _json_body(request: Request):
    try:
        body = await request.json()
    except Exception as e:
        return None, JSONResponse({"error": f"Invalid request: {e!s}", "code": "VALIDATION_ERROR"}, status_code=400)
    if not isinstance(body, dict):
        return None, JSONResponse({"error": "Request body must be a JSON object", "code": "VALIDATION_ERROR"},
                                  status_code=400)
    return body, None


@router.post("/api/code")
async def start_code_run(request: Request):
    """Body: repositoryUrl, prompt, verificationMode (optional)."""
    body, error = await _json_body(request)
    if error is not None:
        return error
    repo_url = (body.get("repositoryUrl") or "").strip()
    prompt = (body.get("prompt") or "").strip()
    if not repo_url or not prompt:
        return JSONResponse({"error": "repositoryUrl and prompt are required", "code": "VALIDATION_ERROR"},
                            status_code=400)
    verification = bool(body.get("verificationMode", False))

    agent = CodingAgent(
        repository_url=repo_url,
        prompt=prompt,
        verification_mode=verification,
        sandbox=_state.sandbox_factory(),
        llm=_state.get_llm(),
        github=_state.github_factory(),
        registry=_state.registry,
    )
    logger.info(f"Starting run {agent.session_id} for {repo_url} (verification={verification})")
    return sse_response(agent.start())


@router.post("/api/publish")
async def publish_session(request: Request):
    """Body: sessionId, branchName (optional). Pushes and opens the PR for a paused run."""
    body, error = await _json_body(request)
    if error is not None:
        return error
    session_id = (body.get("sessionId") or "").strip()
    if not session_id:
        return JSONResponse({"error": "sessionId is required", "code": "VALIDATION_ERROR"}, status_code=400)
    branch_name = (body.get("branchName") or "").strip() or None

    try:
        agent = await claim_session(
            _state.registry,
            session_id,
            llm=_state.get_llm(),
            github=_state.github_factory(),
        )
    except PilotError as e:
        return JSONResponse(error_payload(e), status_code=status_for(e))
    logger.info(f"Publishing session {session_id}")
    return sse_response(agent.start_resume(branch_name))
