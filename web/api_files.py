"""
File REST endpoints for a paused session's sandbox.

Tree, read and save go through the sandbox tool catalogue, so the path checks
and the denylist that guard the agent also guard the editor.
"""

import logging
import posixpath
from typing import Any, Dict, List

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from errors import PilotError, error_payload, status_for
import web.state as _state

logger = logging.getLogger(__name__)

router = APIRouter()


def build_file_tree(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Fold a flat recursive listing into nested {name, path, type, children} nodes.

    Directories come before files at every level, each group sorted by name.
    Parent directories missing from the listing are created.
    """
    root: Dict[str, Any] = {"children": {}}
    dirs: Dict[str, Dict[str, Any]] = {"": root}

    def _dir(path: str) -> Dict[str, Any]:
        if path in dirs:
            return dirs[path]
        parent = _dir(posixpath.dirname(path))
        node = {"name": posixpath.basename(path), "path": path, "type": "directory", "children": {}}
        parent["children"][node["name"]] = node
        dirs[path] = node
        return node

    for entry in entries:
        path = (entry.get("path") or "").strip("/")
        if not path or path == ".":
            continue
        if entry.get("type") == "directory":
            _dir(path)
            continue
        parent = _dir(posixpath.dirname(path))
        name = posixpath.basename(path)
        parent["children"][name] = {
            "name": name,
            "path": path,
            "type": "file",
            "size": entry.get("size", 0),
        }

    def _freeze(node: Dict[str, Any]) -> List[Dict[str, Any]]:
        out = []
        for child in node["children"].values():
            if child["type"] == "directory":
                child = {**child, "children": _freeze(child)}
            out.append(child)
        out.sort(key=lambda n: (n["type"] != "directory", n["name"]))
        return out

    return _freeze(root)


async def _body(request: Request):
    try:
        body = await request.json()
    except Exception as e:
        return None, JSONResponse({"ok": False, "error": f"Invalid request: {e!s}"}, status_code=400)
    if not isinstance(body, dict):
        return None, JSONResponse({"ok": False, "error": "Request body must be a JSON object"}, status_code=400)
    return body, None


@router.get("/api/files")
async def file_tree(session_id: str = "", path: str = "."):
    """Return the session checkout as a nested tree."""
    try:
        async with _state.registry.use(session_id) as session:
            result = await session.sandbox.call_tool("list_files", {"path": path or ".", "recursive": True})
    except PilotError as e:
        return JSONResponse(error_payload(e), status_code=status_for(e))
    if not result.success:
        return JSONResponse({"ok": False, "error": result.error}, status_code=400)
    files = (result.data or {}).get("files", [])
    return {"ok": True, "tree": build_file_tree(files), "count": len(files)}


@router.get("/api/file")
async def read_file(session_id: str = "", path: str = ""):
    """Return one file's content."""
    if not path.strip():
        return JSONResponse({"ok": False, "error": "path is required"}, status_code=400)
    try:
        async with _state.registry.use(session_id) as session:
            result = await session.sandbox.call_tool("read_file", {"path": path.strip()})
    except PilotError as e:
        return JSONResponse(error_payload(e), status_code=status_for(e))
    if not result.success:
        status = 404 if (result.error or "").startswith("File not found") else 400
        return JSONResponse({"ok": False, "error": result.error}, status_code=status)
    return {"ok": True, "path": path.strip(), "content": result.data["content"]}


@router.put("/api/file")
@router.post("/api/file")
async def save_file(request: Request):
    """Save editor content into the session checkout."""
    body, error = await _body(request)
    if error is not None:
        return error
    session_id = (body.get("session_id") or "").strip()
    rel_path = (body.get("path") or "").strip().replace("\\", "/")
    content = body.get("content")
    if not rel_path:
        return JSONResponse({"ok": False, "error": "path is required"}, status_code=400)
    if not isinstance(content, str):
        return JSONResponse({"ok": False, "error": "content must be a string"}, status_code=400)

    try:
        async with _state.registry.use(session_id) as session:
            result = await session.sandbox.call_tool("write_file", {"path": rel_path, "content": content})
    except PilotError as e:
        return JSONResponse(error_payload(e), status_code=status_for(e))
    if not result.success:
        logger.warning(f"Save rejected for {rel_path!r}: {result.error}")
        return JSONResponse({"ok": False, "error": result.error}, status_code=400)
    logger.info(f"Saved {rel_path} in session {session_id}")
    return {"ok": True, "path": result.data.get("path", rel_path), "size": result.data.get("size", len(content))}
