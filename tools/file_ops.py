"""File operation tools: read, write, list, delete and manifest inspection."""

import json
import logging
import posixpath
import re
import tomllib
from typing import Any, Dict, List

from backend import Backend
from config import limits_config
from tools._common import ToolResult, fail
from tools.paths import PathSecurityError, is_denied, secure_path

logger = logging.getLogger(__name__)


def read_file(path: str, backend: Backend, **kw: Any) -> ToolResult:
    """Read a text file from the sandbox."""
    try:
        full = secure_path(backend, path, allow_root=False)
    except PathSecurityError as e:
        return fail("read_file", str(e))
    try:
        if not backend.is_file(full):
            return fail("read_file", f"File not found: {path}")
        size = backend.file_size(full)
        if size > limits_config.max_file_size:
            return fail("read_file", f"File too large: {path} ({size} bytes)")
        content = backend.read_file(full)
    except (OSError, ValueError) as e:
        return fail("read_file", f"Failed to read file {path}: {e}")
    return ToolResult(success=True, data={"content": content, "size": size}, tool_name="read_file")


def write_file(path: str, content: str, backend: Backend, **kw: Any) -> ToolResult:
    """Create or overwrite a file, creating parent directories."""
    try:
        full = secure_path(backend, path, allow_root=False)
    except PathSecurityError as e:
        return fail("write_file", str(e))
    if content is None:
        return fail("write_file", "content is required")
    encoded_size = len(content.encode("utf-8"))
    if encoded_size > limits_config.max_file_size:
        return fail("write_file", f"Content too large for {path} ({encoded_size} bytes)")
    try:
        if backend.is_dir(full):
            return fail("write_file", f"Path is a directory: {path}")
        backend.write_file(full, content)
    except (OSError, ValueError) as e:
        return fail("write_file", f"Failed to write file {path}: {e}")
    logger.info(f"Wrote {encoded_size} bytes to {path}")
    return ToolResult(
        success=True,
        data={"path": backend.relative_path(full), "size": encoded_size},
        tool_name="write_file",
    )


def list_files(path: str = ".", recursive: bool = False, include_hidden: bool = False,
               backend: Backend = None, **kw: Any) -> ToolResult:
    """List files and directories; paths are sandbox-relative with forward slashes."""
    try:
        full = secure_path(backend, path)
    except PathSecurityError as e:
        return fail("list_files", str(e))
    try:
        if not backend.is_dir(full):
            return fail("list_files", f"Directory not found: {path}")
        files: List[Dict[str, Any]] = []
        if recursive:
            for entry in backend.walk_files(full, include_hidden=include_hidden):
                if is_denied(entry["path"], is_dir=entry["type"] == "directory"):
                    continue
                files.append(_file_info(entry["path"], entry["type"], entry["size"]))
        else:
            base = backend.relative_path(full)
            for entry in backend.list_dir(full):
                name = entry["name"]
                if not include_hidden and name.startswith("."):
                    continue
                rel = name if base == "." else posixpath.join(base, name)
                if is_denied(rel, is_dir=entry["type"] == "directory"):
                    continue
                files.append(_file_info(rel, entry["type"], entry.get("size", 0)))
    except (OSError, ValueError) as e:
        return fail("list_files", f"Failed to list files in {path}: {e}")
    return ToolResult(success=True, data={"files": files}, tool_name="list_files")


def _file_info(rel: str, kind: str, size: int) -> Dict[str, Any]:
    info: Dict[str, Any] = {"path": rel, "size": size, "type": kind}
    if kind == "file":
        info["extension"] = posixpath.splitext(rel)[1]
    return info


def delete_file(path: str, backend: Backend, **kw: Any) -> ToolResult:
    """Delete a single file."""
    try:
        full = secure_path(backend, path, allow_root=False)
    except PathSecurityError as e:
        return fail("delete_file", str(e))
    try:
        if not backend.is_file(full):
            return fail("delete_file", f"File not found: {path}")
        backend.remove_file(full)
    except (OSError, ValueError) as e:
        return fail("delete_file", f"Failed to delete file {path}: {e}")
    return ToolResult(success=True, data={"path": backend.relative_path(full)}, tool_name="delete_file")


_REQ_NAME_RE = re.compile(r"^\s*([A-Za-z0-9_.\-\[\]]+)")


def _parse_requirements(text: str) -> List[str]:
    deps = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith(("#", "-")):
            continue
        m = _REQ_NAME_RE.match(line)
        if m:
            deps.append(m.group(1))
    return deps


def _parse_pyproject(text: str) -> Dict[str, Any]:
    data = tomllib.loads(text)
    project = data.get("project", {})
    deps = [_REQ_NAME_RE.match(d).group(1) for d in project.get("dependencies", []) if _REQ_NAME_RE.match(d)]
    return {
        "type": "python",
        "name": project.get("name"),
        "version": project.get("version"),
        "dependencies": deps,
    }


def get_package_info(repo_path: str = ".", backend: Backend = None, **kw: Any) -> ToolResult:
    """Extract package information from common manifest files."""
    try:
        full = secure_path(backend, repo_path)
    except PathSecurityError as e:
        return fail("get_package_info", str(e))

    packages: List[Dict[str, Any]] = []
    base = backend.relative_path(full)

    def _read(name: str):
        target = backend.resolve_path(name if base == "." else posixpath.join(base, name))
        if not backend.is_file(target):
            return None
        return backend.read_file(target)

    try:
        text = _read("package.json")
        if text is not None:
            try:
                pkg = json.loads(text)
                packages.append({
                    "type": "npm",
                    "name": pkg.get("name"),
                    "version": pkg.get("version"),
                    "dependencies": sorted((pkg.get("dependencies") or {}).keys()),
                    "devDependencies": sorted((pkg.get("devDependencies") or {}).keys()),
                    "scripts": sorted((pkg.get("scripts") or {}).keys()),
                })
            except ValueError as e:
                logger.warning(f"Unparseable package.json in {repo_path}: {e}")

        text = _read("requirements.txt")
        if text is not None:
            packages.append({"type": "python", "dependencies": _parse_requirements(text)})

        text = _read("pyproject.toml")
        if text is not None:
            try:
                packages.append(_parse_pyproject(text))
            except ValueError as e:
                logger.warning(f"Unparseable pyproject.toml in {repo_path}: {e}")
    except (OSError, ValueError) as e:
        return fail("get_package_info", f"Failed to get package info: {e}")

    return ToolResult(success=True, data={"packages": packages}, tool_name="get_package_info")
