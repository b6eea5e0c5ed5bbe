"""Sandbox path validation: traversal rejection and the sensitive-path denylist."""

import logging
import posixpath
import re

import pathspec

from backend import Backend

logger = logging.getLogger(__name__)

# gitwildmatch patterns no tool may read or modify
DENYLIST_PATTERNS = [
    ".git/",
    ".env",
    ".env.*",
    ".ssh/",
    ".aws/",
    "node_modules/",
    "package-lock.json",
    "yarn.lock",
]

_DENYLIST = pathspec.PathSpec.from_lines("gitwildmatch", DENYLIST_PATTERNS)

_TOKEN_URL_RE = re.compile(r"(https?://)[^/@\s]+@")


class PathSecurityError(ValueError):
    """Raised when a tool path escapes the sandbox or hits the denylist."""


def normalize_relative(path: str) -> str:
    """Normalize a user-supplied path to a sandbox-relative POSIX path.

    Absolute paths and paths whose `..` segments climb above the root are rejected.
    """
    raw = (path or ".").strip().replace("\\", "/")
    if not raw:
        raw = "."
    if raw.startswith("/") or re.match(r"^[A-Za-z]:", raw):
        raise PathSecurityError(f"Absolute paths are not allowed: {path!r}")
    norm = posixpath.normpath(raw)
    if norm == ".." or norm.startswith("../"):
        raise PathSecurityError(f"Path escapes sandbox root: {path!r}")
    return norm


def is_denied(rel_path: str, is_dir: bool = False) -> bool:
    if rel_path in ("", "."):
        return False
    check = rel_path + "/" if is_dir else rel_path
    return _DENYLIST.match_file(check)


def secure_path(backend: Backend, path: str, allow_root: bool = True) -> str:
    """Validate path and return it resolved against the sandbox root.

    Raises PathSecurityError on traversal, denylisted targets, or a root path
    when allow_root is False.
    """
    rel = normalize_relative(path)
    if rel == "." and not allow_root:
        raise PathSecurityError("A file path is required")
    if is_denied(rel) or is_denied(rel, is_dir=True):
        raise PathSecurityError(f"Access to {rel!r} is not allowed")
    resolved = backend.resolve_path(rel)
    try:
        backend._ensure_under_working(resolved)
    except ValueError as e:
        raise PathSecurityError(str(e))
    return resolved


def scrub_credentials(text: str) -> str:
    """Remove userinfo from URLs so tokens never reach logs or tool output."""
    if not text:
        return text
    return _TOKEN_URL_RE.sub(r"\1", text)
