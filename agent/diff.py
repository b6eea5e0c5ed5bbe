"""
Diff access for a sandbox checkout, and parsing of unified git diffs.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

from config import limits_config
from tools import scrub_credentials

logger = logging.getLogger(__name__)

# Tried in order after the base commit diff, first non-empty output wins
DIFF_COMMANDS = ("git diff HEAD~1", "git diff --cached", "git diff")

_DIFF_HEADER_RE = re.compile(r"^diff --git a/(.+?) b/(.+)$")
_SHA_RE = re.compile(r"^[0-9a-f]{7,40}$")


async def _git(sandbox, command: str) -> str:
    """Run a read-only git command in the checkout; stdout, or "" on a non-zero exit."""
    backend = sandbox.backend
    loop = asyncio.get_running_loop()
    stdout, _, rc = await loop.run_in_executor(
        None, lambda: backend.run_command(command, cwd=backend.working_directory,
                                          timeout=limits_config.command_timeout)
    )
    return stdout if rc == 0 else ""


async def head_commit(sandbox) -> Optional[str]:
    """SHA of HEAD, or None when git cannot resolve it."""
    try:
        sha = (await _git(sandbox, "git rev-parse HEAD")).strip()
    except Exception as e:
        logger.warning(f"Could not resolve HEAD: {e}")
        return None
    return sha if _SHA_RE.match(sha) else None


async def files_changed_since(sandbox, base: str) -> List[str]:
    """Paths that differ between base and the working tree, committed or not."""
    if not _SHA_RE.match(base or ""):
        raise ValueError(f"Not a commit id: {base!r}")
    out = await _git(sandbox, f"git diff --name-only {base}")
    return [line.strip() for line in out.splitlines() if line.strip()]


async def get_current_diff(sandbox, base: Optional[str] = None) -> str:
    """Raw diff against the branch point when known.

    Falls back to the latest commit, then staged, then unstaged changes, then
    git status.
    """
    commands = list(DIFF_COMMANDS)
    if base and _SHA_RE.match(base):
        commands.insert(0, f"git diff {base}")
    try:
        for command in commands:
            out = await _git(sandbox, command)
            if out.strip():
                return scrub_credentials(out)
        status = await _git(sandbox, "git status")
        return scrub_credentials(status) or "No changes detected"
    except Exception as e:
        logger.error(f"Failed to get diff: {e}")
        return f"Error getting diff: {e}"


def parse_diff_output(text: str) -> List[Dict[str, Any]]:
    """Split a unified diff into per-file entries.

    Each entry is {path, status, diff} with status added, modified or deleted.
    Text without `diff --git` headers yields an empty list.
    """
    files: List[Dict[str, Any]] = []
    current = None
    lines: List[str] = []

    def flush():
        if current is not None:
            current["diff"] = "\n".join(lines)
            files.append(current)

    for line in (text or "").splitlines():
        m = _DIFF_HEADER_RE.match(line)
        if m:
            flush()
            current = {"path": m.group(2), "status": "modified", "diff": ""}
            lines = [line]
            continue
        if current is None:
            continue
        lines.append(line)
        if line.startswith("new file mode"):
            current["status"] = "added"
        elif line.startswith("deleted file mode"):
            current["status"] = "deleted"
            current["path"] = _DIFF_HEADER_RE.match(lines[0]).group(1)
        elif line.startswith("rename to "):
            current["path"] = line[len("rename to "):]
    flush()
    return files


def summarize_diff(text: str) -> Dict[str, int]:
    """Counts of changed files, added lines and removed lines."""
    additions = deletions = 0
    for line in (text or "").splitlines():
        if line.startswith("+++") or line.startswith("---"):
            continue
        if line.startswith("+"):
            additions += 1
        elif line.startswith("-"):
            deletions += 1
    return {
        "files": len(parse_diff_output(text)),
        "additions": additions,
        "deletions": deletions,
    }
