"""Git tools: clone, status, add, commit, branch, push, apply patch, revert.

Remote operations authenticate through a throwaway GIT_ASKPASS script that
exists only for the duration of a single git invocation.
"""

import logging
import re
import shlex
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from backend import Backend
from config import app_config, github_config, limits_config
from tools._common import ToolResult, fail
from tools.paths import PathSecurityError, is_denied, normalize_relative, scrub_credentials, secure_path

logger = logging.getLogger(__name__)

_BRANCH_RE = re.compile(r"^(?!-)(?!.*\.\.)[A-Za-z0-9._/\-]+(?<!\.lock)(?<!/)$")
_COMMIT_RE = re.compile(r"^([0-9a-fA-F]{4,40}|HEAD(~\d+)?)$")
_REMOTE_URL_RE = re.compile(r"^(https?://|ssh://|git@)[^\s]+$")
_CURRENT_BRANCH_RE = re.compile(r"CURRENT_BRANCH:\s*([\w./\-]+)")

_ASKPASS_TEMPLATE = """#!/bin/sh
case "$1" in
  Username*) echo "x-access-token" ;;
  *) echo {token} ;;
esac
"""


def _git_token() -> str:
    return github_config.token


@contextmanager
def git_auth(backend: Backend) -> Iterator[Dict[str, str]]:
    """Yield an env for one git invocation, with credentials when a token is configured."""
    env = {"GIT_TERMINAL_PROMPT": "0"}
    token = _git_token()
    if not token:
        yield env
        return
    script = backend.make_temp_file(
        _ASKPASS_TEMPLATE.format(token=shlex.quote(token)),
        prefix="pilot-askpass-",
        mode=0o700,
    )
    env["GIT_ASKPASS"] = script
    try:
        yield env
    finally:
        backend.remove_temp_file(script)


def parse_current_branch(text: str) -> Optional[str]:
    """Extract the branch name from a `CURRENT_BRANCH: <name>` marker."""
    if not text:
        return None
    m = _CURRENT_BRANCH_RE.search(text)
    return m.group(1) if m else None


def _git(backend: Backend, args: str, cwd: str, timeout: Optional[int] = None,
         env: Optional[Dict[str, str]] = None):
    stdout, stderr, rc = backend.run_command(
        f"git {args}", cwd=cwd, timeout=timeout or limits_config.command_timeout, env=env,
    )
    return scrub_credentials(stdout), scrub_credentials(stderr), rc


def _repo_dir(backend: Backend, repo_path: str) -> str:
    return backend.relative_path(secure_path(backend, repo_path))


def _allows_url(url: str) -> bool:
    if _REMOTE_URL_RE.match(url):
        return True
    # file:// clones read host paths; development and tests only
    return url.startswith("file://") and not app_config.is_production()


def clone_repository(url: str, destination: str = ".", depth: int = 1,
                     backend: Backend = None, **kw: Any) -> ToolResult:
    """Shallow-clone a repository and enforce the repository size limit."""
    url = (url or "").strip()
    if not url or not _allows_url(url):
        return fail("clone_repository", f"Clone failed: unsupported repository URL {url!r}")
    try:
        dest = _repo_dir(backend, destination)
    except PathSecurityError as e:
        return fail("clone_repository", f"Clone failed: {e}")
    try:
        depth = max(1, int(depth))
    except (TypeError, ValueError):
        depth = 1

    with git_auth(backend) as env:
        stdout, stderr, rc = _git(
            backend,
            f"clone --depth {depth} --progress -- {shlex.quote(url)} {shlex.quote(dest)}",
            cwd=".", timeout=limits_config.clone_timeout, env=env,
        )
    if rc != 0:
        logger.warning(f"Clone of {scrub_credentials(url)} failed (rc={rc})")
        return fail("clone_repository", f"Clone failed: {stderr.strip() or stdout.strip() or f'exit code {rc}'}",
                    stdout=stdout.strip(), stderr=stderr.strip())

    size = backend.dir_size(dest)
    if size > limits_config.max_repo_size:
        backend.remove_tree(dest)
        return fail(
            "clone_repository",
            f"Clone failed: repository size ({_format_size(size)}) exceeds the limit of "
            f"{_format_size(limits_config.max_repo_size)}.",
        )
    return ToolResult(
        success=True,
        data={"path": dest, "size": size},
        stdout=stdout.strip(), stderr=stderr.strip(),
        tool_name="clone_repository",
    )


def git_status(repo_path: str = ".", backend: Backend = None, **kw: Any) -> ToolResult:
    """Porcelain status plus the current branch."""
    try:
        repo = _repo_dir(backend, repo_path)
    except PathSecurityError as e:
        return fail("git_status", str(e))
    stdout, stderr, rc = _git(backend, "status --porcelain", cwd=repo)
    if rc != 0:
        return fail("git_status", f"Git status failed: {stderr.strip()}", stderr=stderr.strip())
    changes = [line for line in stdout.splitlines() if line.strip()]
    branch_out, _, branch_rc = _git(backend, "branch --show-current", cwd=repo)
    current = branch_out.strip() if branch_rc == 0 else ""
    marker = f"CURRENT_BRANCH: {current}" if current else ""
    return ToolResult(
        success=True,
        data={
            "has_changes": bool(changes),
            "changes": changes,
            "summary": f"{len(changes)} files changed",
            "current_branch": current or None,
        },
        stdout="\n".join(p for p in (stdout.rstrip(), marker) if p),
        tool_name="git_status",
    )


def git_add(repo_path: str = ".", files: Optional[List[str]] = None,
            backend: Backend = None, **kw: Any) -> ToolResult:
    """Stage files (all changes by default)."""
    try:
        repo = _repo_dir(backend, repo_path)
        targets = [normalize_relative(f) for f in (files or ["."])]
    except PathSecurityError as e:
        return fail("git_add", str(e))
    denied = [t for t in targets if is_denied(t)]
    if denied:
        return fail("git_add", f"Refusing to stage protected paths: {', '.join(denied)}")
    args = " ".join(shlex.quote(t) for t in targets)
    stdout, stderr, rc = _git(backend, f"add -- {args}", cwd=repo)
    if rc != 0:
        return fail("git_add", f"Git add failed: {stderr.strip()}", stderr=stderr.strip())
    return ToolResult(success=True, data={"files": targets}, stdout=stdout.strip(),
                      stderr=stderr.strip(), tool_name="git_add")


def git_commit(repo_path: str = ".", message: str = "", backend: Backend = None, **kw: Any) -> ToolResult:
    """Commit staged changes under the bot identity."""
    if not (message or "").strip():
        return fail("git_commit", "message is required")
    try:
        repo = _repo_dir(backend, repo_path)
    except PathSecurityError as e:
        return fail("git_commit", str(e))
    _git(backend, f"config user.name {shlex.quote(app_config.bot_name)}", cwd=repo)
    _git(backend, f"config user.email {shlex.quote(app_config.bot_email)}", cwd=repo)
    stdout, stderr, rc = _git(backend, f"commit -m {shlex.quote(message)}", cwd=repo)
    if rc != 0:
        detail = stderr.strip() or stdout.strip()
        if "nothing to commit" in stdout or "nothing added to commit" in stdout:
            return ToolResult(success=True, data={"message": message, "skipped": True},
                              stdout=stdout.strip(), tool_name="git_commit")
        return fail("git_commit", f"Git commit failed: {detail}", stdout=stdout.strip(), stderr=stderr.strip())
    sha_out, _, _ = _git(backend, "rev-parse HEAD", cwd=repo)
    return ToolResult(success=True, data={"message": message, "commit": sha_out.strip()},
                      stdout=stdout.strip(), stderr=stderr.strip(), tool_name="git_commit")


def git_branch(repo_path: str = ".", branch_name: str = "", from_branch: Optional[str] = None,
               backend: Backend = None, **kw: Any) -> ToolResult:
    """Create and switch to a new branch. Reports the branch it was created from."""
    if not branch_name or not _BRANCH_RE.match(branch_name):
        return fail("git_branch", f"Invalid branch name: {branch_name!r}")
    if from_branch and not _BRANCH_RE.match(from_branch):
        return fail("git_branch", f"Invalid base branch name: {from_branch!r}")
    try:
        repo = _repo_dir(backend, repo_path)
    except PathSecurityError as e:
        return fail("git_branch", str(e))
    current_out, _, _ = _git(backend, "branch --show-current", cwd=repo)
    source = from_branch or current_out.strip()
    args = f"checkout -b {shlex.quote(branch_name)}"
    if from_branch:
        args += f" {shlex.quote(from_branch)}"
    stdout, stderr, rc = _git(backend, args, cwd=repo)
    if rc != 0:
        return fail("git_branch", f"Git branch creation failed: {stderr.strip()}", stderr=stderr.strip())
    marker = f"CURRENT_BRANCH: {source}" if source else ""
    return ToolResult(
        success=True,
        data={"branch_name": branch_name, "from_branch": source or None},
        stdout="\n".join(p for p in (stdout.strip(), marker) if p),
        stderr=stderr.strip(),
        tool_name="git_branch",
    )


def git_push(repo_path: str = ".", branch_name: str = "", backend: Backend = None, **kw: Any) -> ToolResult:
    """Push a branch to origin."""
    if not branch_name or not _BRANCH_RE.match(branch_name):
        return fail("git_push", f"Invalid branch name: {branch_name!r}")
    try:
        repo = _repo_dir(backend, repo_path)
    except PathSecurityError as e:
        return fail("git_push", str(e))
    with git_auth(backend) as env:
        stdout, stderr, rc = _git(backend, f"push -u origin {shlex.quote(branch_name)}", cwd=repo, env=env)
    if rc != 0:
        return fail("git_push", f"Git push failed: {stderr.strip()}", stdout=stdout.strip(), stderr=stderr.strip())
    return ToolResult(success=True, data={"branch_name": branch_name}, stdout=stdout.strip(),
                      stderr=stderr.strip(), tool_name="git_push")


def git_apply_patch(repo_path: str = ".", patch: str = "", backend: Backend = None, **kw: Any) -> ToolResult:
    """Apply a unified diff to the working tree."""
    if not (patch or "").strip():
        return fail("git_apply_patch", "patch is required")
    try:
        repo = _repo_dir(backend, repo_path)
    except PathSecurityError as e:
        return fail("git_apply_patch", str(e))
    if not patch.endswith("\n"):
        patch += "\n"
    patch_file = backend.make_temp_file(patch, prefix="pilot-patch-")
    try:
        stdout, stderr, rc = _git(backend, f"apply {shlex.quote(patch_file)}", cwd=repo)
    finally:
        backend.remove_temp_file(patch_file)
    if rc != 0:
        return fail("git_apply_patch", f"Git apply patch failed: {stderr.strip()}", stderr=stderr.strip())
    return ToolResult(success=True, data={"applied": True}, stdout=stdout.strip(),
                      stderr=stderr.strip(), tool_name="git_apply_patch")


def git_revert(repo_path: str = ".", commit_hash: str = "", backend: Backend = None, **kw: Any) -> ToolResult:
    """Revert a commit without opening an editor."""
    if not commit_hash or not _COMMIT_RE.match(commit_hash):
        return fail("git_revert", f"Invalid commit reference: {commit_hash!r}")
    try:
        repo = _repo_dir(backend, repo_path)
    except PathSecurityError as e:
        return fail("git_revert", str(e))
    _git(backend, f"config user.name {shlex.quote(app_config.bot_name)}", cwd=repo)
    _git(backend, f"config user.email {shlex.quote(app_config.bot_email)}", cwd=repo)
    stdout, stderr, rc = _git(backend, f"revert --no-edit {commit_hash}", cwd=repo)
    if rc != 0:
        return fail("git_revert", f"Git revert failed: {stderr.strip()}", stderr=stderr.strip())
    return ToolResult(success=True, data={"commit_hash": commit_hash}, stdout=stdout.strip(),
                      stderr=stderr.strip(), tool_name="git_revert")


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{size} B"
