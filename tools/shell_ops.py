"""Shell passthrough tool (development only)."""

import logging
from typing import Any, Optional

from backend import Backend
from config import app_config, limits_config
from tools._common import ToolResult, fail
from tools.paths import PathSecurityError, scrub_credentials, secure_path

logger = logging.getLogger(__name__)

_MAX_OUTPUT = 20000


def _clip(text: str) -> str:
    if len(text) <= _MAX_OUTPUT:
        return text
    return text[:10000] + "\n\n... [truncated] ...\n\n" + text[-5000:]


def execute_shell(command: str, working_dir: Optional[str] = None,
                  backend: Backend = None, **kw: Any) -> ToolResult:
    """Run a shell command inside the sandbox. Disabled in production."""
    if app_config.is_production():
        return fail("execute_shell", "Shell execution disabled in production")
    if not (command or "").strip():
        return fail("execute_shell", "command is required")
    try:
        cwd = backend.relative_path(secure_path(backend, working_dir or "."))
    except PathSecurityError as e:
        return fail("execute_shell", str(e))
    logger.info(f"execute_shell: {command[:120]}")
    stdout, stderr, rc = backend.run_command(command, cwd=cwd, timeout=limits_config.command_timeout)
    stdout = _clip(scrub_credentials(stdout))
    stderr = _clip(scrub_credentials(stderr))
    if rc != 0:
        return fail(
            "execute_shell",
            f"Shell command failed with exit code {rc}: {stderr.strip() or stdout.strip()}",
            data={"command": command, "exit_code": rc},
            stdout=stdout, stderr=stderr,
        )
    return ToolResult(
        success=True,
        data={"command": command, "exit_code": rc},
        stdout=stdout, stderr=stderr,
        tool_name="execute_shell",
    )
