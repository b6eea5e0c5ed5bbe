"""Tool execution dispatch."""

import logging
import re
import time
from typing import Any, Dict, Optional

from backend import Backend
from errors import UnknownToolError
from tools._common import ToolResult
from tools.schemas import TOOL_IMPLEMENTATIONS, TOOL_SCHEMAS

logger = logging.getLogger(__name__)

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _normalize_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Accept camelCase keys (repoPath, branchName) alongside snake_case."""
    out: Dict[str, Any] = {}
    for key, value in (params or {}).items():
        out[_CAMEL_RE.sub("_", key).lower()] = value
    return out


def _missing_required(name: str, params: Dict[str, Any]) -> Optional[str]:
    schema = TOOL_SCHEMAS[name]["input_schema"]
    optional_with_default = {"destination", "repo_path", "path"}
    missing = [
        p for p in schema.get("required", [])
        if p not in params and p not in optional_with_default
    ]
    return ", ".join(missing) if missing else None


def execute_tool(name: str, params: Optional[Dict[str, Any]], backend: Backend) -> ToolResult:
    """Execute a catalogue tool against a backend.

    Unknown tool names raise UnknownToolError. Every other failure is returned
    as a failed ToolResult.
    """
    impl = TOOL_IMPLEMENTATIONS.get(name)
    if impl is None:
        raise UnknownToolError(f"Unknown tool: {name}")

    start = time.monotonic()
    inputs = _normalize_params(params)
    missing = _missing_required(name, inputs)
    if missing:
        result = ToolResult(success=False, error=f"Missing required parameter(s): {missing}")
    else:
        try:
            result = impl(backend=backend, **inputs)
        except TypeError as e:
            result = ToolResult(success=False, error=f"Invalid parameters for {name}: {e}")
        except (OSError, ValueError) as e:
            logger.warning(f"Tool {name} raised: {e}")
            result = ToolResult(success=False, error=str(e))

    result.tool_name = name
    result.execution_time = int((time.monotonic() - start) * 1000)
    if not result.success:
        logger.info(f"Tool {name} failed in {result.execution_time}ms: {result.error}")
    return result
