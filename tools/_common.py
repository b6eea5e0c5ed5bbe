"""Shared types for the tools package."""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional


@dataclass
class ToolResult:
    """Uniform envelope returned by every tool invocation"""
    success: bool
    data: Any = None
    error: Optional[str] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    tool_name: str = ""
    execution_time: int = 0  # milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def output_text(self) -> str:
        """Text fed back to the model for this result."""
        if not self.success:
            return self.error or "Unknown error"
        if isinstance(self.data, dict) and isinstance(self.data.get("content"), str):
            return self.data["content"]
        parts = []
        if self.data is not None:
            parts.append(_compact(self.data))
        if self.stdout:
            parts.append(self.stdout)
        if self.stderr:
            parts.append(f"[stderr]\n{self.stderr}")
        return "\n".join(parts) if parts else "(no output)"


def _compact(data: Any) -> str:
    import json
    try:
        return json.dumps(data, default=str)
    except (TypeError, ValueError):
        return str(data)


def fail(tool_name: str, error: str, **kw: Any) -> ToolResult:
    return ToolResult(success=False, error=error, tool_name=tool_name, **kw)
