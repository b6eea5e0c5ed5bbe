"""
Executor: realizes an ImplementationPlan against the sandbox.

Two strategies:
- autonomous: one tool loop with read/write/git tools; the model reads,
  writes, stages and commits on its own.
- direct: per target file, generate a complete replacement with a single-shot
  call, validate it, and write it back. Invalid output is regenerated with a
  stricter instruction a bounded number of times, then written anyway.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from bedrock_service import BedrockError
from errors import ImplementationError
from tools import EXECUTOR_TOOLS
from .llm import TokenUsage, ToolCallRecord
from .plan import ImplementationPlan
from .prompts import STRICT_RETRY_SUFFIX, format_executor_system

logger = logging.getLogger(__name__)

MAX_RETRIES = 2

STRATEGIES = ("autonomous", "direct")

EXPLANATION_PATTERNS = [
    re.compile(r"^To.*?code.*?:", re.IGNORECASE),
    re.compile(r"^Here.*?code.*?:", re.IGNORECASE),
    re.compile(r"^Below.*?code.*?:", re.IGNORECASE),
    re.compile(r"^This.*?code.*?:", re.IGNORECASE),
    re.compile(r"^To modify.*?:", re.IGNORECASE),
    re.compile(r"^To create.*?:", re.IGNORECASE),
    re.compile(r"Key Changes:", re.IGNORECASE),
    re.compile(r"^#{2,} ", re.MULTILINE),
    re.compile(r"^\d+\.\s.*:", re.MULTILINE),
]

CODE_START_PATTERNS = [
    re.compile(p) for p in (
        r"^import\s", r"^export\s", r"^function\s", r"^const\s", r"^let\s", r"^var\s",
        r"^class\s", r"^interface\s", r"^type\s", r"^<\w+", r"^<!", r"^/\*", r"^//",
        r"^\.[a-zA-Z]", r"^#[a-zA-Z!]", r"^#\s", r"^\w+\s*{", r"^[{\[]",
        r"^def\s", r"^async\s", r"^from\s", r"^@\w", r"^\"\"\"", r"^'''",
        r"^package\s", r"^use\s", r"^module\s", r"^<\?", r"^['\"]use ", r"^\w+\s*=",
    )
]


@dataclass
class ValidationResult:
    is_valid: bool
    issues: List[str] = field(default_factory=list)


def validate_generated_code(code: str, file_path: str = "") -> ValidationResult:
    """Cheap syntactic gate against fenced or explanation-contaminated output."""
    issues: List[str] = []
    if "```" in code:
        issues.append("Contains markdown code blocks")
    for pattern in EXPLANATION_PATTERNS:
        if pattern.search(code):
            issues.append(f"Contains explanatory text matching pattern: {pattern.pattern}")
    trimmed = code.strip()
    if trimmed and not any(p.search(trimmed) for p in CODE_START_PATTERNS):
        issues.append("Does not start with valid code syntax")
    if issues:
        logger.info(f"Generated code for {file_path or '<unknown>'} failed validation: {issues}")
    return ValidationResult(is_valid=not issues, issues=issues)


@dataclass
class ExecutionResult:
    strategy: str
    summary: str = ""
    files_written: List[str] = field(default_factory=list)
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)


Emit = Callable[..., Awaitable[None]]


class Executor:
    """Applies a plan to the checkout through the sandbox."""

    def __init__(self, llm, sandbox, emit: Optional[Emit] = None, strategy: str = "autonomous"):
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown execution strategy: {strategy}")
        self.llm = llm
        self.sandbox = sandbox
        self.strategy = strategy
        self._emit = emit

    async def emit(self, kind: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self._emit is not None:
            await self._emit(kind, message, data=data)

    async def execute(self, plan: ImplementationPlan, prompt: str, branch_name: str) -> ExecutionResult:
        if plan.is_empty():
            raise ImplementationError("Cannot implement an empty plan")
        await self.emit("implement", "Starting implementation...")
        try:
            if self.strategy == "direct":
                result = await self._execute_direct(plan, prompt)
            else:
                result = await self._execute_autonomous(plan, prompt, branch_name)
        except BedrockError as e:
            raise ImplementationError(f"Implementation failed: {e}")
        await self.emit("implement", "Implementation plan execution completed")
        return result

    async def _on_tool_call(self, record: ToolCallRecord, out: ExecutionResult) -> None:
        result = record.result
        if not result.success:
            await self.emit("tool_error", f"{record.name} failed: {result.error}",
                            data={"tool": record.name, "params": _display_params(record.params), "round": record.round})
            return
        await self.emit("tool_call", f"{record.name} completed",
                        data={"tool": record.name, "params": _display_params(record.params), "round": record.round})
        if record.name == "write_file":
            path = (result.data or {}).get("path") or record.params.get("path")
            if path and path not in out.files_written:
                out.files_written.append(path)
            await self.emit("file_change", f"File modified: {path}", data={"path": path})

    async def _execute_autonomous(self, plan: ImplementationPlan, prompt: str, branch_name: str) -> ExecutionResult:
        out = ExecutionResult(strategy="autonomous")
        await self.emit("implement", "Executing autonomous implementation...")

        async def hook(record: ToolCallRecord) -> None:
            await self._on_tool_call(record, out)

        loop_result = await self.llm.run(
            system_prompt=format_executor_system(plan, branch_name, EXECUTOR_TOOLS),
            user_content=prompt,
            tool_names=EXECUTOR_TOOLS,
            sandbox=self.sandbox,
            on_tool_call=hook,
        )
        out.summary = loop_result.content
        out.tool_calls = loop_result.tool_calls
        out.usage = loop_result.usage
        logger.info(
            f"Autonomous implementation used {len(out.tool_calls)} tool calls "
            f"({loop_result.stop_reason}); tokens={out.usage.total_tokens}"
        )
        await self.emit(
            "implement",
            f"Implementation completed. Used {len(out.tool_calls)} tool calls.",
            data={"tools": [tc.name for tc in out.tool_calls], "usage": out.usage.to_dict()},
        )
        return out

    async def _read_existing(self, path: str) -> str:
        result = await self.sandbox.call_tool("read_file", {"path": path})
        if not result.success:
            return ""
        return (result.data or {}).get("content", "")

    async def modify_file(self, path: str, existing: str, description: str, usage: TokenUsage) -> bool:
        """Generate, validate and write one file. Returns whether the write succeeded."""
        instruction = (
            "Modify the following code based on the description." if existing
            else "Create the file described below."
        )
        context = f"File path: {path}\nDescription of changes: {description}"
        code = ""
        for attempt in range(MAX_RETRIES + 1):
            generated = await self.llm.generate_code(instruction, context, existing or None)
            usage.add(generated.usage.input_tokens, generated.usage.output_tokens)
            code = generated.code
            check = validate_generated_code(code, path)
            if check.is_valid:
                break
            if attempt < MAX_RETRIES:
                logger.info(f"Retrying generation for {path} (attempt {attempt + 2}/{MAX_RETRIES + 1})")
                context += STRICT_RETRY_SUFFIX
            else:
                logger.warning(f"Generated code for {path} still invalid after {MAX_RETRIES} retries; writing anyway: {check.issues}")

        result = await self.sandbox.call_tool("write_file", {"path": path, "content": code})
        if not result.success:
            await self.emit("tool_error", f"write_file failed: {result.error}", data={"tool": "write_file", "path": path})
            return False
        await self.emit("file_change", f"File modified: {path}", data={"path": path})
        return True

    async def _execute_direct(self, plan: ImplementationPlan, prompt: str) -> ExecutionResult:
        out = ExecutionResult(strategy="direct")
        description = f"{prompt}\n\nApproach: {plan.approach}" if plan.approach else prompt
        for path in plan.target_files:
            await self.emit("implement", f"Modifying {path}...")
            existing = "" if path in plan.new_files else await self._read_existing(path)
            if await self.modify_file(path, existing, description, out.usage):
                out.files_written.append(path)
        if not out.files_written:
            raise ImplementationError("Implementation failed: no planned file could be written")
        out.summary = f"Rewrote {len(out.files_written)} file(s): {', '.join(out.files_written)}"
        return out


def _display_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """Tool params for an event payload, without file bodies."""
    shown = {}
    for key, value in (params or {}).items():
        if key in ("content", "patch") and isinstance(value, str):
            shown[key] = f"<{len(value)} chars>"
        else:
            shown[key] = value
    return shown
