"""
Tool-calling LLM client.

Runs the request/tool/feedback loop against Bedrock with the sandbox as the
tool executor, plus two single-shot helpers: code generation and free text.
The Bedrock client is synchronous, so every call goes through the default
executor.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from bedrock_service import BedrockService, GenerationConfig
from config import app_config, model_config
from errors import UnknownToolError
from tools import ToolResult, tool_definitions_for
from .prompts import CODEGEN_SYSTEM, CODEGEN_USER, WRAP_UP_NUDGE

logger = logging.getLogger(__name__)

CONTEXT_CHAR_LIMIT = 1000
TRUNCATION_MARKER = "...[truncated]"


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.cost += model_config.cost_for(input_tokens, output_tokens)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "promptTokens": self.input_tokens,
            "completionTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
            "cost": round(self.cost, 6),
        }


@dataclass
class ToolCallRecord:
    name: str
    params: Dict[str, Any]
    result: ToolResult
    round: int


@dataclass
class ToolLoopResult:
    content: str = ""
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    rounds: int = 0
    stop_reason: str = "final"  # final | max_rounds | budget


@dataclass
class GeneratedCode:
    code: str
    raw: str
    usage: TokenUsage


ToolCallHook = Callable[[ToolCallRecord], Awaitable[None]]


def truncate_text(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


_FENCE_BLOCK_RE = re.compile(r"```[\w.+-]*[ \t]*\n(.*?)```", re.DOTALL)
_FENCE_RE = re.compile(r"```[\w.+-]*\n?")
_LEADING_PROSE_RE = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^To .*?code.*?:\s*$",
        r"^Here.*?:\s*$",
        r"^Below.*?:\s*$",
        r"^This .*?code.*?:\s*$",
        r"^In order to.*?:\s*$",
        r"^The following.*?:\s*$",
        r"^You can.*?:\s*$",
    )
]
# Explanation sections appended after the code, at column zero
_TRAILING_PROSE_RE = re.compile(r"^(?:\*\*)?(?:Key Changes|Explanation|Changes made|Note)(?:\*\*)?:(?:\*\*)?(?:\s|$)")


def clean_generated_code(text: str) -> str:
    """Strip markdown fences and lead-in prose from a code generation answer.

    When the answer contains a fenced block, the longest block is taken as the
    file. Otherwise stray fences are dropped and lead-in lines such as
    "Here is the updated code:" are removed from the top.
    """
    if not text:
        return ""
    blocks = _FENCE_BLOCK_RE.findall(text)
    if blocks:
        return max(blocks, key=len).strip("\n")

    cleaned = _FENCE_RE.sub("", text).strip("\n")
    lines = cleaned.split("\n")
    while lines:
        head = lines[0].strip()
        if not head or any(p.match(head) for p in _LEADING_PROSE_RE):
            lines.pop(0)
            continue
        break
    for i, line in enumerate(lines):
        if _TRAILING_PROSE_RE.match(line):
            lines = lines[:i]
            break
    return "\n".join(lines).rstrip() + ("\n" if lines else "")


class ToolCallingClient:
    """Bedrock-backed model client that can drive sandbox tools."""

    def __init__(self, service: Optional[BedrockService] = None):
        self._service = service

    @property
    def service(self) -> BedrockService:
        if self._service is None:
            self._service = BedrockService()
        return self._service

    async def _generate(self, messages, system_prompt, tools=None, max_tokens=None):
        config = GenerationConfig(
            max_tokens=max_tokens or model_config.max_tokens,
            temperature=model_config.temperature,
        )
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            lambda: self.service.generate_response(
                messages=messages,
                system_prompt=system_prompt,
                config=config,
                tools=tools or None,
            ),
        )

    async def run(
        self,
        system_prompt: str,
        user_content: str,
        tool_names,
        sandbox,
        token_budget: Optional[int] = None,
        max_rounds: Optional[int] = None,
        on_tool_call: Optional[ToolCallHook] = None,
    ) -> ToolLoopResult:
        """Run the tool loop until the model answers without tool calls.

        Only tools in tool_names are advertised and executed; anything else the
        model asks for is answered with an error tool_result. Failed tools are
        fed back to the model rather than raised. With a token_budget, the
        model is told to wrap up at 80% and the loop stops at 100%.
        """
        allowed = list(tool_names or [])
        tools = tool_definitions_for(allowed)
        if max_rounds is None:
            low = token_budget is not None and token_budget < app_config.low_budget_threshold
            max_rounds = app_config.low_budget_tool_rounds if low else app_config.max_tool_rounds

        messages: List[Dict[str, Any]] = [{"role": "user", "content": user_content}]
        out = ToolLoopResult()
        nudged = False

        for round_index in range(1, max_rounds + 1):
            out.rounds = round_index
            if token_budget and not nudged and out.usage.total_tokens > token_budget * 0.8:
                logger.info("Approaching token budget, asking the model to wrap up")
                nudged = True
            system = f"{system_prompt}\n\n{WRAP_UP_NUDGE}" if nudged else system_prompt

            result = await self._generate(messages, system, tools=tools)
            out.usage.add(result.input_tokens, result.output_tokens)

            assistant_content: List[Dict[str, Any]] = []
            if result.content:
                assistant_content.append({"type": "text", "text": result.content})
            for tu in result.tool_uses:
                assistant_content.append({"type": "tool_use", "id": tu.id, "name": tu.name, "input": tu.input})
            messages.append({"role": "assistant", "content": assistant_content or [{"type": "text", "text": ""}]})

            if not result.tool_uses:
                out.content = result.content
                out.stop_reason = "final"
                logger.info(f"Tool loop finished after {round_index} rounds, {len(out.tool_calls)} tool calls")
                return out

            tool_results = []
            for tu in result.tool_uses:
                params = tu.input if isinstance(tu.input, dict) else {}
                if tu.name not in allowed:
                    tr = ToolResult(success=False, error=f"Tool not available: {tu.name}", tool_name=tu.name)
                else:
                    try:
                        tr = await sandbox.call_tool(tu.name, params)
                    except UnknownToolError as e:
                        tr = ToolResult(success=False, error=str(e), tool_name=tu.name)
                if not tr.success:
                    logger.warning(f"Tool {tu.name} failed: {tr.error}")

                record = ToolCallRecord(name=tu.name, params=params, result=tr, round=round_index)
                out.tool_calls.append(record)
                if on_tool_call is not None:
                    await on_tool_call(record)

                tool_results.append({
                    "type": "tool_result",
                    "tool_use_id": tu.id,
                    "content": truncate_text(tr.output_text(), app_config.tool_result_limit),
                    "is_error": not tr.success,
                })

            messages.append({"role": "user", "content": tool_results})

            if token_budget and out.usage.total_tokens >= token_budget:
                logger.warning(f"Token budget exhausted ({out.usage.total_tokens}/{token_budget})")
                out.stop_reason = "budget"
                out.content = result.content
                return out

        logger.warning(f"Tool loop hit the round limit ({max_rounds})")
        out.stop_reason = "max_rounds"
        return out

    async def generate_code(self, instruction: str, context: str = "",
                            existing_code: Optional[str] = None) -> GeneratedCode:
        """Ask for a complete file body and clean it of fences and prose."""
        user = CODEGEN_USER.format(
            instruction=instruction,
            context=f"Context:\n{truncate_text(context, CONTEXT_CHAR_LIMIT)}" if context else "",
            existing=existing_code if existing_code else "(new file)",
        )
        user += "\n\nGenerate the complete replacement code:" if existing_code else "\n\nGenerate the complete code:"
        result = await self._generate([{"role": "user", "content": user}], CODEGEN_SYSTEM)
        usage = TokenUsage()
        usage.add(result.input_tokens, result.output_tokens)
        code = clean_generated_code(result.content)
        logger.info(f"Generated {len(code)} chars of code (raw {len(result.content)})")
        return GeneratedCode(code=code, raw=result.content, usage=usage)

    async def generate_text(self, prompt: str, system: Optional[str] = None,
                            max_tokens: Optional[int] = None) -> str:
        result = await self._generate([{"role": "user", "content": prompt}], system, max_tokens=max_tokens)
        return result.content
