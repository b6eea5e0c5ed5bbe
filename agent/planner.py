"""
Planner: turns a repository analysis and a request into an ImplementationPlan.
"""

import logging
from typing import Optional

from config import limits_config
from errors import PlanningError
from tools import READ_ONLY_TOOLS
from .intent import classify_request_focus, focus_hint, select_focus_files
from .plan import ImplementationPlan, parse_plan_response
from .prompts import format_planning_system

logger = logging.getLogger(__name__)

FALLBACK_FILE_LIMIT = 3


def fallback_plan(prompt: str, analysis, focus: Optional[str] = None) -> ImplementationPlan:
    """Heuristic plan built from the analysis file groups that match the request focus."""
    focus = focus or classify_request_focus(prompt)
    files = select_focus_files(
        focus,
        analysis.backend_files,
        analysis.frontend_files,
        analysis.key_files,
        limit=FALLBACK_FILE_LIMIT,
    )
    logger.info(f"Fallback plan ({focus}): {files}")
    return ImplementationPlan(
        approach=f"Implement: {prompt}",
        files_to_modify=files,
        new_files=[],
        estimated_complexity="medium",
        technologies=list(analysis.primary_languages),
    )


def limit_plan_files(plan: ImplementationPlan, limit: int) -> None:
    """Trim the plan in place to at most `limit` files, keeping modifications first."""
    if limit <= 0 or len(plan.target_files) <= limit:
        return
    logger.warning(f"Plan touches {len(plan.target_files)} files, keeping the first {limit}")
    plan.files_to_modify = plan.files_to_modify[:limit]
    plan.new_files = plan.new_files[:max(0, limit - len(plan.files_to_modify))]


class Planner:
    """Plans a change with read-only tool access to the checkout."""

    def __init__(self, llm, sandbox):
        self.llm = llm
        self.sandbox = sandbox

    async def create_plan(self, prompt: str, analysis, on_tool_call=None) -> ImplementationPlan:
        """Return a non-empty plan or raise PlanningError.

        Unparseable answers and plans with no files fall back to the analysis
        file groups. Model transport errors propagate to the caller.
        """
        focus = classify_request_focus(prompt)
        system = format_planning_system(analysis, focus_hint(focus))
        result = await self.llm.run(
            system_prompt=system,
            user_content=f"Task: {prompt}",
            tool_names=sorted(READ_ONLY_TOOLS),
            sandbox=self.sandbox,
            on_tool_call=on_tool_call,
        )
        logger.info(f"Planning answer: {result.content[:300]!r}")

        plan = parse_plan_response(result.content, analysis.primary_languages)
        if plan is None or plan.is_empty():
            reason = "no JSON object" if plan is None else "no files"
            logger.warning(f"Planner returned {reason}, falling back to heuristic file selection")
            fallback = fallback_plan(prompt, analysis, focus)
            if plan is not None:
                fallback.new_files = plan.new_files
                if plan.approach:
                    fallback.approach = plan.approach
            plan = fallback

        if plan.is_empty():
            raise PlanningError("Planner produced an empty plan: there are no files to modify or create")
        limit_plan_files(plan, limits_config.max_files_per_request)
        if not plan.approach:
            plan.approach = "Implement requested changes"
        return plan
