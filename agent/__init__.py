"""
Agent package for Code Pilot.
Clones a repository into a sandbox, plans a change with Bedrock, implements it
through a bounded tool loop and publishes it as a pull request.
"""

from .orchestrator import CodingAgent, claim_session, fallback_pr_details, make_branch_name
from .events import EVENT_TYPES, FINAL_EVENT_TYPES, EventStream, StreamEvent
from .plan import ImplementationPlan, extract_json_object, normalize_plan, parse_plan_response
from .analyzer import RepositoryAnalysis, RepositoryAnalyzer
from .planner import Planner, fallback_plan
from .executor import Executor, ValidationResult, validate_generated_code
from .llm import GeneratedCode, TokenUsage, ToolCallingClient, ToolCallRecord, ToolLoopResult, clean_generated_code
from .intent import classify_request_focus, select_focus_files
from .diff import get_current_diff, parse_diff_output, summarize_diff

__all__ = [
    "CodingAgent",
    "claim_session",
    "fallback_pr_details",
    "make_branch_name",
    "EVENT_TYPES",
    "FINAL_EVENT_TYPES",
    "EventStream",
    "StreamEvent",
    "ImplementationPlan",
    "extract_json_object",
    "normalize_plan",
    "parse_plan_response",
    "RepositoryAnalysis",
    "RepositoryAnalyzer",
    "Planner",
    "fallback_plan",
    "Executor",
    "ValidationResult",
    "validate_generated_code",
    "GeneratedCode",
    "TokenUsage",
    "ToolCallingClient",
    "ToolCallRecord",
    "ToolLoopResult",
    "clean_generated_code",
    "classify_request_focus",
    "select_focus_files",
    "get_current_diff",
    "parse_diff_output",
    "summarize_diff",
]
