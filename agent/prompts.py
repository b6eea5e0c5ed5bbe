"""
Prompt templates for each agent phase and helpers that fill them in.
"""

from typing import List, Optional

from .plan import ImplementationPlan


ANALYSIS_PROMPT = """Analyze this repository structure and provide insights.

FILES (sample of {total} total):
{sample}

Return ONLY a JSON object with this structure:
{{
  "projectType": "what this project is (e.g. 'Full-stack web app with React frontend and Python backend')",
  "primaryLanguages": ["main", "languages"],
  "keyDirectories": ["most", "important", "directories"],
  "keyFiles": ["files", "most", "relevant", "for", "development"],
  "backendFiles": ["files", "handling", "server", "logic"],
  "frontendFiles": ["files", "handling", "client", "UI"],
  "configFiles": ["configuration", "and", "build", "files"],
  "analysisNotes": "brief summary of the structure and architecture"
}}

Focus on entry points, the split between frontend, backend and configuration code,
and the files most likely to contain business logic. Only list paths from the sample."""


PLANNING_SYSTEM = """You are a coding assistant planning a change to a cloned repository.
You may call list_files and read_file to inspect the code. You cannot modify anything.

Repository context:
- Total files: {total_files}
- Project type: {project_type}
- Primary languages: {languages}
- Framework: {framework}
- Project root: {project_root}
- Key files: {key_files}
- Backend files: {backend_files}
- Frontend files: {frontend_files}

{focus_hint}

When you are done exploring, respond with ONLY a JSON object in this exact format:
```json
{{
  "approach": "Brief description of the approach",
  "filesToModify": ["path/to/existing_file.py"],
  "newFiles": ["path/to/new_file.py"],
  "estimatedComplexity": "low"
}}
```
estimatedComplexity is one of low, medium, high. Paths are relative to the repository root.
Use a flat structure only; do not nest the plan under other keys."""


EXECUTOR_SYSTEM = """You are a coding assistant working inside a sandbox that holds a Git checkout
of the repository in the current directory, on branch '{branch_name}'.

Available tools: {tool_names}

Plan:
- Approach: {approach}
- Files to modify: {files_to_modify}
- New files: {new_files}

Workflow:
1. Read each file you will change with read_file before writing it.
2. Apply changes with write_file.
3. Stage with git_add and commit with git_commit using a descriptive message.

write_file replaces the whole file. Always send the COMPLETE file content with your
changes integrated; anything you leave out is deleted. Stick to the files in the plan
and keep tool calls to what the task needs. Finish with a one-paragraph summary."""


CODEGEN_SYSTEM = """You are a code generator. Return ONLY the complete contents of the file.
No markdown fences, no explanations, no headings, no lists of changes.
The first line of your answer must be the first line of the file."""


CODEGEN_USER = """{instruction}

{context}

Current file content:
{existing}"""


STRICT_RETRY_SUFFIX = (
    "\n\nIMPORTANT: Generate ONLY clean executable code. Do NOT include markdown, "
    "explanations, or comments about the task. Return only the actual code that "
    "should be in the file."
)


WRAP_UP_NUDGE = (
    "You are close to the token budget for this task. Stop exploring, finish the "
    "remaining steps with as few tool calls as possible, and give your final answer."
)


PR_DETAILS_PROMPT = """Based on the user's request and the implementation approach, write a concise
Pull Request title and a markdown body.

User request: "{prompt}"

Implementation approach: "{approach}"

Files modified:
{files_to_modify}

New files:
{new_files}

Return ONLY a JSON object:
{{
  "title": "Short descriptive title starting with a prefix such as 'Feat:', 'Fix:' or 'Refactor:'",
  "body": "Markdown body with a short summary and a bulleted list of key modifications"
}}"""


def _bullets(paths: List[str]) -> str:
    return "\n".join(f"- `{p}`" for p in paths) if paths else "- (none)"


def _join(items: Optional[List[str]], limit: int = 15) -> str:
    if not items:
        return "none"
    shown = ", ".join(items[:limit])
    return shown + (f" (+{len(items) - limit} more)" if len(items) > limit else "")


def format_planning_system(analysis, hint: str) -> str:
    return PLANNING_SYSTEM.format(
        total_files=analysis.total_files,
        project_type=analysis.project_type or "Unknown",
        languages=_join(analysis.primary_languages) if analysis.primary_languages else "Unknown",
        framework=analysis.framework or "none detected",
        project_root=analysis.project_root,
        key_files=_join(analysis.key_files),
        backend_files=_join(analysis.backend_files),
        frontend_files=_join(analysis.frontend_files),
        focus_hint=hint,
    ).strip()


def format_executor_system(plan: ImplementationPlan, branch_name: str, tool_names) -> str:
    return EXECUTOR_SYSTEM.format(
        branch_name=branch_name,
        tool_names=", ".join(tool_names),
        approach=plan.approach or "Implement the requested change",
        files_to_modify=_join(plan.files_to_modify, limit=50),
        new_files=_join(plan.new_files, limit=50),
    )


def format_pr_prompt(prompt: str, plan: ImplementationPlan) -> str:
    return PR_DETAILS_PROMPT.format(
        prompt=prompt,
        approach=plan.approach,
        files_to_modify=_bullets(plan.files_to_modify),
        new_files=_bullets(plan.new_files),
    )
