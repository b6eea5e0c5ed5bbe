"""
Implementation plan model and parsing utilities.
Handles extraction and normalization of implementation plans from LLM responses.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

COMPLEXITY_TIERS = ("low", "medium", "high")

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


@dataclass
class ImplementationPlan:
    """Contract between the planner and the executor"""
    approach: str = ""
    files_to_modify: List[str] = field(default_factory=list)
    new_files: List[str] = field(default_factory=list)
    estimated_complexity: str = "medium"
    technologies: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.files_to_modify and not self.new_files

    @property
    def target_files(self) -> List[str]:
        return _dedupe(list(self.files_to_modify) + list(self.new_files))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approach": self.approach,
            "filesToModify": list(self.files_to_modify),
            "newFiles": list(self.new_files),
            "estimatedComplexity": self.estimated_complexity,
            "technologies": list(self.technologies),
        }


def _dedupe(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out


def _first_balanced_object(text: str) -> Optional[str]:
    """Return the first brace-balanced {...} substring, skipping braces inside strings."""
    start = text.find("{")
    while start >= 0:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Parse the first JSON object in an LLM response.

    Accepts a ```json fenced block or a bare object embedded in prose.
    Returns None when nothing parses to a dict.
    """
    if not text:
        return None
    candidates = [m.group(1) for m in _FENCED_JSON_RE.finditer(text)]
    candidates.append(text)
    for candidate in candidates:
        raw = _first_balanced_object(candidate)
        if raw is None:
            continue
        try:
            data = json.loads(raw)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _as_path_list(value: Any) -> List[str]:
    """Coerce a list of paths or {path: ...} objects to clean relative path strings."""
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    out = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("path") or item.get("file")
        if not isinstance(item, str):
            continue
        path = item.strip()
        if path.startswith("./"):
            path = path[2:]
        if path:
            out.append(path)
    return out


def _files_from_steps(steps: Any) -> List[str]:
    files: List[str] = []
    if not isinstance(steps, list):
        return files
    for step in steps:
        if not isinstance(step, dict):
            continue
        details = step.get("details")
        if isinstance(details, dict) and isinstance(details.get("file"), str):
            files.append(details["file"])
        if isinstance(step.get("file"), str):
            files.append(step["file"])
        for action in step.get("actions") or []:
            if isinstance(action, dict) and isinstance(action.get("file"), str):
                files.append(action["file"])
    return files


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] not in (None, ""):
            return data[key]
    return None


def normalize_plan(data: Dict[str, Any], default_technologies: Optional[List[str]] = None) -> ImplementationPlan:
    """Flatten the response shapes models produce into an ImplementationPlan.

    Accepted shapes:
    1. flat: {approach, filesToModify, newFiles, estimatedComplexity}
    2. nested: {"implementation_plan": {...flat...}}
    3. steps: {"steps": [{"file"}, {"details": {"file"}}, {"actions": [{"file"}]}]}
       used only when the flat file list is empty
    snake_case keys are accepted alongside camelCase.
    """
    nested = data.get("implementation_plan") or data.get("implementationPlan")
    body = nested if isinstance(nested, dict) else data

    files_to_modify = _as_path_list(_pick(body, "filesToModify", "files_to_modify"))
    new_files = _as_path_list(_pick(body, "newFiles", "new_files"))
    if not files_to_modify:
        files_to_modify = _as_path_list(_files_from_steps(body.get("steps")))

    complexity = str(_pick(body, "estimatedComplexity", "estimated_complexity", "complexity") or "medium").lower()
    if complexity not in COMPLEXITY_TIERS:
        complexity = "medium"

    technologies = _pick(body, "technologies")
    if not isinstance(technologies, list):
        technologies = list(default_technologies or [])

    approach = _pick(body, "approach", "description", "summary") or ""

    new_files = _dedupe(new_files)
    files_to_modify = [f for f in _dedupe(files_to_modify) if f not in new_files]
    return ImplementationPlan(
        approach=str(approach),
        files_to_modify=files_to_modify,
        new_files=new_files,
        estimated_complexity=complexity,
        technologies=[str(t) for t in technologies],
    )


def parse_plan_response(text: str, default_technologies: Optional[List[str]] = None) -> Optional[ImplementationPlan]:
    """Parse an LLM planning response; None when it contains no JSON object."""
    data = extract_json_object(text)
    if data is None:
        logger.warning(f"Planning response contained no JSON object: {text[:200]!r}")
        return None
    return normalize_plan(data, default_technologies)
