"""
Repository analysis.

Builds a RepositoryAnalysis from a freshly cloned tree: a file inventory, a
language tally, an LLM classification of the layout (with a regex fallback),
the project root, manifest-derived dependencies and the default branch.
"""

import json
import logging
import posixpath
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from config import app_config, model_config
from errors import SandboxError
from tools import parse_current_branch
from .plan import extract_json_object
from .prompts import ANALYSIS_PROMPT

logger = logging.getLogger(__name__)

LANGUAGE_BY_EXTENSION = {
    ".js": "JavaScript", ".jsx": "JavaScript", ".ts": "TypeScript", ".tsx": "TypeScript",
    ".py": "Python", ".java": "Java", ".c": "C", ".cpp": "C++", ".h": "C++",
    ".go": "Go", ".rs": "Rust", ".rb": "Ruby", ".php": "PHP", ".html": "HTML",
    ".css": "CSS", ".scss": "SCSS", ".less": "Less", ".md": "Markdown",
    ".json": "JSON", ".yml": "YAML", ".yaml": "YAML", ".xml": "XML",
    ".sh": "Shell", ".sql": "SQL", ".vue": "Vue",
}

BACKEND_RE = re.compile(r"\.(py|java|go|rs|php|rb)$")
FRONTEND_EXT_RE = re.compile(r"\.(js|jsx|ts|tsx|vue|html|css)$")
FRONTEND_DIR_RE = re.compile(r"(src|components|pages|views)")
MANIFEST_RE = re.compile(r"(package\.json|requirements\.txt|pyproject\.toml|Cargo\.toml|pom\.xml|Gemfile|composer\.json)$")

# First match wins
FRAMEWORK_BY_DEPENDENCY = (
    ("react", "React"),
    ("vue", "Vue"),
    ("@angular/core", "Angular"),
    ("next", "Next.js"),
    ("express", "Express"),
    ("django", "Django"),
    ("flask", "Flask"),
    ("fastapi", "FastAPI"),
)

LOCKFILES = (
    ("yarn.lock", "yarn"),
    ("pnpm-lock.yaml", "pnpm"),
    ("bun.lockb", "bun"),
    ("package-lock.json", "npm"),
)

IGNORED_ROOT_DIRS = frozenset({"node_modules", "dist", "build"})

DEFAULT_BRANCH = "main"


@dataclass
class RepositoryAnalysis:
    """Read-only summary of a cloned repository"""
    total_files: int = 0
    languages: Dict[str, int] = field(default_factory=dict)
    structure: Dict[str, Any] = field(default_factory=dict)
    key_files: List[str] = field(default_factory=list)
    dependencies: List[Dict[str, str]] = field(default_factory=list)
    framework: str = ""
    package_manager: Optional[str] = None
    project_root: str = "."
    project_type: str = ""
    primary_languages: List[str] = field(default_factory=list)
    key_directories: List[str] = field(default_factory=list)
    backend_files: List[str] = field(default_factory=list)
    frontend_files: List[str] = field(default_factory=list)
    config_files: List[str] = field(default_factory=list)
    analysis_notes: str = ""
    default_branch: str = DEFAULT_BRANCH

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalFiles": self.total_files,
            "languages": dict(self.languages),
            "structure": dict(self.structure),
            "keyFiles": list(self.key_files),
            "dependencies": list(self.dependencies),
            "framework": self.framework,
            "packageManager": self.package_manager,
            "projectRoot": self.project_root,
            "projectType": self.project_type,
            "primaryLanguages": list(self.primary_languages),
            "backendFiles": list(self.backend_files),
            "frontendFiles": list(self.frontend_files),
            "analysisNotes": self.analysis_notes,
            "defaultBranch": self.default_branch,
        }


def language_for(path: str) -> Optional[str]:
    return LANGUAGE_BY_EXTENSION.get(posixpath.splitext(path)[1].lower())


def count_languages(paths: List[str]) -> Dict[str, int]:
    counts: Counter = Counter()
    for p in paths:
        lang = language_for(p)
        if lang:
            counts[lang] += 1
    return dict(counts)


def heuristic_layout(paths: List[str]) -> Dict[str, Any]:
    """Classify files with extension and directory regexes."""
    languages = count_languages(paths)
    directories: List[str] = []
    backend: List[str] = []
    frontend: List[str] = []
    config: List[str] = []

    for p in paths:
        d = posixpath.dirname(p)
        if d and "node_modules" not in d:
            top = d.split("/")[0]
            if top not in directories:
                directories.append(top)
        if BACKEND_RE.search(p):
            backend.append(p)
        elif FRONTEND_EXT_RE.search(p) and FRONTEND_DIR_RE.search(p):
            frontend.append(p)
        elif MANIFEST_RE.search(p):
            config.append(p)

    primary = [lang for lang, _ in sorted(languages.items(), key=lambda kv: -kv[1])[:3]]
    return {
        "projectType": f"Multi-language project with {', '.join(primary)}" if primary else "Unknown",
        "primaryLanguages": primary,
        "keyDirectories": directories[:5],
        "keyFiles": config + backend[:3] + frontend[:3],
        "backendFiles": backend[:10],
        "frontendFiles": frontend[:10],
        "configFiles": config,
        "analysisNotes": f"Detected {len(languages)} languages across {len(directories)} directories",
    }


def detect_project_root(config_files: List[str]) -> str:
    """Shallowest directory, other than the root itself, holding a manifest."""
    candidates = [posixpath.dirname(f) for f in config_files]
    candidates = [d for d in candidates if d and d != "."]
    if not candidates:
        return "."
    return min(candidates, key=lambda d: len(d.split("/")))


def summarize_structure(paths: List[str]) -> Dict[str, Any]:
    roots: List[str] = []
    for p in paths:
        top = p.split("/")[0]
        if "/" in p and top not in roots and not top.startswith(".") and top not in IGNORED_ROOT_DIRS:
            roots.append(top)
    return {
        "root": roots[:10],
        "depth": max((len(p.split("/")) for p in paths), default=0),
    }


def parse_package_json(text: str, all_paths: List[str]) -> Tuple[List[Dict[str, str]], str, Optional[str]]:
    """Dependencies, framework and package manager from a package.json body.

    Raises ValueError when the manifest does not parse.
    """
    pkg = json.loads(text)
    if not isinstance(pkg, dict):
        raise ValueError("package.json is not an object")
    deps: Dict[str, Any] = {}
    deps.update(pkg.get("dependencies") or {})
    deps.update(pkg.get("devDependencies") or {})
    dependencies = [{"name": name, "version": str(version), "type": "npm"} for name, version in deps.items()]

    framework = ""
    for dep, label in FRAMEWORK_BY_DEPENDENCY:
        if dep in deps:
            framework = label
            break

    manager = None
    for lockfile, label in LOCKFILES:
        if any(p == lockfile or p.endswith("/" + lockfile) for p in all_paths):
            manager = label
            break
    return dependencies, framework, manager


def _clean_layout(data: Dict[str, Any], known: set) -> Dict[str, Any]:
    """Keep only well-typed fields, and only paths that exist in the tree."""
    def paths(key):
        value = data.get(key)
        if not isinstance(value, list):
            return []
        return [v for v in value if isinstance(v, str) and v in known]

    langs = data.get("primaryLanguages")
    return {
        "projectType": str(data.get("projectType") or ""),
        "primaryLanguages": [str(x) for x in langs] if isinstance(langs, list) else [],
        "keyDirectories": [str(x) for x in data.get("keyDirectories") or [] if isinstance(x, str)],
        "keyFiles": paths("keyFiles"),
        "backendFiles": paths("backendFiles"),
        "frontendFiles": paths("frontendFiles"),
        "configFiles": paths("configFiles"),
        "analysisNotes": str(data.get("analysisNotes") or ""),
    }


Emit = Callable[[str, str], Awaitable[None]]


class RepositoryAnalyzer:
    """Produces a RepositoryAnalysis for the checkout in a sandbox."""

    def __init__(self, sandbox, llm=None, sample_size: Optional[int] = None):
        self.sandbox = sandbox
        self.llm = llm
        self.sample_size = sample_size or app_config.analysis_sample_size

    async def list_all_files(self) -> List[Dict[str, Any]]:
        result = await self.sandbox.call_tool("list_files", {"path": ".", "recursive": True})
        if not result.success or not isinstance(result.data, dict) or "files" not in result.data:
            raise SandboxError(f"Failed to list files in the repository: {result.error or 'no file list returned'}")
        return [f for f in result.data["files"] if f.get("type") == "file"]

    async def classify_layout(self, paths: List[str]) -> Dict[str, Any]:
        """LLM classification of the file layout; regex heuristics when it fails."""
        if self.llm is None:
            return heuristic_layout(paths)
        sample = [p for p in paths if "node_modules" not in p and not p.startswith(".git/")][:self.sample_size]
        prompt = ANALYSIS_PROMPT.format(total=len(paths), sample="\n".join(sample))
        try:
            result = await self.llm.run(
                system_prompt="You analyze repository layouts. Answer with JSON only.",
                user_content=prompt,
                tool_names=("read_file",),
                sandbox=self.sandbox,
                max_rounds=4,
                token_budget=model_config.max_context_tokens,
            )
            data = extract_json_object(result.content)
        except Exception as e:
            logger.warning(f"LLM repository analysis failed, using heuristics: {e}")
            return heuristic_layout(paths)
        if not data:
            logger.warning("LLM repository analysis returned no JSON, using heuristics")
            return heuristic_layout(paths)

        layout = _clean_layout(data, set(paths))
        fallback = heuristic_layout(paths)
        # Manifest detection drives the project root, so never trust an empty list
        if not layout["configFiles"]:
            layout["configFiles"] = fallback["configFiles"]
        for key in ("primaryLanguages", "keyFiles"):
            if not layout[key]:
                layout[key] = fallback[key]
        if not layout["projectType"]:
            layout["projectType"] = fallback["projectType"]
        return layout

    async def detect_default_branch(self) -> str:
        try:
            result = await self.sandbox.call_tool("git_status", {"repo_path": "."})
        except Exception as e:
            logger.info(f"Could not detect default branch, using {DEFAULT_BRANCH!r}: {e}")
            return DEFAULT_BRANCH
        if result.success:
            branch = parse_current_branch(result.stdout or "")
            if branch:
                logger.info(f"Detected default branch: {branch}")
                return branch
        return DEFAULT_BRANCH

    async def analyze(self, emit: Optional[Emit] = None) -> Tuple[RepositoryAnalysis, List[Dict[str, Any]]]:
        """Run the full analysis. Only a failed file listing raises."""
        async def say(kind: str, message: str):
            if emit is not None:
                await emit(kind, message)

        await say("analyze", "Analyzing repository...")
        files = await self.list_all_files()
        paths = [f["path"] for f in files]
        logger.info(f"Found {len(paths)} files")

        await say("analyze", "Performing intelligent repository analysis...")
        layout = await self.classify_layout(paths)

        project_root = detect_project_root(layout["configFiles"])
        logger.info(f"Detected project root at: {project_root}")

        dependencies: List[Dict[str, str]] = []
        framework = ""
        package_manager = None
        manifest = next((f for f in layout["configFiles"]
                         if f.endswith("package.json") and "node_modules" not in f), None)
        if manifest:
            read = await self.sandbox.call_tool("read_file", {"path": manifest})
            if read.success and isinstance(read.data, dict):
                try:
                    dependencies, framework, package_manager = parse_package_json(read.data.get("content", ""), paths)
                except ValueError as e:
                    logger.info(f"Could not parse {manifest}: {e}")

        analysis = RepositoryAnalysis(
            total_files=len(paths),
            languages=count_languages(paths),
            structure=summarize_structure(paths),
            key_files=layout["keyFiles"],
            dependencies=dependencies,
            framework=framework,
            package_manager=package_manager,
            project_root=project_root,
            project_type=layout["projectType"],
            primary_languages=layout["primaryLanguages"],
            key_directories=layout["keyDirectories"],
            backend_files=layout["backendFiles"],
            frontend_files=layout["frontendFiles"],
            config_files=layout["configFiles"],
            analysis_notes=layout["analysisNotes"],
            default_branch=await self.detect_default_branch(),
        )
        logger.info(
            f"Analysis complete: {analysis.project_type}; languages={analysis.primary_languages}; "
            f"backend={len(analysis.backend_files)} frontend={len(analysis.frontend_files)}"
        )
        await say("analyze", "Repository analysis complete.")
        return analysis, files
