"""
Shared fakes for the test suite: a scripted Bedrock service, an in-memory
sandbox and a GitHub client that records pull requests.
"""

import json
import os
import shutil
import subprocess
from typing import Any, Dict, List, Optional

import pytest

from bedrock_service import GenerationResult, ToolUseBlock
from errors import UnknownToolError
from github_api import PullRequestResult
from agent.llm import ToolCallingClient
from tools import TOOL_SCHEMAS, ToolResult

HAS_GIT = shutil.which("git") is not None


# ============================================================
# Bedrock
# ============================================================

def text_reply(content: str, input_tokens: int = 10, output_tokens: int = 10) -> GenerationResult:
    return GenerationResult(content=content, stop_reason="end_turn",
                            input_tokens=input_tokens, output_tokens=output_tokens)


def tool_reply(*calls, content: str = "", input_tokens: int = 10, output_tokens: int = 10) -> GenerationResult:
    """calls: (name, input) pairs."""
    uses = [ToolUseBlock(id=f"toolu_{i}", name=name, input=params) for i, (name, params) in enumerate(calls)]
    return GenerationResult(content=content, tool_uses=uses, stop_reason="tool_use",
                            input_tokens=input_tokens, output_tokens=output_tokens)


class FakeService:
    """Stands in for BedrockService; answers from a script, then with empty text."""

    def __init__(self, replies=None):
        self.replies: List[Any] = list(replies or [])
        self.calls: List[Dict[str, Any]] = []

    def generate_response(self, messages, system_prompt=None, model_id=None, config=None, tools=None):
        self.calls.append({
            "messages": json.loads(json.dumps(messages, default=str)),
            "system_prompt": system_prompt,
            "tools": [t["name"] for t in tools or []],
        })
        if not self.replies:
            return text_reply("")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def make_llm(*replies) -> ToolCallingClient:
    return ToolCallingClient(service=FakeService(replies))


# ============================================================
# Sandbox
# ============================================================

class FakeBackend:
    """Backend surface used by the diff and terminal routes."""

    def __init__(self, sandbox: "FakeSandbox"):
        self.sandbox = sandbox
        self.working_directory = "/sandbox/repo"
        self.commands: List[str] = []

    def run_command(self, command, cwd, timeout=30, env=None):
        self.commands.append(command)
        if command in self.sandbox.command_output:
            return self.sandbox.command_output[command]
        if command == "git rev-parse HEAD":
            return f"{len(self.sandbox.commits):040x}\n", "", 0
        if command.startswith("git diff --name-only "):
            since = int(command.split()[-1], 16)
            changed = {p for paths in self.sandbox.commit_files[since:] for p in paths} | self.sandbox.pending
            return "".join(f"{p}\n" for p in sorted(changed)), "", 0
        return "", "", 0


class FakeSandbox:
    """In-memory sandbox: a dict of files plus a dirty flag standing in for git."""

    def __init__(self, files: Optional[Dict[str, str]] = None, fail_tools=(), default_branch: str = "main"):
        self.files: Dict[str, str] = dict(files or {})
        self.fail_tools = set(fail_tools)
        self.default_branch = default_branch
        self.calls: List[tuple] = []
        self.command_output: Dict[str, tuple] = {}
        self.dirty = False
        self.commits: List[str] = []
        self.commit_files: List[List[str]] = []
        self.pending: set = set()
        self.pushes: List[str] = []
        self.branch: Optional[str] = None
        self.initialize_count = 0
        self.cleanup_count = 0
        self._initialized = False
        self._backend = FakeBackend(self)

    @property
    def is_initialized(self) -> bool:
        return self._initialized and self.cleanup_count == 0

    @property
    def backend(self):
        return self._backend

    @property
    def working_directory(self) -> str:
        return self._backend.working_directory

    async def initialize(self) -> None:
        self.initialize_count += 1
        self._initialized = True

    async def cleanup(self) -> None:
        self.cleanup_count += 1

    def tool_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    async def call_tool(self, name: str, params: Optional[Dict[str, Any]] = None) -> ToolResult:
        if name not in TOOL_SCHEMAS:
            raise UnknownToolError(f"Unknown tool: {name}")
        params = params or {}
        self.calls.append((name, params))
        if not self.is_initialized:
            return ToolResult(success=False, error="Sandbox is not initialized", tool_name=name)
        if name in self.fail_tools:
            return ToolResult(success=False, error=f"{name} exploded", tool_name=name)
        handler = getattr(self, f"_tool_{name}", None)
        if handler is None:
            return ToolResult(success=True, data={}, tool_name=name)
        return handler(**params)

    def _tool_clone_repository(self, url="", destination=".", depth=1):
        return ToolResult(success=True, data={"path": destination, "size": 1}, tool_name="clone_repository")

    def _tool_list_files(self, path=".", recursive=False, include_hidden=False):
        files = [{"path": p, "size": len(c), "type": "file", "extension": os.path.splitext(p)[1]}
                 for p, c in sorted(self.files.items())]
        return ToolResult(success=True, data={"files": files}, tool_name="list_files")

    def _tool_read_file(self, path=""):
        if ".." in path.split("/"):
            return ToolResult(success=False, error=f"Path escapes sandbox root: {path!r}", tool_name="read_file")
        if path not in self.files:
            return ToolResult(success=False, error=f"File not found: {path}", tool_name="read_file")
        content = self.files[path]
        return ToolResult(success=True, data={"content": content, "size": len(content)}, tool_name="read_file")

    def _tool_write_file(self, path="", content=""):
        if ".." in path.split("/"):
            return ToolResult(success=False, error=f"Path escapes sandbox root: {path!r}", tool_name="write_file")
        self.files[path] = content
        self.dirty = True
        self.pending.add(path)
        return ToolResult(success=True, data={"path": path, "size": len(content)}, tool_name="write_file")

    def _tool_git_status(self, repo_path="."):
        current = self.branch or self.default_branch
        return ToolResult(
            success=True,
            data={"has_changes": self.dirty, "changes": [], "summary": "", "current_branch": current},
            stdout=f"CURRENT_BRANCH: {current}",
            tool_name="git_status",
        )

    def _tool_git_add(self, repo_path=".", files=None):
        return ToolResult(success=True, data={"files": files or ["."]}, tool_name="git_add")

    def _tool_git_commit(self, repo_path=".", message=""):
        if not self.dirty:
            return ToolResult(success=True, data={"message": message, "skipped": True}, tool_name="git_commit")
        self.dirty = False
        self.commits.append(message)
        self.commit_files.append(sorted(self.pending))
        self.pending.clear()
        return ToolResult(success=True, data={"message": message, "commit": "abc123"}, tool_name="git_commit")

    def _tool_git_branch(self, repo_path=".", branch_name="", from_branch=None):
        source = self.branch or self.default_branch
        self.branch = branch_name
        return ToolResult(success=True, data={"branch_name": branch_name, "from_branch": source},
                          stdout=f"CURRENT_BRANCH: {source}", tool_name="git_branch")

    def _tool_git_push(self, repo_path=".", branch_name=""):
        self.pushes.append(branch_name)
        return ToolResult(success=True, data={"branch_name": branch_name}, tool_name="git_push")


# ============================================================
# GitHub
# ============================================================

class FakeGitHub:
    def __init__(self, authenticated: bool = False, default_branch: str = "main"):
        self.authenticated = authenticated
        self.default_branch = default_branch
        self.pull_requests: List[Dict[str, Any]] = []

    def is_authenticated(self) -> bool:
        return self.authenticated

    def get_repository(self, owner, repo):
        return {"name": repo, "full_name": f"{owner}/{repo}", "default_branch": self.default_branch,
                "html_url": f"https://github.com/{owner}/{repo}", "private": False}

    def create_pull_request(self, owner, repo, title, body, head, base="main"):
        number = len(self.pull_requests) + 1
        self.pull_requests.append({"owner": owner, "repo": repo, "title": title, "body": body,
                                   "head": head, "base": base})
        return PullRequestResult(url=f"https://github.com/{owner}/{repo}/pull/{number}", number=number,
                                 title=title, head=head, base=base, mocked=not self.authenticated)


# ============================================================
# Fixtures
# ============================================================

WIDGET_FILES = {
    "README.md": "# widget\n",
    "package.json": json.dumps({"dependencies": {"express": "^4.18.0"}}),
    "server/app.py": "from flask import Flask\napp = Flask(__name__)\n",
    "server/routes.py": "def index():\n    return 'ok'\n",
    "src/components/App.jsx": "export default function App() { return null }\n",
}


@pytest.fixture
def github():
    return FakeGitHub()


def git(cwd: str, *args: str) -> str:
    """Run git with a throwaway identity; returns stdout."""
    out = subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=cwd, check=True, capture_output=True, text=True,
    )
    return out.stdout


@pytest.fixture
def origin_repo(tmp_path):
    """A local git repository with one commit on main, usable as a file:// remote."""
    if not HAS_GIT:
        pytest.skip("git binary not available")
    repo = tmp_path / "origin"
    repo.mkdir()
    git(str(repo), "init", "-q", "-b", "main")
    (repo / "README.md").write_text("# widget\n")
    (repo / "server").mkdir()
    (repo / "server" / "app.py").write_text("def health():\n    return 'ok'\n")
    git(str(repo), "add", ".")
    git(str(repo), "commit", "-q", "-m", "initial")
    return repo
