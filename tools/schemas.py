"""Tool schema definitions (Bedrock/Anthropic Messages API) and dispatch maps."""

from typing import Any, Callable, Dict, List

from tools._common import ToolResult
from tools.file_ops import read_file, write_file, list_files, delete_file, get_package_info
from tools.git_ops import (
    clone_repository, git_status, git_add, git_commit, git_branch,
    git_push, git_apply_patch, git_revert,
)
from tools.shell_ops import execute_shell


_REPO_PATH = {"type": "string", "description": "Repository directory relative to the sandbox root (default: '.')"}

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "clone_repository",
        "description": "Clone a Git repository with shallow depth into the sandbox.",
        "input_schema": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "Repository URL (https or ssh)"},
                "destination": {"type": "string", "description": "Target directory relative to the sandbox root"},
                "depth": {"type": "integer", "description": "Clone depth (default: 1)"},
            },
            "required": ["url", "destination"],
        },
    },
    {
        "name": "read_file",
        "description": "Read the full contents of a text file in the repository.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the repository root"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "write_file",
        "description": "Create or overwrite a file with the given content. Parent directories are created as needed. Always write the complete file.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the repository root"},
                "content": {"type": "string", "description": "Complete file content"},
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": "list_files",
        "description": "List files and directories in a path. Use recursive=true to walk the whole tree.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory relative to the repository root (default: '.')"},
                "recursive": {"type": "boolean", "description": "Walk subdirectories (default: false)"},
                "include_hidden": {"type": "boolean", "description": "Include dotfiles (default: false)"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "delete_file",
        "description": "Delete a file from the repository.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the repository root"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "git_status",
        "description": "Get Git repository status (porcelain) and the current branch.",
        "input_schema": {
            "type": "object",
            "properties": {"repo_path": _REPO_PATH},
            "required": ["repo_path"],
        },
    },
    {
        "name": "git_add",
        "description": "Stage files for commit. Stages all changes when files is omitted.",
        "input_schema": {
            "type": "object",
            "properties": {
                "repo_path": _REPO_PATH,
                "files": {"type": "array", "items": {"type": "string"}, "description": "Paths to stage (default: ['.'])"},
            },
            "required": ["repo_path"],
        },
    },
    {
        "name": "git_commit",
        "description": "Create a Git commit of the staged changes.",
        "input_schema": {
            "type": "object",
            "properties": {
                "repo_path": _REPO_PATH,
                "message": {"type": "string", "description": "Commit message"},
            },
            "required": ["repo_path", "message"],
        },
    },
    {
        "name": "git_branch",
        "description": "Create and switch to a new Git branch.",
        "input_schema": {
            "type": "object",
            "properties": {
                "repo_path": _REPO_PATH,
                "branch_name": {"type": "string", "description": "New branch name"},
                "from_branch": {"type": "string", "description": "Base branch (default: current branch)"},
            },
            "required": ["repo_path", "branch_name"],
        },
    },
    {
        "name": "git_push",
        "description": "Push a branch to the remote repository.",
        "input_schema": {
            "type": "object",
            "properties": {
                "repo_path": _REPO_PATH,
                "branch_name": {"type": "string", "description": "Branch to push"},
            },
            "required": ["repo_path", "branch_name"],
        },
    },
    {
        "name": "git_apply_patch",
        "description": "Apply a unified diff patch to the repository.",
        "input_schema": {
            "type": "object",
            "properties": {
                "repo_path": _REPO_PATH,
                "patch": {"type": "string", "description": "Unified diff text"},
            },
            "required": ["repo_path", "patch"],
        },
    },
    {
        "name": "git_revert",
        "description": "Revert a commit.",
        "input_schema": {
            "type": "object",
            "properties": {
                "repo_path": _REPO_PATH,
                "commit_hash": {"type": "string", "description": "Commit hash to revert"},
            },
            "required": ["repo_path", "commit_hash"],
        },
    },
    {
        "name": "execute_shell",
        "description": "Execute a shell command in the sandbox (development only).",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command"},
                "working_dir": {"type": "string", "description": "Directory relative to the sandbox root"},
            },
            "required": ["command"],
        },
    },
    {
        "name": "get_package_info",
        "description": "Extract package information from package.json, requirements.txt or pyproject.toml.",
        "input_schema": {
            "type": "object",
            "properties": {"repo_path": _REPO_PATH},
            "required": ["repo_path"],
        },
    },
]

TOOL_IMPLEMENTATIONS: Dict[str, Callable[..., ToolResult]] = {
    "clone_repository": clone_repository,
    "read_file": read_file,
    "write_file": write_file,
    "list_files": list_files,
    "delete_file": delete_file,
    "git_status": git_status,
    "git_add": git_add,
    "git_commit": git_commit,
    "git_branch": git_branch,
    "git_push": git_push,
    "git_apply_patch": git_apply_patch,
    "git_revert": git_revert,
    "execute_shell": execute_shell,
    "get_package_info": get_package_info,
}

TOOL_SCHEMAS: Dict[str, Dict[str, Any]] = {t["name"]: t for t in TOOL_DEFINITIONS}

# Planning must not mutate the checkout
READ_ONLY_TOOLS = frozenset({"list_files", "read_file"})

EXECUTOR_TOOLS = ("list_files", "read_file", "write_file", "git_add", "git_status", "git_commit")


def tool_definitions_for(names) -> List[Dict[str, Any]]:
    """Return schema definitions for the given tool names, preserving catalogue order."""
    wanted = set(names)
    return [t for t in TOOL_DEFINITIONS if t["name"] in wanted]
