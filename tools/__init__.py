"""
Tool definitions and implementations for the sandbox.
Each tool has an Anthropic-compatible schema and an implementation function.
Tools use a Backend abstraction for file/command operations (local or SSH).
"""

from tools._common import ToolResult  # noqa: F401
from tools.paths import (  # noqa: F401
    DENYLIST_PATTERNS,
    PathSecurityError,
    is_denied,
    normalize_relative,
    scrub_credentials,
    secure_path,
)
from tools.file_ops import (  # noqa: F401
    read_file,
    write_file,
    list_files,
    delete_file,
    get_package_info,
)
from tools.git_ops import (  # noqa: F401
    clone_repository,
    git_status,
    git_add,
    git_commit,
    git_branch,
    git_push,
    git_apply_patch,
    git_revert,
    parse_current_branch,
)
from tools.shell_ops import execute_shell  # noqa: F401
from tools.schemas import (  # noqa: F401
    TOOL_DEFINITIONS,
    TOOL_IMPLEMENTATIONS,
    TOOL_SCHEMAS,
    READ_ONLY_TOOLS,
    EXECUTOR_TOOLS,
    tool_definitions_for,
)
from tools.dispatch import execute_tool  # noqa: F401
