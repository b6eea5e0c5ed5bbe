"""
Shared state for the web server.

Route modules read and replace these through web.state so tests can swap in
fakes before a request is made.
"""

import logging
from typing import Callable, Optional

from agent.llm import ToolCallingClient
from github_api import GitHubClient
from sandbox import Sandbox, create_sandbox
from sessions import SessionRegistry

logger = logging.getLogger(__name__)

# Paused sessions awaiting publish, keyed by session id
registry: SessionRegistry = SessionRegistry()

# Factories for per-request collaborators
llm_factory: Callable[[], ToolCallingClient] = ToolCallingClient
github_factory: Callable[[], GitHubClient] = GitHubClient
sandbox_factory: Callable[[], Sandbox] = create_sandbox

_llm: Optional[ToolCallingClient] = None


def get_llm() -> ToolCallingClient:
    """One model client per process; the Bedrock client is created on first use."""
    global _llm
    if _llm is None:
        _llm = llm_factory()
    return _llm
