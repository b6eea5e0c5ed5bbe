"""
Sandbox surface: an isolated working tree exposing the fixed tool catalogue.

Two interchangeable implementations:
- LocalSandbox: a private temp directory driven by LocalBackend subprocesses.
- RemoteSandbox: a per-session scratch directory on a remote host over SSH.

The orchestrator only sees the Sandbox interface.
"""

import asyncio
import logging
import shutil
import tempfile
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from backend import Backend, LocalBackend, SSHBackend
from config import sandbox_config
from errors import SandboxError, UnknownToolError
from tools import TOOL_SCHEMAS, ToolResult, execute_tool

logger = logging.getLogger(__name__)


class Sandbox(ABC):
    """Capability interface every sandbox backend satisfies."""

    def __init__(self):
        self._backend: Optional[Backend] = None
        self._initialized = False
        self._cleaned_up = False
        self._init_lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._initialized and not self._cleaned_up

    @property
    def backend(self) -> Backend:
        if self._backend is None or self._cleaned_up:
            raise SandboxError("Sandbox is not initialized")
        return self._backend

    @property
    def working_directory(self) -> str:
        return self.backend.working_directory

    async def initialize(self) -> None:
        """Provision the environment. Safe to call more than once."""
        async with self._init_lock:
            if self._initialized:
                if self._cleaned_up:
                    raise SandboxError("Sandbox was already cleaned up")
                return
            loop = asyncio.get_running_loop()
            try:
                self._backend = await loop.run_in_executor(None, self._provision)
            except SandboxError:
                raise
            except Exception as e:
                raise SandboxError(f"Failed to initialize sandbox: {e}")
            self._initialized = True
            logger.info(f"{type(self).__name__} ready at {self._backend.working_directory}")

    async def call_tool(self, name: str, params: Optional[Dict[str, Any]] = None) -> ToolResult:
        """Invoke a catalogue tool. Domain failures come back as a failed ToolResult."""
        if name not in TOOL_SCHEMAS:
            raise UnknownToolError(f"Unknown tool: {name}")
        if not self.is_initialized:
            return ToolResult(success=False, error="Sandbox is not initialized", tool_name=name)
        backend = self._backend
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: execute_tool(name, params or {}, backend))

    async def cleanup(self) -> None:
        """Tear down the environment. Idempotent."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        if self._backend is None:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._teardown)
            logger.info(f"{type(self).__name__} cleaned up")
        except Exception as e:
            logger.warning(f"Sandbox cleanup failed: {e}")

    def get_available_tools(self) -> List[str]:
        return list(TOOL_SCHEMAS.keys())

    def get_tool_schema(self, name: str) -> Optional[Dict[str, Any]]:
        return TOOL_SCHEMAS.get(name)

    @abstractmethod
    def _provision(self) -> Backend:
        """Create the working environment and return its backend (runs in a worker thread)."""

    @abstractmethod
    def _teardown(self) -> None:
        """Destroy the working environment (runs in a worker thread)."""


class LocalSandbox(Sandbox):
    """Sandbox backed by a private temp directory on this host."""

    def __init__(self, base_dir: Optional[str] = None):
        super().__init__()
        self._base_dir = base_dir
        self._work_dir: Optional[str] = None

    def _provision(self) -> Backend:
        self._work_dir = tempfile.mkdtemp(prefix="pilot-", dir=self._base_dir)
        return LocalBackend(self._work_dir)

    def _teardown(self) -> None:
        # kill any in-flight command before removing its cwd
        if isinstance(self._backend, LocalBackend) and self._backend.cancel_running_command():
            logger.info("Killed command still running at teardown")
        if self._work_dir:
            shutil.rmtree(self._work_dir, ignore_errors=True)


class RemoteSandbox(Sandbox):
    """Sandbox on a remote host reached over SSH (paramiko)."""

    def __init__(self, host: Optional[str] = None, user: Optional[str] = None,
                 key_path: Optional[str] = None, port: Optional[int] = None,
                 base_dir: Optional[str] = None):
        super().__init__()
        self._host = host or sandbox_config.ssh_host
        self._user = user or sandbox_config.ssh_user or None
        self._key_path = key_path or sandbox_config.ssh_key_path or None
        self._port = port or sandbox_config.ssh_port
        self._base_dir = base_dir or sandbox_config.remote_base_dir
        self._scratch: Optional[str] = None

    def _provision(self) -> Backend:
        if not self._host:
            raise SandboxError("Remote sandbox requested but SANDBOX_SSH_HOST is not set")
        backend = SSHBackend(
            host=self._host,
            working_directory=self._base_dir,
            user=self._user,
            key_path=self._key_path,
            port=self._port,
        )
        try:
            self._scratch = backend.make_scratch_dir(self._base_dir)
        except OSError:
            backend.close()
            raise
        backend.set_working_directory(self._scratch)
        return backend

    def _teardown(self) -> None:
        backend = self._backend
        if backend is None:
            return
        try:
            if self._scratch:
                backend.remove_directory(self._scratch)
        finally:
            backend.close()


def create_sandbox() -> Sandbox:
    """Build the sandbox variant selected by configuration."""
    if sandbox_config.use_remote:
        return RemoteSandbox()
    return LocalSandbox()
