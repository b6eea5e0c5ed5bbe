"""
Backend abstraction for file and command operations inside a sandbox.
Supports a local temp directory (default) and an SSH remote via paramiko.
"""

import logging
import os
import posixpath
import shlex
import shutil
import signal
import stat as stat_mod
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Directories never descended into when walking a checkout
SKIP_DIRS = frozenset({
    ".git", "node_modules", "__pycache__", ".venv", "venv",
    ".mypy_cache", ".pytest_cache", ".tox", "dist", "build",
    ".next", ".nuxt", ".cache", "coverage", ".idea", ".vscode",
})


class Backend(ABC):
    """Abstract backend for file system and command operations."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        """Return the working directory path."""

    @abstractmethod
    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        """List entries in a directory. Returns list of {name, type, ext?, size?}."""

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Read file content as text."""

    @abstractmethod
    def write_file(self, path: str, content: str) -> None:
        """Write content to a file (create dirs as needed)."""

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        """Check if a path is a directory."""

    @abstractmethod
    def is_file(self, path: str) -> bool:
        """Check if a path is a file."""

    @abstractmethod
    def file_size(self, path: str) -> int:
        """Get file size in bytes."""

    @abstractmethod
    def remove_file(self, path: str) -> None:
        """Delete a file."""

    @abstractmethod
    def remove_tree(self, path: str) -> None:
        """Recursively delete a directory. Missing paths are ignored."""

    @abstractmethod
    def walk_files(self, path: str, include_hidden: bool = False) -> List[Dict[str, Any]]:
        """Recursively list files and directories under path.

        Returns [{path, type, size}] with paths relative to the working directory,
        skipping SKIP_DIRS.
        """

    @abstractmethod
    def dir_size(self, path: str) -> int:
        """Total size in bytes of all regular files under path."""

    @abstractmethod
    def run_command(self, command: str, cwd: str, timeout: int = 30,
                    env: Optional[Dict[str, str]] = None) -> Tuple[str, str, int]:
        """Run a shell command. Returns (stdout, stderr, returncode)."""

    @abstractmethod
    def make_temp_file(self, content: str, prefix: str = "pilot-", mode: int = 0o600) -> str:
        """Create a file outside the working tree and return its absolute path."""

    @abstractmethod
    def remove_temp_file(self, path: str) -> None:
        """Delete a file created by make_temp_file. Missing files are ignored."""

    def close(self) -> None:
        """Release any held resources."""

    def resolve_path(self, path: str) -> str:
        """Resolve a path relative to the working directory."""
        if os.path.isabs(path):
            return os.path.normpath(path)
        return os.path.normpath(os.path.join(self.working_directory, path))

    def relative_path(self, resolved: str) -> str:
        rel = os.path.relpath(resolved, self.working_directory)
        return "." if rel == "." else rel.replace(os.sep, "/")

    def _ensure_under_working(self, resolved: str) -> None:
        """Raise ValueError if resolved path escapes the working directory."""
        real = os.path.abspath(resolved)
        wd = os.path.abspath(self.working_directory)
        if real != wd and not real.startswith(wd + os.sep):
            raise ValueError(f"Path escapes working directory: {resolved!r}")


# ============================================================
# Local Backend
# ============================================================

class LocalBackend(Backend):
    """Backend that operates on the local filesystem."""

    def __init__(self, working_directory: str = "."):
        self._working_directory = os.path.abspath(working_directory)
        self._active_process: Optional[subprocess.Popen] = None

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def _ensure_under_working(self, resolved: str) -> None:
        # realpath so a symlink inside the checkout cannot point outside it
        real = os.path.realpath(resolved)
        wd = os.path.realpath(self._working_directory)
        if real != wd and not real.startswith(wd + os.sep):
            raise ValueError(f"Path escapes working directory: {resolved!r}")

    def _full(self, path: str) -> str:
        full = self.resolve_path(path) if path else self._working_directory
        self._ensure_under_working(full)
        return full

    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        full = self._full(path)
        entries = []
        for name in sorted(os.listdir(full)):
            child = os.path.join(full, name)
            if os.path.isdir(child):
                entries.append({"name": name, "type": "directory", "size": 0})
            elif os.path.isfile(child):
                _, ext = os.path.splitext(name)
                entries.append({
                    "name": name, "type": "file",
                    "ext": ext,
                    "size": os.path.getsize(child),
                })
        return entries

    def read_file(self, path: str) -> str:
        with open(self._full(path), "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    def write_file(self, path: str, content: str) -> None:
        full = self._full(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8") as f:
            f.write(content)

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(self._full(path))

    def is_file(self, path: str) -> bool:
        return os.path.isfile(self._full(path))

    def file_size(self, path: str) -> int:
        return os.path.getsize(self._full(path))

    def remove_file(self, path: str) -> None:
        os.remove(self._full(path))

    def remove_tree(self, path: str) -> None:
        full = self._full(path)
        if full == self._working_directory:
            for name in os.listdir(full):
                child = os.path.join(full, name)
                if os.path.isdir(child) and not os.path.islink(child):
                    shutil.rmtree(child, ignore_errors=True)
                else:
                    os.remove(child)
            return
        shutil.rmtree(full, ignore_errors=True)

    def walk_files(self, path: str, include_hidden: bool = False) -> List[Dict[str, Any]]:
        root = self._full(path)
        results: List[Dict[str, Any]] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(
                d for d in dirnames
                if d not in SKIP_DIRS and (include_hidden or not d.startswith("."))
            )
            for d in dirnames:
                results.append({"path": self.relative_path(os.path.join(dirpath, d)),
                                "type": "directory", "size": 0})
            for name in sorted(filenames):
                if not include_hidden and name.startswith("."):
                    continue
                full = os.path.join(dirpath, name)
                try:
                    size = os.path.getsize(full)
                except OSError:
                    size = 0
                results.append({"path": self.relative_path(full), "type": "file", "size": size})
        return results

    def dir_size(self, path: str) -> int:
        total = 0
        for dirpath, _, filenames in os.walk(self._full(path)):
            for name in filenames:
                full = os.path.join(dirpath, name)
                if not os.path.islink(full):
                    try:
                        total += os.path.getsize(full)
                    except OSError:
                        pass
        return total

    def run_command(self, command: str, cwd: str, timeout: int = 30,
                    env: Optional[Dict[str, str]] = None) -> Tuple[str, str, int]:
        full_cwd = self._full(cwd) if cwd not in ("", ".") else self._working_directory
        proc_env = None
        if env:
            proc_env = dict(os.environ)
            proc_env.update(env)
        proc = subprocess.Popen(
            command, shell=True, cwd=full_cwd, env=proc_env,
            stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
            preexec_fn=os.setsid,  # create process group for clean kill
        )
        self._active_process = proc
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill_process(proc)
            stdout, stderr = proc.communicate(timeout=5)
            return stdout or "", f"Command timed out after {timeout}s\n{stderr or ''}", -1
        finally:
            self._active_process = None
        return stdout or "", stderr or "", proc.returncode

    def make_temp_file(self, content: str, prefix: str = "pilot-", mode: int = 0o600) -> str:
        import tempfile
        fd, path = tempfile.mkstemp(prefix=prefix)
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.chmod(path, mode)
        return path

    def remove_temp_file(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass

    def cancel_running_command(self) -> bool:
        """Kill the currently running subprocess, if any. Returns True if killed."""
        proc = self._active_process
        if proc and proc.poll() is None:
            self._kill_process(proc)
            return True
        return False

    @staticmethod
    def _kill_process(proc: subprocess.Popen) -> None:
        """Kill a process and its entire process group."""
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGTERM)
        except (ProcessLookupError, OSError):
            pass
        try:
            proc.kill()
        except (ProcessLookupError, OSError):
            pass


# ============================================================
# SSH Backend
# ============================================================

class SSHBackend(Backend):
    """Backend that operates on a remote machine via SSH (paramiko)."""

    def __init__(self, host: str, working_directory: str,
                 user: Optional[str] = None, key_path: Optional[str] = None,
                 port: int = 22):
        try:
            import paramiko
        except ImportError:
            raise ImportError(
                "paramiko is required for SSH support. Install with: pip install paramiko"
            )

        self._host = host
        self._user = user
        self._port = port
        self._key_path = key_path
        self._working_directory = working_directory.rstrip("/") or "/"
        # serialises SFTP/exec calls on the shared paramiko session
        self._lock = threading.RLock()

        self._client = paramiko.SSHClient()
        self._client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        logger.info(f"SSH connecting to {user}@{host}:{port}...")
        self._client.connect(**self._connect_kwargs())
        self._sftp = self._client.open_sftp()
        transport = self._client.get_transport()
        if transport:
            transport.set_keepalive(30)
        logger.info(f"SSH connected to {user}@{host}:{port}, dir: {self._working_directory}")

    def _connect_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "hostname": self._host,
            "port": self._port,
            "username": self._user,
            "timeout": 15,
            "banner_timeout": 15,
            "auth_timeout": 20,
            "compress": True,
        }
        if self._key_path:
            kwargs["key_filename"] = os.path.expanduser(self._key_path)
            kwargs["look_for_keys"] = False
            kwargs["allow_agent"] = False
        else:
            kwargs["look_for_keys"] = True
            kwargs["allow_agent"] = True
        return kwargs

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def set_working_directory(self, path: str) -> None:
        self._working_directory = path.rstrip("/") or "/"

    def resolve_path(self, path: str) -> str:
        if posixpath.isabs(path):
            return posixpath.normpath(path)
        return posixpath.normpath(posixpath.join(self._working_directory, path))

    def relative_path(self, resolved: str) -> str:
        rel = posixpath.relpath(resolved, self._working_directory)
        return "." if rel == "." else rel

    def _ensure_under_working(self, resolved: str) -> None:
        norm_wd = self._working_directory
        norm_resolved = (resolved or "").rstrip("/") or "/"
        if norm_resolved != norm_wd and not norm_resolved.startswith(norm_wd + "/"):
            raise ValueError(f"Path escapes working directory: {resolved!r}")

    def _remote(self, path: str) -> str:
        remote = self.resolve_path(path) if path else self._working_directory
        self._ensure_under_working(remote)
        return remote

    def _reconnect_if_needed(self):
        """Reconnect SSH if the connection dropped. Caller MUST hold self._lock."""
        transport = self._client.get_transport() if self._client else None
        if transport is not None and transport.is_active():
            return
        logger.warning("SSH connection lost, reconnecting...")
        self._client.connect(**self._connect_kwargs())
        self._sftp = self._client.open_sftp()
        logger.info("SSH reconnected.")

    def _exec(self, cmd: str, timeout: int = 30) -> Tuple[str, str, int]:
        """Execute a command on the remote host."""
        with self._lock:
            self._reconnect_if_needed()
            _, stdout_ch, stderr_ch = self._client.exec_command(
                f"bash -c {shlex.quote(cmd)}", timeout=timeout
            )
        channel = stdout_ch.channel
        channel.settimeout(timeout)
        try:
            stdout = stdout_ch.read().decode("utf-8", errors="replace")
            stderr = stderr_ch.read().decode("utf-8", errors="replace")
            rc = channel.recv_exit_status()
        except OSError as e:
            return "", f"Command timed out after {timeout}s: {e}", -1
        return stdout, stderr, rc

    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        remote = self._remote(path)
        entries = []
        with self._lock:
            self._reconnect_if_needed()
            attrs = self._sftp.listdir_attr(remote)
        for attr in sorted(attrs, key=lambda a: a.filename):
            name = attr.filename
            if stat_mod.S_ISDIR(attr.st_mode or 0):
                entries.append({"name": name, "type": "directory", "size": 0})
            else:
                ext = posixpath.splitext(name)[1]
                entries.append({"name": name, "type": "file", "ext": ext, "size": attr.st_size or 0})
        return entries

    def read_file(self, path: str) -> str:
        remote = self._remote(path)
        with self._lock:
            self._reconnect_if_needed()
            with self._sftp.open(remote, "r") as f:
                return f.read().decode("utf-8", errors="replace")

    def write_file(self, path: str, content: str) -> None:
        remote = self._remote(path)
        self._exec(f"mkdir -p {shlex.quote(posixpath.dirname(remote))}")
        with self._lock:
            self._reconnect_if_needed()
            with self._sftp.open(remote, "w") as f:
                f.write(content.encode("utf-8"))

    def _stat(self, remote: str):
        with self._lock:
            self._reconnect_if_needed()
            return self._sftp.stat(remote)

    def is_dir(self, path: str) -> bool:
        try:
            return stat_mod.S_ISDIR(self._stat(self._remote(path)).st_mode or 0)
        except (FileNotFoundError, OSError):
            return False

    def is_file(self, path: str) -> bool:
        try:
            return stat_mod.S_ISREG(self._stat(self._remote(path)).st_mode or 0)
        except (FileNotFoundError, OSError):
            return False

    def file_size(self, path: str) -> int:
        return self._stat(self._remote(path)).st_size or 0

    def remove_file(self, path: str) -> None:
        remote = self._remote(path)
        with self._lock:
            self._reconnect_if_needed()
            self._sftp.remove(remote)

    def remove_tree(self, path: str) -> None:
        remote = self._remote(path)
        if remote == self._working_directory:
            self._exec(f"find {shlex.quote(remote)} -mindepth 1 -maxdepth 1 -exec rm -rf {{}} +")
        else:
            self._exec(f"rm -rf {shlex.quote(remote)}")

    def remove_directory(self, path: str) -> None:
        """Remove an absolute remote directory (used for the session scratch dir)."""
        self._exec(f"rm -rf {shlex.quote(path)}")

    def walk_files(self, path: str, include_hidden: bool = False) -> List[Dict[str, Any]]:
        remote = self._remote(path)
        prune = " -o ".join(f"-name {shlex.quote(d)}" for d in sorted(SKIP_DIRS))
        hidden = "" if include_hidden else " -o -name '.*'"
        cmd = (
            f"cd {shlex.quote(remote)} && find . -mindepth 1 \\( -type d \\( {prune}{hidden} \\) -prune \\) "
            f"-o \\( -type d -printf 'd\\t0\\t%p\\n' \\) -o \\( -type f -printf 'f\\t%s\\t%p\\n' \\)"
        )
        stdout, stderr, rc = self._exec(cmd, timeout=60)
        if rc != 0:
            raise OSError(stderr.strip() or f"find failed in {remote}")
        results = []
        for line in stdout.splitlines():
            parts = line.split("\t", 2)
            if len(parts) != 3:
                continue
            kind, size, rel = parts
            name = posixpath.basename(rel)
            if not include_hidden and kind == "f" and name.startswith("."):
                continue
            full = posixpath.normpath(posixpath.join(remote, rel))
            results.append({
                "path": self.relative_path(full),
                "type": "directory" if kind == "d" else "file",
                "size": int(size) if size.isdigit() else 0,
            })
        return sorted(results, key=lambda e: e["path"])

    def dir_size(self, path: str) -> int:
        remote = self._remote(path)
        stdout, _, rc = self._exec(f"du -sb {shlex.quote(remote)} | cut -f1", timeout=60)
        try:
            return int(stdout.strip()) if rc == 0 else 0
        except ValueError:
            return 0

    def run_command(self, command: str, cwd: str, timeout: int = 30,
                    env: Optional[Dict[str, str]] = None) -> Tuple[str, str, int]:
        full_cwd = self._remote(cwd) if cwd not in ("", ".") else self._working_directory
        prefix = _env_prefix(env.items()) if env else ""
        return self._exec(f"cd {shlex.quote(full_cwd)} && {prefix}{command}", timeout=timeout)

    def make_temp_file(self, content: str, prefix: str = "pilot-", mode: int = 0o600) -> str:
        stdout, stderr, rc = self._exec(f"mktemp /tmp/{prefix}XXXXXX")
        if rc != 0:
            raise OSError(stderr.strip() or "mktemp failed")
        path = stdout.strip()
        with self._lock:
            self._reconnect_if_needed()
            with self._sftp.open(path, "w") as f:
                f.write(content.encode("utf-8"))
            self._sftp.chmod(path, mode)
        return path

    def make_scratch_dir(self, base: str, prefix: str = "pilot-") -> str:
        stdout, stderr, rc = self._exec(f"mktemp -d {shlex.quote(base.rstrip('/'))}/{prefix}XXXXXX")
        if rc != 0:
            raise OSError(stderr.strip() or "mktemp -d failed")
        return stdout.strip()

    def remove_temp_file(self, path: str) -> None:
        self._exec(f"rm -f {shlex.quote(path)}")

    def close(self) -> None:
        """Close the SSH connection. Safe to call multiple times."""
        with self._lock:
            if self._sftp is not None:
                try:
                    self._sftp.close()
                except OSError:
                    pass
                self._sftp = None
            if self._client is not None:
                self._client.close()
                self._client = None


def _env_prefix(items: Iterable[Tuple[str, str]]) -> str:
    return "".join(f"{k}={shlex.quote(v)} " for k, v in items)
