"""
Session records and the process-wide session registry.

A run that pauses for verification registers its Session here so that a later,
unrelated request (diff view, terminal, publish) can find the live sandbox.
Entries leave the registry when they are claimed for publishing, when they sit
idle past the timeout, or at shutdown. Each entry is torn down exactly once.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from config import sandbox_config
from errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Session:
    """One agent run and the sandbox it owns."""
    session_id: str = field(default_factory=new_session_id)
    repository_url: str = ""
    prompt: str = ""
    verification_mode: bool = False
    sandbox: Any = None
    default_branch: str = "main"
    branch_name: Optional[str] = None
    base_commit: Optional[str] = None
    plan: Any = None
    files_changed: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)
    last_activity: float = 0.0
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def touch(self, now: Optional[float] = None) -> None:
        self.last_activity = time.monotonic() if now is None else now

    async def close(self) -> bool:
        """Tear down the sandbox. Returns False if it was already closed."""
        if self.closed:
            return False
        self.closed = True
        if self.sandbox is not None:
            await self.sandbox.cleanup()
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "repositoryUrl": self.repository_url,
            "verificationMode": self.verification_mode,
            "defaultBranch": self.default_branch,
            "branchName": self.branch_name,
            "filesChanged": list(self.files_changed),
            "createdAt": self.created_at,
        }


class SessionRegistry:
    """Keyed store of paused sessions with idle eviction.

    The registry lock serializes inserts and removals. Each Session's own lock
    is held by whoever is using its sandbox, so eviction never tears down a
    sandbox in the middle of an operation.
    """

    def __init__(self, idle_timeout: Optional[float] = None, cleanup_interval: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.idle_timeout = sandbox_config.idle_timeout if idle_timeout is None else idle_timeout
        self.cleanup_interval = sandbox_config.cleanup_interval if cleanup_interval is None else cleanup_interval
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._reaper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def register(self, session: Session) -> None:
        """Insert or replace a session. Replacing closes the previous sandbox."""
        if session.closed:
            raise ConflictError(f"Session {session.session_id} is already closed")
        async with self._lock:
            previous = self._sessions.get(session.session_id)
            session.touch(self._clock())
            self._sessions[session.session_id] = session
        if previous is not None and previous is not session:
            logger.warning(f"Session {session.session_id} re-registered; closing the previous sandbox")
            async with previous.lock:
                await previous.close()
        logger.info(f"Session registered: {session.session_id}")

    async def get(self, session_id: str) -> Session:
        async with self._lock:
            session = self._sessions.get(session_id)
        if session is None or session.closed:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    @asynccontextmanager
    async def use(self, session_id: str) -> AsyncIterator[Session]:
        """Hold a registered session for the duration of one operation."""
        session = await self.get(session_id)
        async with session.lock:
            if session.closed or self._sessions.get(session_id) is not session:
                raise NotFoundError(f"Session not found: {session_id}")
            session.touch(self._clock())
            yield session
            session.touch(self._clock())

    async def pop(self, session_id: str) -> Session:
        """Remove a session and hand its sandbox to the caller.

        Only one caller can ever pop a given id; later callers get NotFoundError.
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None or session.closed:
            raise NotFoundError(f"Session not found or already published: {session_id}")
        logger.info(f"Session claimed: {session_id}")
        return session

    async def remove(self, session_id: str) -> bool:
        """Remove and tear down a session. Returns False if it was not registered."""
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        async with session.lock:
            await session.close()
        return True

    async def evict_expired(self) -> List[str]:
        """Tear down every session idle for longer than the timeout."""
        now = self._clock()
        async with self._lock:
            expired = [
                s for s in self._sessions.values()
                if now - s.last_activity > self.idle_timeout and not s.lock.locked()
            ]
            for s in expired:
                del self._sessions[s.session_id]
        for s in expired:
            logger.info(f"Evicting idle session {s.session_id}")
            try:
                async with s.lock:
                    await s.close()
            except Exception as e:
                logger.warning(f"Failed to tear down session {s.session_id}: {e}")
        return [s.session_id for s in expired]

    async def cleanup_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for s in sessions:
            try:
                async with s.lock:
                    await s.close()
            except Exception as e:
                logger.warning(f"Failed to tear down session {s.session_id}: {e}")
        if sessions:
            logger.info(f"Tore down {len(sessions)} sessions")

    async def _reap_forever(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.evict_expired()
            except Exception as e:
                logger.error(f"Session reaper tick failed: {e}")

    def start_reaper(self) -> None:
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.get_running_loop().create_task(self._reap_forever())
            logger.info(f"Session reaper started (timeout={self.idle_timeout}s, interval={self.cleanup_interval}s)")

    async def stop_reaper(self) -> None:
        task, self._reaper = self._reaper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
