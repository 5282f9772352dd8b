"""
Session Registry

Thread-safe map of in-flight executions plus the idle reaper that reclaims
sessions nobody has touched for too long.
"""

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from execution_engine.domain.entities import ExecutionSession
from execution_engine.domain.errors import DuplicateSessionError, SessionNotFoundError
from execution_engine.infrastructure.logging import get_logger

logger = get_logger(__name__)

IDLE_CANCEL_REASON = "idle_timeout"


class SessionRegistry:
    """
    Session id to ExecutionSession map.

    The only shared mutable structure of the engine. All access goes through
    a mutex so it may be touched from the event loop and from other threads
    (for example a web framework delivering stdin).
    """

    def __init__(
        self,
        idle_timeout_seconds: float = 300,
        reaper_interval_seconds: float = 30,
    ):
        """
        Args:
            idle_timeout_seconds: Idle grace window, -1 disables idle reclaiming
            reaper_interval_seconds: Delay between reaper sweeps
        """
        self._sessions: Dict[str, ExecutionSession] = {}
        self._lock = threading.Lock()
        self._idle_timeout = None if idle_timeout_seconds == -1 else idle_timeout_seconds
        self._reaper_interval = reaper_interval_seconds
        self._reaper_task: Optional[asyncio.Task] = None

    def create(self, session_id: str, max_output_bytes: int = 1024 * 1024) -> ExecutionSession:
        """
        Register a new session.

        Raises:
            DuplicateSessionError: If the id is already in flight; the existing
                session is left untouched
        """
        with self._lock:
            if session_id in self._sessions:
                raise DuplicateSessionError(session_id)
            session = ExecutionSession(session_id=session_id, max_output_bytes=max_output_bytes)
            self._sessions[session_id] = session
        logger.debug("Session registered", session_id=session_id)
        return session

    def get(self, session_id: str) -> ExecutionSession:
        """
        Raises:
            SessionNotFoundError: If no such session is in flight
        """
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def find(self, session_id: str) -> Optional[ExecutionSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(
        self, session_id: str, session: Optional[ExecutionSession] = None
    ) -> Optional[ExecutionSession]:
        """
        Unregister a session.

        When `session` is given the entry is only removed if it is that exact
        session, so a finished run never drops a newer run reusing its id.
        """
        with self._lock:
            current = self._sessions.get(session_id)
            if current is None or (session is not None and current is not session):
                return None
            return self._sessions.pop(session_id)

    def list_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def snapshot(self) -> List[ExecutionSession]:
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    # -- idle reaper -------------------------------------------------------

    def reap_idle(self, now: Optional[datetime] = None) -> List[str]:
        """
        Cancel and unregister sessions idle longer than the grace window.

        The owning run sees the cancellation, kills its sandbox and releases
        it; removal here makes the id unusable for send_input immediately.

        Returns:
            Ids of the reclaimed sessions
        """
        if self._idle_timeout is None:
            return []
        now = now or datetime.now(timezone.utc)
        reaped = []
        with self._lock:
            for session_id, session in list(self._sessions.items()):
                if session.idle_seconds(now) > self._idle_timeout:
                    session.request_cancel(IDLE_CANCEL_REASON)
                    del self._sessions[session_id]
                    reaped.append(session_id)
        for session_id in reaped:
            logger.info(
                "Idle session reclaimed",
                session_id=session_id,
                idle_timeout_seconds=self._idle_timeout,
            )
        return reaped

    async def _reaper_loop(self) -> None:
        while True:
            await asyncio.sleep(self._reaper_interval)
            try:
                self.reap_idle()
            except Exception as e:
                logger.error("Idle reaper sweep failed", error=str(e), exc_info=True)

    def start_reaper(self) -> None:
        """Start the periodic idle sweep on the running loop."""
        if self._idle_timeout is None or self._reaper_task is not None:
            return
        self._reaper_task = asyncio.get_running_loop().create_task(self._reaper_loop())
        logger.info(
            "Idle reaper started",
            idle_timeout_seconds=self._idle_timeout,
            interval_seconds=self._reaper_interval,
        )

    async def stop_reaper(self) -> None:
        task, self._reaper_task = self._reaper_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Idle reaper stopped")
