"""
Execution Entities

Core domain entities for in-flight executions.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional

from execution_engine.domain.value_objects import ExecutionPhase, OutputEventType

if TYPE_CHECKING:
    from execution_engine.domain.ports import IProcess, ISandbox


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


class SessionState(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    RUNNING = "running"
    FINISHED = "finished"


@dataclass
class ExecutionSession:
    """
    Runtime state of one in-flight execution.

    A session is created when a request begins and is destroyed when the run
    terminates or when the idle reaper reclaims it. It owns the sandbox and
    process handles, the bounded output buffers, the pending stdin queue and
    the cancellation flag.
    """

    session_id: str
    max_output_bytes: int = 1024 * 1024
    created_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    state: SessionState = SessionState.PENDING
    phase: Optional[ExecutionPhase] = None
    sandbox: Optional["ISandbox"] = None
    process: Optional["IProcess"] = None
    cancel_reason: Optional[str] = None
    output_truncated: bool = False
    interactive: bool = False

    def __post_init__(self):
        self._stdout: List[str] = []
        self._stderr: List[str] = []
        self._output_bytes = 0
        self._cancel_event = asyncio.Event()
        self._input_queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # -- lifecycle ---------------------------------------------------------

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the loop that drives this session's run."""
        self._loop = loop

    def touch(self) -> None:
        """Record activity (stdin, output or process progress)."""
        self.last_activity_at = _utcnow()

    def mark_as_preparing(self) -> None:
        self.state = SessionState.PREPARING
        self.touch()

    def mark_as_running(self, process: "IProcess") -> None:
        self.state = SessionState.RUNNING
        self.phase = ExecutionPhase.RUN
        self.process = process
        self.touch()

    def mark_as_finished(self) -> None:
        self.state = SessionState.FINISHED
        self.process = None

    @property
    def is_finished(self) -> bool:
        return self.state == SessionState.FINISHED

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or _utcnow()
        return (now - self.last_activity_at).total_seconds()

    # -- cancellation ------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self.cancel_reason is not None

    def request_cancel(self, reason: str = "cancelled") -> None:
        """
        Flag the session for cancellation.

        Safe to call from any thread; the first reason wins.
        """
        if self.cancel_reason is None:
            self.cancel_reason = reason
        loop = self._loop
        if loop is not None and not loop.is_closed() and not _on_loop(loop):
            loop.call_soon_threadsafe(self._cancel_event.set)
        else:
            self._cancel_event.set()

    async def wait_cancelled(self) -> str:
        await self._cancel_event.wait()
        return self.cancel_reason or "cancelled"

    # -- stdin -------------------------------------------------------------

    def feed_input(self, text: str) -> None:
        """
        Queue text for the program's stdin without blocking.

        Safe to call from any thread.
        """
        loop = self._loop
        if loop is not None and not loop.is_closed() and not _on_loop(loop):
            loop.call_soon_threadsafe(self._input_queue.put_nowait, text)
        else:
            self._input_queue.put_nowait(text)
        self.touch()

    async def next_input(self) -> str:
        return await self._input_queue.get()

    # -- output ------------------------------------------------------------

    def record_output(self, stream: OutputEventType, text: str) -> Optional[str]:
        """
        Append program output to the session buffer.

        Args:
            stream: STDOUT or STDERR
            text: Decoded chunk

        Returns:
            The accepted part of the chunk, or None when the output cap is
            already exhausted
        """
        self.touch()
        if self.output_truncated:
            return None
        size = len(text.encode("utf-8"))
        remaining = self.max_output_bytes - self._output_bytes
        if size > remaining:
            text = text.encode("utf-8")[:remaining].decode("utf-8", errors="ignore")
            self.output_truncated = True
            size = remaining
        self._output_bytes += size
        if not text:
            return None
        if stream == OutputEventType.STDERR:
            self._stderr.append(text)
        else:
            self._stdout.append(text)
        return text

    @property
    def stdout(self) -> str:
        return "".join(self._stdout)

    @property
    def stderr(self) -> str:
        return "".join(self._stderr)
