"""
Output Channel

Async event source of one streaming run. The producer never blocks: events
are queued without bound (program output is already capped by the session),
so timeouts and cancellation fire no matter how slowly the consumer reads.
"""

import asyncio
from typing import Callable, List, Optional

from execution_engine.domain.value_objects import ExecutionResult, OutputEvent


class OutputChannel:
    """
    Ordered OutputEvents ending with exactly one END event.

    Iterate with `async for`. Closing the channel before END (explicitly or
    by leaving an `async with` block) counts as a consumer disconnect and
    cancels the run.
    """

    def __init__(self, session_id: str, on_disconnect: Optional[Callable[[], None]] = None):
        self.session_id = session_id
        self._queue: "asyncio.Queue[OutputEvent]" = asyncio.Queue()
        self._on_disconnect = on_disconnect
        self._ended = False
        self._drained = False
        self._closed = False
        self._task: Optional["asyncio.Task[ExecutionResult]"] = None

    def attach(self, task: "asyncio.Task[ExecutionResult]") -> None:
        """Bind the task producing this channel's events."""
        self._task = task

    # -- producer side -----------------------------------------------------

    def publish(self, event: OutputEvent) -> bool:
        """
        Queue an event.

        Returns:
            False when END was already published (the event is dropped)
        """
        if self._ended:
            return False
        if event.is_terminal:
            self._ended = True
        if not self._closed:
            self._queue.put_nowait(event)
        return True

    @property
    def ended(self) -> bool:
        return self._ended

    # -- consumer side -----------------------------------------------------

    def __aiter__(self) -> "OutputChannel":
        return self

    async def __anext__(self) -> OutputEvent:
        if self._drained or self._closed:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event.is_terminal:
            self._drained = True
        return event

    async def collect(self) -> List[OutputEvent]:
        """Consume every remaining event up to and including END."""
        return [event async for event in self]

    async def result(self) -> ExecutionResult:
        """Wait for the run to finish and return its result."""
        if self._task is None:
            raise RuntimeError("Channel has no producing run")
        return await asyncio.shield(self._task)

    async def aclose(self) -> None:
        """Disconnect the consumer; an unfinished run is cancelled."""
        if self._closed:
            return
        self._closed = True
        if not self._ended and self._on_disconnect is not None:
            self._on_disconnect()

    async def __aenter__(self) -> "OutputChannel":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
