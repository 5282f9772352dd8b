"""
Local process handle.

Wraps an asyncio subprocess started in its own session so the whole process
group can be signalled. stdout and stderr are read by background tasks,
decoded incrementally and merged into a single queue in arrival order.
"""

import asyncio
import codecs
import os
import resource
import signal
from typing import AsyncIterator, Callable, Dict, List, Optional

from execution_engine.domain.errors import InternalSandboxError
from execution_engine.domain.ports import IProcess, OutputChunk
from execution_engine.domain.value_objects import OutputEventType, ProcessExit
from execution_engine.infrastructure.logging import get_logger

logger = get_logger(__name__)

MB = 1024 * 1024
READ_CHUNK_SIZE = 4096
FILE_SIZE_LIMIT_BYTES = 64 * MB
# Thread stacks (8 MB each by default) count against RLIMIT_AS, and against
# RLIMIT_DATA when the C library maps them writable up front.
THREAD_STACK_ALLOWANCE_MB = 256


def _set_limit(limit: int, value: int) -> None:
    _, hard = resource.getrlimit(limit)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(limit, (value, value))


def rlimit_preexec(memory_mb: int, address_space: bool = True) -> Callable[[], None]:
    """
    Build a preexec_fn applying per-process resource limits.

    RLIMIT_NPROC is not used: the kernel counts it over every process of the
    host user, so concurrent sandboxes sharing the engine's user would eat
    into each other's ceiling. The process-count ceiling is enforced by the
    Docker backend only (PidsLimit).

    Args:
        memory_mb: Memory ceiling, applied to the address space or, for
            runtimes reserving large virtual ranges, to the data segment.
            THREAD_STACK_ALLOWANCE_MB is added for thread stacks.
        address_space: Use RLIMIT_AS instead of RLIMIT_DATA

    Returns:
        Callable run in the child between fork and exec
    """
    memory_limit = resource.RLIMIT_AS if address_space else resource.RLIMIT_DATA
    memory_bytes = (memory_mb + THREAD_STACK_ALLOWANCE_MB) * MB

    def _apply() -> None:
        signal.signal(signal.SIGPIPE, signal.SIG_DFL)
        _set_limit(memory_limit, memory_bytes)
        _set_limit(resource.RLIMIT_FSIZE, FILE_SIZE_LIMIT_BYTES)
        _set_limit(resource.RLIMIT_CORE, 0)

    return _apply


class LocalProcess(IProcess):
    """IProcess backed by an asyncio subprocess on this host."""

    def __init__(self, process: asyncio.subprocess.Process):
        self._process = process
        self._queue: "asyncio.Queue[Optional[OutputChunk]]" = asyncio.Queue()
        self._killed = False
        self._tasks: List[asyncio.Task] = [
            asyncio.create_task(self._pump(process.stdout, OutputEventType.STDOUT)),
            asyncio.create_task(self._pump(process.stderr, OutputEventType.STDERR)),
        ]

    @classmethod
    async def spawn(
        cls,
        argv: List[str],
        *,
        cwd: str,
        env: Dict[str, str],
        stdin: Optional[str] = None,
        interactive: bool = False,
        preexec_fn: Optional[Callable[[], None]] = None,
    ) -> "LocalProcess":
        """
        Start a command.

        Batch input is written by a background task and stdin is closed
        afterwards, so a program that never reads its input cannot stall
        the caller.

        Raises:
            InternalSandboxError: If the command cannot be started
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                preexec_fn=preexec_fn,
            )
        except (OSError, ValueError) as e:
            raise InternalSandboxError(f"Failed to start {argv[0]}", original_error=e) from e

        handle = cls(process)
        if interactive:
            if stdin:
                await handle.write_stdin(stdin)
        else:
            handle._tasks.append(asyncio.create_task(handle._feed_and_close(stdin or "")))
        logger.debug("Process started", pid=process.pid, command=argv[0], interactive=interactive)
        return handle

    @property
    def pid(self) -> int:
        return self._process.pid

    async def _pump(self, stream: Optional[asyncio.StreamReader], kind: OutputEventType) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            if stream is None:
                return
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    self._queue.put_nowait((kind, text))
            tail = decoder.decode(b"", final=True)
            if tail:
                self._queue.put_nowait((kind, tail))
        finally:
            self._queue.put_nowait(None)

    async def _feed_and_close(self, data: str) -> None:
        if data:
            await self.write_stdin(data)
        self.close_stdin()

    async def output(self) -> AsyncIterator[OutputChunk]:
        open_streams = 2
        while open_streams:
            item = await self._queue.get()
            if item is None:
                open_streams -= 1
                continue
            yield item

    async def write_stdin(self, data: str) -> bool:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing() or self._process.returncode is not None:
            return False
        try:
            stdin.write(data.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            return False
        return True

    def close_stdin(self) -> None:
        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

    async def wait(self) -> ProcessExit:
        returncode = await self._process.wait()
        return ProcessExit(exit_code=returncode, killed_by_engine=self._killed)

    def _signal_group(self, sig: int) -> None:
        try:
            os.killpg(self._process.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass

    async def terminate(self, grace_seconds: float) -> None:
        if self._process.returncode is None:
            self._killed = True
            self._signal_group(signal.SIGTERM)
            try:
                await asyncio.wait_for(self._process.wait(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                logger.debug("Process ignored SIGTERM, killing", pid=self._process.pid)
                self._signal_group(signal.SIGKILL)
                await self._process.wait()
        # Sweep descendants that outlived the group leader.
        self._signal_group(signal.SIGKILL)
        self.close_stdin()

    async def close(self) -> None:
        """Kill the process group and stop the reader tasks."""
        await self.terminate(0)
        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
