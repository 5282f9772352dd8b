"""
Isolation Port Interface

Defines the contract for sandbox operations.
This is an output port - implemented by the infrastructure layer
(Docker, Bubblewrap or a plain subprocess for development).
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from execution_engine.domain.value_objects import (
    ExecutionPhase,
    LanguageDescriptor,
    OutputEventType,
    ProcessExit,
    ResourceLimit,
    SourceFile,
)

OutputChunk = Tuple[OutputEventType, str]


class IProcess(ABC):
    """A command running inside a sandbox."""

    @abstractmethod
    def output(self) -> AsyncIterator[OutputChunk]:
        """
        Iterate decoded output chunks in emission order.

        Order is preserved per stream; stdout/stderr interleaving is best
        effort. Iteration ends when both streams are closed.
        """
        pass

    @abstractmethod
    async def write_stdin(self, data: str) -> bool:
        """
        Write to the process's stdin.

        Returns:
            False if stdin is closed or the process is gone, True otherwise
        """
        pass

    @abstractmethod
    async def wait(self) -> ProcessExit:
        """Wait for the process to exit."""
        pass

    @abstractmethod
    async def terminate(self, grace_seconds: float) -> None:
        """
        Stop the process: polite signal first, forceful kill after the grace
        period. Must be effective even if the program ignores SIGTERM.
        """
        pass


class ISandbox(ABC):
    """One disposable, resource-bounded execution environment."""

    sandbox_id: str

    @abstractmethod
    async def exec(
        self,
        command: List[str],
        *,
        phase: ExecutionPhase = ExecutionPhase.RUN,
        stdin: Optional[str] = None,
        interactive: bool = False,
        env: Optional[Dict[str, str]] = None,
        working_directory: str = ".",
    ) -> IProcess:
        """
        Start a command in the sandbox workspace.

        Args:
            command: argv list
            phase: Which step of the run this command belongs to
            stdin: Initial input. When not interactive this is the complete
                input and stdin is closed afterwards.
            interactive: Keep stdin open for later writes
            env: Extra environment variables
            working_directory: Workspace-relative directory

        Raises:
            InternalSandboxError: If the command cannot be started
        """
        pass

    @abstractmethod
    async def add_files(self, files: Sequence[SourceFile]) -> None:
        """Write extra files into the workspace."""
        pass

    @abstractmethod
    async def release(self) -> None:
        """
        Reclaim every resource of the sandbox, killing anything still running.
        Idempotent.
        """
        pass


class IIsolationBackend(ABC):
    """
    Port interface for sandbox allocation.

    Implementations must isolate filesystem and process namespace from the
    host and from other sandboxes, and enforce the memory, CPU share and
    process-count limits they support.
    """

    name: str

    @abstractmethod
    async def acquire(
        self,
        files: Sequence[SourceFile],
        descriptor: LanguageDescriptor,
        limits: ResourceLimit,
        *,
        network: bool = False,
        session_id: Optional[str] = None,
    ) -> ISandbox:
        """
        Create a sandbox and copy the workspace files into it.

        Raises:
            InternalSandboxError: If the sandbox cannot be created
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the isolation mechanism can be used on this host."""
        pass

    async def close(self) -> None:
        """Release backend-wide resources (connections, pools)."""
        return None
