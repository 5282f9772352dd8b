"""
Shared pieces of the host-local backends (Bubblewrap and plain subprocess).

Each sandbox is a private temporary workspace directory; commands run as
child processes with rlimits applied before exec.
"""

import asyncio
import os
import shutil
import tempfile
import uuid
from abc import abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from execution_engine.domain.errors import InternalSandboxError
from execution_engine.domain.ports import IIsolationBackend, IProcess, ISandbox
from execution_engine.domain.value_objects import (
    ExecutionPhase,
    LanguageDescriptor,
    ResourceLimit,
    SourceFile,
)
from execution_engine.infrastructure.isolation.process import LocalProcess, rlimit_preexec
from execution_engine.infrastructure.logging import get_logger

logger = get_logger(__name__)

# Compilers and package managers need more room than the programs they build.
BUILD_MEMORY_MB = 1024


def write_workspace_file(workspace: Path, source: SourceFile) -> Path:
    """
    Write one file below the workspace root.

    Raises:
        InternalSandboxError: If the resolved path escapes the workspace
    """
    root = workspace.resolve()
    target = (root / source.name).resolve()
    if root != target and root not in target.parents:
        raise InternalSandboxError(f"File path escapes workspace: {source.name}")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(source.content, encoding="utf-8")
    return target


class LocalSandbox(ISandbox):
    """A temporary workspace directory plus the processes started in it."""

    def __init__(
        self,
        sandbox_id: str,
        workspace: Path,
        descriptor: LanguageDescriptor,
        limits: ResourceLimit,
        network: bool = False,
    ):
        self.sandbox_id = sandbox_id
        self.workspace = workspace
        self.descriptor = descriptor
        self.limits = limits
        self.network = network
        self._processes: List[LocalProcess] = []
        self._released = False

    @abstractmethod
    def build_command(
        self,
        command: List[str],
        env: Dict[str, str],
        working_directory: str,
    ) -> Tuple[List[str], Dict[str, str], str]:
        """
        Wrap a command for this backend.

        Returns:
            (argv, process environment, host working directory)
        """
        pass

    @property
    def workspace_path(self) -> str:
        """Workspace path as seen by the sandboxed program."""
        return str(self.workspace)

    def sandbox_env(self, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        env = {"LANG": "C.UTF-8", "LC_ALL": "C.UTF-8"}
        env.update(self.descriptor.environment(self.workspace_path))
        if extra:
            env.update(extra)
        return env

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
        if self._released:
            raise InternalSandboxError(f"Sandbox {self.sandbox_id} already released")

        memory_mb = self.limits.max_memory_mb
        if phase != ExecutionPhase.RUN:
            memory_mb = max(memory_mb, BUILD_MEMORY_MB)

        argv, process_env, cwd = self.build_command(
            command, self.sandbox_env(env), working_directory
        )
        process = await LocalProcess.spawn(
            argv,
            cwd=cwd,
            env=process_env,
            stdin=stdin,
            interactive=interactive,
            preexec_fn=rlimit_preexec(memory_mb, address_space=self.descriptor.rlimit_address_space),
        )
        self._processes.append(process)
        return process

    async def add_files(self, files: Sequence[SourceFile]) -> None:
        for source in files:
            write_workspace_file(self.workspace, source)

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        for process in self._processes:
            await process.close()
        self._processes.clear()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, shutil.rmtree, str(self.workspace), True)
        logger.debug("Sandbox released", sandbox_id=self.sandbox_id)


class LocalIsolationBackend(IIsolationBackend):
    """Creates workspaces below a root directory and hands them to a sandbox class."""

    sandbox_class = LocalSandbox

    def __init__(self, workspace_root: Optional[str] = None):
        self.workspace_root = workspace_root

    def _create_workspace(self, sandbox_id: str) -> Path:
        if self.workspace_root:
            os.makedirs(self.workspace_root, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"{sandbox_id}-", dir=self.workspace_root))

    async def acquire(
        self,
        files: Sequence[SourceFile],
        descriptor: LanguageDescriptor,
        limits: ResourceLimit,
        *,
        network: bool = False,
        session_id: Optional[str] = None,
    ) -> ISandbox:
        sandbox_id = f"sbx-{uuid.uuid4().hex[:12]}"
        try:
            workspace = self._create_workspace(sandbox_id)
        except OSError as e:
            raise InternalSandboxError("Failed to create workspace", original_error=e) from e

        sandbox = self.sandbox_class(sandbox_id, workspace, descriptor, limits, network=network)
        try:
            await sandbox.add_files(files)
        except OSError as e:
            await sandbox.release()
            raise InternalSandboxError("Failed to write workspace files", original_error=e) from e
        except InternalSandboxError:
            await sandbox.release()
            raise

        logger.info(
            "Sandbox acquired",
            backend=self.name,
            sandbox_id=sandbox_id,
            session_id=session_id,
            language=descriptor.id,
            network=network,
        )
        return sandbox
