"""
Docker Isolation Backend

Uses aiodocker to run every execution in a fresh, disposable container.

Container configuration:
- Memory / MemorySwap: the run's memory ceiling (no swap)
- CpuQuota / CpuPeriod: the run's CPU share
- PidsLimit: the run's process-count ceiling
- NetworkMode: none, bridge only while dependencies are installed
- CapDrop: ALL, SecurityOpt: no-new-privileges
- Tmpfs: /tmp

The container's main process only keeps it alive; every command is a
docker exec in /workspace.
"""

import asyncio
import codecs
import io
import os
import tarfile
import time
import uuid
from contextlib import AsyncExitStack
from pathlib import PurePosixPath
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from aiodocker import Docker
from aiodocker.exceptions import DockerError

from execution_engine.domain.errors import InternalSandboxError
from execution_engine.domain.ports import IIsolationBackend, IProcess, ISandbox, OutputChunk
from execution_engine.domain.value_objects import (
    ExecutionPhase,
    LanguageDescriptor,
    OutputEventType,
    ProcessExit,
    ResourceLimit,
    SourceFile,
)
from execution_engine.infrastructure.logging import get_logger

logger = get_logger(__name__)

CONTAINER_WORKSPACE = "/workspace"
KEEPALIVE_COMMAND = ["sh", "-c", "while true; do sleep 1; done"]
CPU_PERIOD = 100000
EXEC_POLL_INTERVAL = 0.05
LABEL = "execution-engine.sandbox"


def build_archive(files: Sequence[SourceFile]) -> bytes:
    """Pack workspace files into an in-memory tar archive for put_archive."""
    buffer = io.BytesIO()
    now = time.time()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for source in files:
            data = source.content.encode("utf-8")
            info = tarfile.TarInfo(name=str(PurePosixPath(source.name)))
            info.size = len(data)
            info.mode = 0o644
            info.mtime = now
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def build_container_config(
    descriptor: LanguageDescriptor,
    limits: ResourceLimit,
    network: bool,
    session_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Container create payload for one sandbox."""
    memory_bytes = limits.max_memory_mb * 1024 * 1024
    return {
        "Image": descriptor.image,
        "Cmd": KEEPALIVE_COMMAND,
        "WorkingDir": CONTAINER_WORKSPACE,
        "Env": [f"{k}={v}" for k, v in descriptor.environment(CONTAINER_WORKSPACE).items()],
        "Labels": {LABEL: "true", "language": descriptor.id, "session_id": session_id or ""},
        "NetworkDisabled": not network,
        "HostConfig": {
            "NetworkMode": "bridge" if network else "none",
            "Memory": memory_bytes,
            "MemorySwap": memory_bytes,
            "CpuQuota": int(limits.cpu_share * CPU_PERIOD),
            "CpuPeriod": CPU_PERIOD,
            "PidsLimit": limits.max_processes,
            "CapDrop": ["ALL"],
            "SecurityOpt": ["no-new-privileges"],
            "Tmpfs": {"/tmp": "rw,exec,size=64m"},
            "AutoRemove": False,
        },
    }


class DockerProcess(IProcess):
    """A docker exec attached over a multiplexed stream."""

    def __init__(self, sandbox: "DockerSandbox", exec_: Any, tag: str, interactive: bool):
        self._sandbox = sandbox
        self._exec = exec_
        self._tag = tag
        self._interactive = interactive
        self._killed = False
        self._stack = AsyncExitStack()
        self._stream: Any = None
        self._queue: "asyncio.Queue[Optional[OutputChunk]]" = asyncio.Queue()
        self._reader: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._stream = await self._stack.enter_async_context(self._exec.start(detach=False))
        self._reader = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        decoders = {
            1: codecs.getincrementaldecoder("utf-8")(errors="replace"),
            2: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }
        kinds = {1: OutputEventType.STDOUT, 2: OutputEventType.STDERR}
        try:
            while True:
                message = await self._stream.read_out()
                if message is None:
                    break
                kind = kinds.get(message.stream)
                if kind is None:
                    continue
                text = decoders[message.stream].decode(message.data)
                if text:
                    self._queue.put_nowait((kind, text))
            for number, decoder in decoders.items():
                tail = decoder.decode(b"", final=True)
                if tail:
                    self._queue.put_nowait((kinds[number], tail))
        except (DockerError, ConnectionError) as e:
            logger.warning("Exec stream interrupted", sandbox_id=self._sandbox.sandbox_id, error=str(e))
        finally:
            self._queue.put_nowait(None)

    async def output(self) -> AsyncIterator[OutputChunk]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    async def write_stdin(self, data: str) -> bool:
        if not self._interactive or self._stream is None or self._sandbox.released:
            return False
        if self._reader is not None and self._reader.done():
            return False
        try:
            await self._stream.write_in(data.encode("utf-8"))
        except (DockerError, ConnectionError, RuntimeError):
            return False
        return True

    async def _running(self) -> bool:
        try:
            info = await self._exec.inspect()
        except DockerError:
            return False
        return bool(info.get("Running"))

    async def wait(self) -> ProcessExit:
        if self._reader is not None:
            await asyncio.shield(self._reader)
        while True:
            try:
                info = await self._exec.inspect()
            except DockerError as e:
                raise InternalSandboxError("Failed to inspect exec", original_error=e) from e
            if not info.get("Running"):
                break
            await asyncio.sleep(EXEC_POLL_INTERVAL)
        exit_code = info.get("ExitCode")
        if exit_code is None:
            exit_code = -1
        oom_killed = await self._sandbox.oom_killed()
        await self._stack.aclose()
        return ProcessExit(exit_code=exit_code, oom_killed=oom_killed, killed_by_engine=self._killed)

    async def terminate(self, grace_seconds: float) -> None:
        if await self._running():
            self._killed = True
            await self._sandbox.signal_exec(self._tag, "TERM")
            deadline = time.monotonic() + grace_seconds
            while time.monotonic() < deadline and await self._running():
                await asyncio.sleep(EXEC_POLL_INTERVAL)
        # Killing the container takes every remaining process in it down,
        # including descendants still holding the output stream.
        await self._sandbox.kill()

    async def close(self) -> None:
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        await self._stack.aclose()


class DockerSandbox(ISandbox):
    """One running container."""

    def __init__(self, container: Any, descriptor: LanguageDescriptor):
        self._container = container
        self.sandbox_id = container.id
        self.descriptor = descriptor
        self.released = False
        self._killed = False
        self._processes: List[DockerProcess] = []

    async def add_files(self, files: Sequence[SourceFile]) -> None:
        try:
            await self._container.put_archive(CONTAINER_WORKSPACE, build_archive(files))
        except DockerError as e:
            raise InternalSandboxError("Failed to copy files into container", original_error=e) from e

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
        if self.released or self._killed:
            raise InternalSandboxError(f"Sandbox {self.sandbox_id} is no longer usable")

        tag = uuid.uuid4().hex[:12]
        # The wrapper records the pid for polite termination; batch input is
        # redirected from a file because an attached stdin cannot be half-closed.
        script = f'echo $$ > /tmp/.exec-{tag}.pid; exec "$@"'
        if not interactive:
            stdin_file = f".stdin-{tag}"
            await self.add_files([SourceFile(name=stdin_file, content=stdin or "")])
            script += f" < {CONTAINER_WORKSPACE}/{stdin_file}"

        environment = self.descriptor.environment(CONTAINER_WORKSPACE)
        environment.update(env or {})
        workdir = str(PurePosixPath(CONTAINER_WORKSPACE, working_directory))
        try:
            exec_ = await self._container.exec(
                cmd=["sh", "-c", script, "sh", *command],
                stdout=True,
                stderr=True,
                stdin=interactive,
                tty=False,
                environment=environment,
                workdir=workdir,
            )
            process = DockerProcess(self, exec_, tag, interactive)
            await process.start()
        except DockerError as e:
            raise InternalSandboxError(f"Failed to start {command[0]}", original_error=e) from e

        if interactive and stdin:
            await process.write_stdin(stdin)
        self._processes.append(process)
        logger.debug("Exec started", sandbox_id=self.sandbox_id, phase=phase.value, command=command[0])
        return process

    async def signal_exec(self, tag: str, signal_name: str) -> None:
        """Send a signal to the process started by exec `tag`."""
        try:
            exec_ = await self._container.exec(
                cmd=["sh", "-c", f"kill -{signal_name} $(cat /tmp/.exec-{tag}.pid) 2>/dev/null"],
                stdout=False,
                stderr=False,
            )
            await exec_.start(detach=True)
        except DockerError as e:
            logger.debug("Signal delivery failed", sandbox_id=self.sandbox_id, error=str(e))

    async def oom_killed(self) -> bool:
        try:
            info = await self._container.show()
        except DockerError:
            return False
        return bool(info.get("State", {}).get("OOMKilled"))

    async def kill(self) -> None:
        if self._killed:
            return
        self._killed = True
        try:
            await self._container.kill(signal="SIGKILL")
        except DockerError as e:
            logger.debug("Container kill failed", sandbox_id=self.sandbox_id, error=str(e))

    async def release(self) -> None:
        if self.released:
            return
        self.released = True
        for process in self._processes:
            await process.close()
        self._processes.clear()
        try:
            await self._container.delete(force=True)
            logger.debug("Container removed", sandbox_id=self.sandbox_id)
        except DockerError as e:
            logger.warning("Failed to remove container", sandbox_id=self.sandbox_id, error=str(e))


class DockerIsolationBackend(IIsolationBackend):
    """
    Docker-based backend.

    Connects to the Docker daemon via Unix socket or TCP:
        - unix:///var/run/docker.sock
        - tcp://localhost:2375
    """

    name = "docker"

    def __init__(self, docker_url: str = "unix:///var/run/docker.sock"):
        self._docker_url = docker_url
        self._docker: Optional[Docker] = None

    def _ensure_docker(self) -> Docker:
        if self._docker is None:
            self._docker = Docker(url=self._docker_url)
        return self._docker

    async def close(self) -> None:
        if self._docker is not None:
            await self._docker.close()
            self._docker = None

    def is_available(self) -> bool:
        if self._docker_url.startswith("unix://"):
            return os.path.exists(self._docker_url[len("unix://"):])
        return True

    async def ping(self) -> bool:
        """Check the daemon connection."""
        try:
            version = await self._ensure_docker().version()
            return version is not None
        except (DockerError, OSError) as e:
            logger.error("Docker ping failed", error=str(e))
            return False

    async def acquire(
        self,
        files: Sequence[SourceFile],
        descriptor: LanguageDescriptor,
        limits: ResourceLimit,
        *,
        network: bool = False,
        session_id: Optional[str] = None,
    ) -> ISandbox:
        docker = self._ensure_docker()
        config = build_container_config(descriptor, limits, network, session_id)
        name = f"exec-{uuid.uuid4().hex[:16]}"
        try:
            container = await docker.containers.create(config, name=name)
        except DockerError as e:
            logger.error("Failed to create container", image=descriptor.image, error=str(e))
            raise InternalSandboxError("Failed to create container", original_error=e) from e

        sandbox = DockerSandbox(container, descriptor)
        try:
            await container.start()
            await sandbox.add_files(files)
        except DockerError as e:
            await sandbox.release()
            raise InternalSandboxError("Failed to start container", original_error=e) from e
        except InternalSandboxError:
            await sandbox.release()
            raise

        logger.info(
            "Sandbox acquired",
            backend=self.name,
            sandbox_id=container.id,
            session_id=session_id,
            language=descriptor.id,
            network=network,
        )
        return sandbox
