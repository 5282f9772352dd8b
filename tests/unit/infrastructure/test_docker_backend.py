"""
Docker isolation backend unit tests.

The Docker client is mocked; exec streams are replaced by in-memory fakes
that replay multiplexed stdout/stderr frames.
"""

import asyncio
import io
import tarfile
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest
from aiodocker.exceptions import DockerError

from execution_engine.domain.errors import InternalSandboxError
from execution_engine.domain.value_objects import ExecutionPhase, OutputEventType, ResourceLimit, SourceFile
from execution_engine.infrastructure.isolation.docker import (
    DockerIsolationBackend,
    DockerSandbox,
    build_archive,
    build_container_config,
)


class FakeStream:
    """Attached exec stream; frames are replayed, then EOF unless held open."""

    def __init__(self, frames, hold_open=False):
        self._frames: asyncio.Queue = asyncio.Queue()
        for stream, data in frames:
            self._frames.put_nowait(SimpleNamespace(stream=stream, data=data))
        if not hold_open:
            self._frames.put_nowait(None)
        self.written = []

    def finish(self):
        self._frames.put_nowait(None)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def read_out(self):
        return await self._frames.get()

    async def write_in(self, data):
        self.written.append(data)


class FakeExec:
    def __init__(self, stream=None, exit_code=0):
        self.stream = stream
        self.exit_code = exit_code
        self.running = False
        self.detached_starts = 0

    def start(self, detach=False):
        if detach:
            self.detached_starts += 1
            return asyncio.sleep(0)
        return self.stream

    async def inspect(self):
        return {"Running": self.running, "ExitCode": self.exit_code}


@pytest.fixture
def python(languages):
    return languages.resolve("python")


@pytest.fixture
def container():
    container = Mock()
    container.id = "c0ffee"
    container.put_archive = AsyncMock()
    container.show = AsyncMock(return_value={"State": {"OOMKilled": False}})
    container.kill = AsyncMock()
    container.delete = AsyncMock()
    container.start = AsyncMock()
    return container


def archive_names(data: bytes):
    with tarfile.open(fileobj=io.BytesIO(data)) as tar:
        return {m.name: tar.extractfile(m).read().decode("utf-8") for m in tar.getmembers()}


class TestContainerConfig:
    def test_limits_map_to_host_config(self, python):
        limits = ResourceLimit(max_memory_mb=128, cpu_share=0.5, max_processes=32)

        config = build_container_config(python, limits, network=False, session_id="s-1")
        host = config["HostConfig"]

        assert config["Image"] == "nexusquest-python"
        assert config["NetworkDisabled"] is True
        assert host["NetworkMode"] == "none"
        assert host["Memory"] == 128 * 1024 * 1024
        assert host["MemorySwap"] == host["Memory"]
        assert host["CpuQuota"] == 50000
        assert host["CpuPeriod"] == 100000
        assert host["PidsLimit"] == 32
        assert host["CapDrop"] == ["ALL"]
        assert "PYTHONPATH=.deps:." in config["Env"]
        assert config["Labels"]["session_id"] == "s-1"

    def test_network_for_dependency_install(self, python):
        config = build_container_config(python, ResourceLimit(), network=True)

        assert config["NetworkDisabled"] is False
        assert config["HostConfig"]["NetworkMode"] == "bridge"

    def test_workspace_placeholder_in_env(self, languages):
        config = build_container_config(languages.resolve("go"), ResourceLimit(), network=False)

        assert "GOCACHE=/workspace/.gocache" in config["Env"]
        assert "GOPATH=/workspace/.gopath" in config["Env"]

    def test_archive_keeps_nested_paths(self):
        data = build_archive([SourceFile("main.py", "print('é')"), SourceFile("pkg/util.py", "")])

        assert archive_names(data) == {"main.py": "print('é')", "pkg/util.py": ""}


class TestDockerSandbox:
    """Tests for exec handling inside a container."""

    @pytest.mark.asyncio
    async def test_batch_exec_redirects_stdin_file(self, container, python):
        exec_ = FakeExec(FakeStream([(1, b"ok\n")]))
        container.exec = AsyncMock(return_value=exec_)
        sandbox = DockerSandbox(container, python)

        await sandbox.exec(["python3", "main.py"], stdin="1 2\n", env={"EXTRA": "1"})

        kwargs = container.exec.call_args.kwargs
        assert kwargs["cmd"][:2] == ["sh", "-c"]
        assert kwargs["cmd"][-3:] == ["sh", "python3", "main.py"]
        assert "< /workspace/.stdin-" in kwargs["cmd"][2]
        assert kwargs["stdin"] is False
        assert kwargs["workdir"] == "/workspace"
        assert kwargs["environment"]["EXTRA"] == "1"
        assert kwargs["environment"]["PYTHONPATH"] == ".deps:."

        files = archive_names(container.put_archive.call_args.args[1])
        assert list(files.values()) == ["1 2\n"]
        assert next(iter(files)).startswith(".stdin-")

    @pytest.mark.asyncio
    async def test_output_is_demultiplexed_and_decoded(self, container, python):
        encoded = "héllo\n".encode("utf-8")
        frames = [(1, encoded[:2]), (2, b"warn\n"), (1, encoded[2:]), (3, b"ignored")]
        container.exec = AsyncMock(return_value=FakeExec(FakeStream(frames), exit_code=3))
        sandbox = DockerSandbox(container, python)

        process = await sandbox.exec(["python3", "main.py"], phase=ExecutionPhase.RUN)
        chunks = [chunk async for chunk in process.output()]
        process_exit = await process.wait()

        stdout = "".join(text for stream, text in chunks if stream == OutputEventType.STDOUT)
        stderr = "".join(text for stream, text in chunks if stream == OutputEventType.STDERR)
        assert stdout == "héllo\n"
        assert stderr == "warn\n"
        assert process_exit.exit_code == 3
        assert not process_exit.oom_killed
        assert not process_exit.killed_by_engine

    @pytest.mark.asyncio
    async def test_oom_kill_is_reported(self, container, python):
        container.show = AsyncMock(return_value={"State": {"OOMKilled": True}})
        container.exec = AsyncMock(return_value=FakeExec(FakeStream([]), exit_code=137))
        sandbox = DockerSandbox(container, python)

        process = await sandbox.exec(["python3", "main.py"])
        process_exit = await process.wait()

        assert process_exit.oom_killed

    @pytest.mark.asyncio
    async def test_interactive_stdin_is_written_to_stream(self, container, python):
        stream = FakeStream([], hold_open=True)
        container.exec = AsyncMock(return_value=FakeExec(stream))
        sandbox = DockerSandbox(container, python)

        process = await sandbox.exec(["python3", "main.py"], stdin="first\n", interactive=True)
        assert await process.write_stdin("second\n")

        assert container.exec.call_args.kwargs["stdin"] is True
        assert stream.written == [b"first\n", b"second\n"]
        container.put_archive.assert_not_called()

        stream.finish()
        await process.wait()
        assert not await process.write_stdin("late\n")

    @pytest.mark.asyncio
    async def test_terminate_signals_then_kills_container(self, container, python):
        run_exec = FakeExec(FakeStream([], hold_open=True))
        run_exec.running = True
        signal_exec = FakeExec()
        container.exec = AsyncMock(side_effect=[run_exec, signal_exec])
        sandbox = DockerSandbox(container, python)

        process = await sandbox.exec(["python3", "main.py"], interactive=True)
        await process.terminate(0.1)

        signal_cmd = container.exec.call_args_list[1].kwargs["cmd"]
        assert "kill -TERM" in signal_cmd[2]
        assert signal_exec.detached_starts == 1
        container.kill.assert_awaited_once_with(signal="SIGKILL")

        run_exec.running = False
        run_exec.stream.finish()
        assert (await process.wait()).killed_by_engine
        with pytest.raises(InternalSandboxError):
            await sandbox.exec(["true"])

    @pytest.mark.asyncio
    async def test_release_removes_container(self, container, python):
        sandbox = DockerSandbox(container, python)

        await sandbox.release()
        await sandbox.release()

        container.delete.assert_awaited_once_with(force=True)


class TestDockerIsolationBackend:
    @pytest.fixture
    def mock_docker(self, container):
        docker = Mock()
        docker.containers = Mock()
        docker.containers.create = AsyncMock(return_value=container)
        docker.close = AsyncMock()
        return docker

    @pytest.fixture
    def backend(self, mock_docker):
        backend = DockerIsolationBackend("unix:///var/run/docker.sock")
        backend._docker = mock_docker
        return backend

    @pytest.mark.asyncio
    async def test_acquire_starts_container_with_files(self, backend, mock_docker, container, python):
        sandbox = await backend.acquire(
            [SourceFile("main.py", "print(1)")], python, ResourceLimit(), session_id="s-1"
        )

        assert sandbox.sandbox_id == "c0ffee"
        config = mock_docker.containers.create.call_args.args[0]
        assert config["HostConfig"]["NetworkMode"] == "none"
        container.start.assert_awaited_once()
        assert archive_names(container.put_archive.call_args.args[1]) == {"main.py": "print(1)"}

    @pytest.mark.asyncio
    async def test_create_failure_is_internal_error(self, backend, mock_docker, python):
        mock_docker.containers.create = AsyncMock(
            side_effect=DockerError(404, {"message": "No such image: nexusquest-python"})
        )

        with pytest.raises(InternalSandboxError) as exc_info:
            await backend.acquire([SourceFile("main.py", "")], python, ResourceLimit())

        assert exc_info.value.message == "Failed to create container"
        assert isinstance(exc_info.value.original_error, DockerError)

    @pytest.mark.asyncio
    async def test_start_failure_removes_container(self, backend, container, python):
        container.start = AsyncMock(side_effect=DockerError(500, {"message": "boom"}))

        with pytest.raises(InternalSandboxError):
            await backend.acquire([SourceFile("main.py", "")], python, ResourceLimit())

        container.delete.assert_awaited_once_with(force=True)

    @pytest.mark.asyncio
    async def test_ping(self, backend, mock_docker):
        mock_docker.version = AsyncMock(return_value={"Version": "24.0.7"})

        assert await backend.ping()

    @pytest.mark.asyncio
    async def test_ping_failure(self, backend, mock_docker):
        mock_docker.version = AsyncMock(side_effect=DockerError(500, {"message": "daemon down"}))

        assert not await backend.ping()

    @pytest.mark.asyncio
    async def test_close(self, backend, mock_docker):
        await backend.close()

        mock_docker.close.assert_awaited_once()

    def test_tcp_url_is_always_available(self):
        assert DockerIsolationBackend("tcp://localhost:2375").is_available()
        assert not DockerIsolationBackend("unix:///nonexistent/docker.sock").is_available()
