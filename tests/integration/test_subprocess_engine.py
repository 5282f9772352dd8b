"""
End-to-end runs through the subprocess isolation backend.
"""

import asyncio
import time

import pytest

from execution_engine.domain.errors import SessionNotFoundError
from execution_engine.domain.value_objects import (
    ExecutionRequest,
    ExecutionStatus,
    GradingRequest,
    OutputEvent,
    OutputEventType,
    SourceFile,
    TestCase,
)


def python_request(session_id, code, **kwargs):
    return ExecutionRequest.single_file(
        session_id=session_id, language="python", file_name="main.py", code=code, **kwargs
    )


async def collect(channel):
    return [event async for event in channel]


@pytest.mark.integration
class TestBatchExecution:
    """Tests for batch runs of real programs."""

    @pytest.mark.asyncio
    async def test_hello_world(self, engine):
        async with engine:
            result = await engine.execute(python_request("hello", "print('Hello, World!')"))

        assert result.status == ExecutionStatus.SUCCESS
        assert result.stdout == "Hello, World!\n"
        assert result.stderr == ""
        assert result.exit_code == 0
        assert not result.timed_out

    @pytest.mark.asyncio
    async def test_stdin_is_delivered(self, engine):
        code = "a, b = map(int, input().split())\nprint(a + b)"

        async with engine:
            result = await engine.execute(python_request("stdin", code, stdin="2 3\n"))

        assert result.stdout.strip() == "5"

    @pytest.mark.asyncio
    async def test_runtime_error(self, engine):
        code = "import sys\nprint('before')\nsys.exit(3)"

        async with engine:
            result = await engine.execute(python_request("crash", code))

        assert result.status == ExecutionStatus.RUNTIME_ERROR
        assert result.exit_code == 3
        assert result.stdout == "before\n"

    @pytest.mark.asyncio
    async def test_exception_traceback_in_stderr(self, engine):
        async with engine:
            result = await engine.execute(python_request("raise", "raise ValueError('bad input')"))

        assert result.status == ExecutionStatus.RUNTIME_ERROR
        assert "ValueError: bad input" in result.stderr

    @pytest.mark.asyncio
    async def test_infinite_loop_times_out(self, engine):
        async with engine:
            result = await engine.execute(
                python_request("loop", "while True:\n    pass", limits={"timeout_seconds": 1})
            )

        assert result.status == ExecutionStatus.TIMEOUT
        assert result.timed_out
        assert result.duration_ms >= 1000
        assert engine.active_sessions() == []

    @pytest.mark.asyncio
    async def test_timeout_kills_program_ignoring_sigterm(self, engine, settings):
        code = (
            "import signal\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "while True:\n"
            "    pass\n"
        )

        async with engine:
            started = time.monotonic()
            result = await engine.execute(
                python_request("stubborn", code, limits={"timeout_seconds": 1})
            )
            elapsed = time.monotonic() - started

        assert result.status == ExecutionStatus.TIMEOUT
        assert result.timed_out
        assert result.stdout == "ready\n"
        assert result.duration_ms < (1 + settings.kill_grace_seconds + 0.5) * 1000
        assert elapsed < 1 + settings.kill_grace_seconds + 2

    @pytest.mark.asyncio
    async def test_multi_file_program(self, engine):
        request = ExecutionRequest(
            session_id="multi",
            language="python",
            files=(
                SourceFile("main.py", "from helpers.greet import greet\nprint(greet('Ada'))"),
                SourceFile("helpers/__init__.py", ""),
                SourceFile("helpers/greet.py", "def greet(name):\n    return f'Hi {name}'"),
            ),
            main_file="main.py",
        )

        async with engine:
            result = await engine.execute(request)

        assert result.stdout == "Hi Ada\n"

    @pytest.mark.asyncio
    async def test_concurrent_runs_are_isolated(self, engine):
        code = "import os\nprint(sorted(os.listdir('.')))\nprint(input())"

        async with engine:
            results = await asyncio.gather(
                *(
                    engine.execute(python_request(f"concurrent-{i}", code, stdin=f"run {i}\n"))
                    for i in range(5)
                )
            )

        for i, result in enumerate(results):
            assert result.status == ExecutionStatus.SUCCESS
            assert result.stdout == f"['main.py']\nrun {i}\n"


@pytest.mark.integration
class TestStreaming:
    """Tests for stream mode and interactive input."""

    @pytest.mark.asyncio
    async def test_interactive_input(self, engine):
        code = "name = input('Name? ')\nprint('Hi', name)"

        async with engine:
            channel = await engine.subscribe(python_request("interactive", code))
            engine.send_input("interactive", "Ada")
            events = await collect(channel)

        stdout = "".join(e.data for e in events if e.type == OutputEventType.STDOUT)
        assert stdout == "Name? Hi Ada\n"
        assert events[-1].type == OutputEventType.END
        assert sum(1 for e in events if e.type == OutputEventType.END) == 1

    @pytest.mark.asyncio
    async def test_input_after_end_is_rejected(self, engine):
        async with engine:
            channel = await engine.subscribe(python_request("finished", "print('done')"))
            await collect(channel)

            with pytest.raises(SessionNotFoundError):
                engine.send_input("finished", "late")

    @pytest.mark.asyncio
    async def test_runtime_error_emits_error_event(self, engine):
        async with engine:
            channel = await engine.subscribe(python_request("stream-crash", "raise SystemExit(2)"))
            events = await collect(channel)

        types = [e.type for e in events]
        assert OutputEventType.ERROR in types
        assert types[-1] == OutputEventType.END

    @pytest.mark.asyncio
    async def test_cancel_running_program(self, engine):
        code = "import time\nprint('started', flush=True)\ntime.sleep(30)"

        async with engine:
            channel = await engine.subscribe(python_request("cancel-me", code))
            events = []
            async for event in channel:
                events.append(event)
                if event.type == OutputEventType.STDOUT:
                    assert engine.cancel("cancel-me")

        assert events[-1].type == OutputEventType.END
        assert any(e.type == OutputEventType.ERROR for e in events)
        assert engine.active_sessions() == []

    @pytest.mark.asyncio
    async def test_cancel_program_ignoring_sigterm(self, engine, settings):
        code = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('started', flush=True)\n"
            "time.sleep(30)\n"
        )

        async with engine:
            channel = await engine.subscribe(python_request("cancel-stubborn", code))
            events = []
            cancelled_at = None
            async for event in channel:
                events.append(event)
                if event.type == OutputEventType.STDOUT and cancelled_at is None:
                    cancelled_at = time.monotonic()
                    engine.cancel("cancel-stubborn")
            elapsed = time.monotonic() - cancelled_at

        assert events[-1].type == OutputEventType.END
        assert OutputEvent.error("Execution cancelled") in events
        assert elapsed < settings.kill_grace_seconds + 2


@pytest.mark.integration
class TestLocalResourceLimits:
    """Tests for the limits of the local backends under the built-in python limits."""

    SPAWNER = (
        "import subprocess\n"
        "children = [subprocess.Popen(['sleep', '1']) for _ in range(40)]\n"
        "print('spawned', len(children))\n"
        "for child in children:\n"
        "    child.wait()\n"
    )

    @pytest.mark.asyncio
    async def test_concurrent_sessions_do_not_share_process_ceiling(self, engine, python_descriptor):
        assert python_descriptor.default_limits.max_processes < 80

        async with engine:
            results = await asyncio.gather(
                engine.execute(python_request("spawner-a", self.SPAWNER)),
                engine.execute(python_request("spawner-b", self.SPAWNER)),
            )

        for result in results:
            assert result.status == ExecutionStatus.SUCCESS, result.stderr
            assert result.stdout == "spawned 40\n"

    @pytest.mark.asyncio
    async def test_threads_fit_in_memory_ceiling(self, engine, python_descriptor):
        code = (
            "import threading, time\n"
            "threads = [threading.Thread(target=time.sleep, args=(0.2,)) for _ in range(20)]\n"
            "for t in threads:\n"
            "    t.start()\n"
            "for t in threads:\n"
            "    t.join()\n"
            "print('joined', len(threads))\n"
        )

        async with engine:
            result = await engine.execute(python_request("threads", code))

        assert python_descriptor.default_limits.max_memory_mb == 128
        assert result.status == ExecutionStatus.SUCCESS, result.stderr
        assert result.stdout == "joined 20\n"

