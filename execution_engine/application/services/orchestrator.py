"""
Execution Orchestrator

Owns the lifecycle of one run: resolve the language and limits, acquire a
sandbox, install dependencies, compile, run under a wall-clock limit, collect
or stream the output, classify the outcome and release every resource.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from execution_engine.application.services.dependency_resolver import DependencyResolver
from execution_engine.application.services.language_registry import LanguageRegistry
from execution_engine.application.services.output_channel import OutputChannel
from execution_engine.application.services.session_registry import SessionRegistry
from execution_engine.domain.entities import ExecutionSession
from execution_engine.domain.errors import (
    CompileError,
    DependencyInstallError,
    ExecutionTimeoutError,
    ValidationError,
)
from execution_engine.domain.ports import IIsolationBackend, IProcess, ISandbox
from execution_engine.domain.services import classify_exit, status_message
from execution_engine.domain.value_objects import (
    ExecutionPhase,
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    InstallPlan,
    LanguageDescriptor,
    OutputEvent,
    OutputEventType,
    ProcessExit,
    ResourceLimit,
    SourceFile,
)
from execution_engine.infrastructure.config.settings import Settings
from execution_engine.infrastructure.logging import get_logger

logger = get_logger(__name__)

OUTPUT_DRAIN_SECONDS = 1.0
BUILD_LOG_LIMIT_BYTES = 64 * 1024

ChunkHandler = Callable[[OutputEventType, str], None]


class _RunCancelled(Exception):
    """Raised internally when a session is cancelled between steps."""


@dataclass
class _PreparedRun:
    session: ExecutionSession
    request: ExecutionRequest
    descriptor: LanguageDescriptor
    limits: ResourceLimit
    files: List[SourceFile]
    plan: Optional[InstallPlan] = None
    plan_error: Optional[DependencyInstallError] = None


@dataclass
class _StepOutcome:
    exit: ProcessExit
    timed_out: bool = False
    cancel_reason: Optional[str] = None


class _BuildLog:
    """Bounded buffer for install logs and compiler diagnostics."""

    def __init__(self, limit: int = BUILD_LOG_LIMIT_BYTES):
        self._parts: List[str] = []
        self._size = 0
        self._limit = limit
        self.truncated = False

    def append(self, stream: OutputEventType, text: str) -> None:
        if self.truncated:
            return
        size = len(text.encode("utf-8"))
        if self._size + size > self._limit:
            self.truncated = True
            return
        self._size += size
        self._parts.append(text)

    @property
    def text(self) -> str:
        text = "".join(self._parts)
        if self.truncated:
            text += "\n[output truncated]\n"
        return text


class ExecutionOrchestrator:
    """
    Runs ExecutionRequests in batch or stream mode.

    Each run gets its own session and sandbox; there is no lock shared
    between runs other than the session registry's.
    """

    def __init__(
        self,
        backend: IIsolationBackend,
        languages: LanguageRegistry,
        sessions: SessionRegistry,
        resolver: DependencyResolver,
        settings: Settings,
    ):
        self._backend = backend
        self._languages = languages
        self._sessions = sessions
        self._resolver = resolver
        self._settings = settings
        self._stream_tasks: "set[asyncio.Task]" = set()

    @property
    def languages(self) -> LanguageRegistry:
        return self._languages

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    # -- public API --------------------------------------------------------

    async def run(
        self, request: ExecutionRequest, mode: str = "batch"
    ) -> Union[ExecutionResult, OutputChannel]:
        """
        Execute a request.

        Args:
            request: What to run
            mode: "batch" waits for the ExecutionResult, "stream" returns an
                OutputChannel immediately

        Raises:
            UnsupportedLanguageError, ValidationError, DuplicateSessionError:
                Before anything is started
        """
        if mode == "batch":
            return await self.run_batch(request)
        if mode == "stream":
            return self.run_stream(request)
        raise ValidationError(f"Unknown execution mode: {mode}")

    async def run_batch(self, request: ExecutionRequest) -> ExecutionResult:
        prepared = self._prepare(request)
        return await self._execute(prepared, channel=None)

    def run_stream(self, request: ExecutionRequest) -> OutputChannel:
        prepared = self._prepare(request)
        session = prepared.session
        session.interactive = True
        channel = OutputChannel(
            session.session_id,
            on_disconnect=lambda: session.request_cancel("consumer_disconnected"),
        )
        task = asyncio.get_running_loop().create_task(self._execute(prepared, channel=channel))
        channel.attach(task)
        self._stream_tasks.add(task)
        task.add_done_callback(self._stream_tasks.discard)
        return channel

    def cancel(self, session_id: str, reason: str = "cancelled") -> bool:
        """
        Request cancellation of an in-flight run.

        Returns:
            False if no such session is in flight
        """
        session = self._sessions.find(session_id)
        if session is None:
            return False
        session.request_cancel(reason)
        logger.info("Cancellation requested", session_id=session_id, reason=reason)
        return True

    async def shutdown(self) -> None:
        """Cancel every in-flight run and wait for them to release."""
        for session in self._sessions.snapshot():
            session.request_cancel("shutdown")
        if self._stream_tasks:
            await asyncio.gather(*list(self._stream_tasks), return_exceptions=True)

    def resolve_limits(
        self, descriptor: LanguageDescriptor, request: ExecutionRequest
    ) -> ResourceLimit:
        """Language defaults, then the named profile, then caller overrides."""
        limits = descriptor.default_limits
        if request.profile:
            profile = self._settings.limit_profiles.get(request.profile)
            if profile is None:
                raise ValidationError(f"Unknown limit profile: {request.profile}")
            limits = limits.merge(profile)
        return limits.merge(request.limits)

    # -- lifecycle ---------------------------------------------------------

    def _prepare(self, request: ExecutionRequest) -> _PreparedRun:
        descriptor = self._languages.resolve(request.language)
        limits = self.resolve_limits(descriptor, request)

        files = list(request.files)
        plan, plan_error = None, None
        try:
            plan = self._resolver.resolve(descriptor, request.dependencies, files)
        except DependencyInstallError as e:
            plan_error = e
        if plan is not None:
            files = [f for f in files if f.name != plan.manifest.name] + [plan.manifest]

        session = self._sessions.create(request.session_id, max_output_bytes=limits.max_output_bytes)
        return _PreparedRun(
            session=session,
            request=request,
            descriptor=descriptor,
            limits=limits,
            files=files,
            plan=plan,
            plan_error=plan_error,
        )

    async def _execute(
        self, prepared: _PreparedRun, channel: Optional[OutputChannel]
    ) -> ExecutionResult:
        session = prepared.session
        request = prepared.request
        descriptor = prepared.descriptor
        log = logger.bind(session_id=session.session_id, language=descriptor.id)

        session.bind_loop(asyncio.get_running_loop())
        session.mark_as_preparing()
        sandbox: Optional[ISandbox] = None
        try:
            if prepared.plan_error is not None:
                raise prepared.plan_error
            self._check_cancelled(session)

            sandbox = await self._backend.acquire(
                prepared.files,
                descriptor,
                prepared.limits,
                network=prepared.plan is not None,
                session_id=session.session_id,
            )
            session.sandbox = sandbox
            self._check_cancelled(session)

            if prepared.plan is not None:
                await self._install(session, sandbox, prepared.plan)
            if descriptor.is_compiled:
                await self._compile(session, sandbox, descriptor, prepared.files, request.main_file)

            result = await self._run_program(prepared, sandbox, channel)

        except CompileError as e:
            result = self._failure(
                session, request, ExecutionStatus.COMPILE_ERROR,
                stderr=e.diagnostics, exit_code=e.exit_code,
            )
        except DependencyInstallError as e:
            result = self._failure(
                session, request, ExecutionStatus.DEPENDENCY_ERROR,
                stderr=e.install_log, error=e.message,
            )
        except _RunCancelled:
            result = self._failure(session, request, ExecutionStatus.CANCELLED)
        except Exception as e:
            log.error("Run failed with internal error", error=str(e), exc_info=True)
            result = self._failure(session, request, ExecutionStatus.INTERNAL_ERROR)
        finally:
            if sandbox is not None:
                try:
                    await sandbox.release()
                except Exception as e:
                    log.error("Sandbox release failed", error=str(e), exc_info=True)
            session.mark_as_finished()
            self._sessions.remove(session.session_id, session)

        log.info(
            "Run finished",
            status=result.status.value,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            output_truncated=result.output_truncated,
        )
        if channel is not None:
            self._publish_outcome(channel, result)
        return result

    def _check_cancelled(self, session: ExecutionSession) -> None:
        if session.cancelled:
            raise _RunCancelled()

    def _failure(
        self,
        session: ExecutionSession,
        request: ExecutionRequest,
        status: ExecutionStatus,
        stderr: Optional[str] = None,
        exit_code: int = -1,
        error: Optional[str] = None,
    ) -> ExecutionResult:
        """Result of a run whose program step did not complete."""
        return ExecutionResult(
            status=status,
            stdout=session.stdout,
            stderr=stderr if stderr is not None else session.stderr,
            exit_code=exit_code,
            timed_out=False,
            duration_ms=0.0,
            error=error or status_message(status),
            session_id=session.session_id,
            metadata=dict(request.metadata),
            output_truncated=session.output_truncated,
        )

    def _publish_outcome(self, channel: OutputChannel, result: ExecutionResult) -> None:
        if result.status in (ExecutionStatus.COMPILE_ERROR, ExecutionStatus.DEPENDENCY_ERROR):
            if result.stderr:
                channel.publish(OutputEvent.stderr(result.stderr))
        if result.status != ExecutionStatus.SUCCESS:
            channel.publish(OutputEvent.error(result.error or status_message(result.status)))
        channel.publish(OutputEvent.end())

    # -- steps -------------------------------------------------------------

    async def _install(self, session: ExecutionSession, sandbox: ISandbox, plan: InstallPlan) -> None:
        session.phase = ExecutionPhase.INSTALL
        build_log = _BuildLog()
        process = await sandbox.exec(
            list(plan.command),
            phase=ExecutionPhase.INSTALL,
            working_directory=plan.working_directory,
        )
        outcome = await self._supervise(
            session, process, plan.timeout_seconds, self._build_sink(session, build_log)
        )
        if outcome.cancel_reason is not None:
            raise _RunCancelled()
        if outcome.timed_out:
            raise DependencyInstallError(
                f"Dependency installation timed out after {plan.timeout_seconds}s",
                install_log=build_log.text,
            )
        if outcome.exit.exit_code != 0:
            raise DependencyInstallError(
                "Dependency installation failed", install_log=build_log.text
            )
        logger.debug("Dependencies installed", session_id=session.session_id)

    async def _compile(
        self,
        session: ExecutionSession,
        sandbox: ISandbox,
        descriptor: LanguageDescriptor,
        files: List[SourceFile],
        main_file: str,
    ) -> None:
        session.phase = ExecutionPhase.COMPILE
        build_log = _BuildLog()
        argv = descriptor.render(descriptor.compile_command, files, main_file)
        process = await sandbox.exec(argv, phase=ExecutionPhase.COMPILE)
        timeout = self._settings.compile_timeout_seconds
        outcome = await self._supervise(session, process, timeout, self._build_sink(session, build_log))
        if outcome.cancel_reason is not None:
            raise _RunCancelled()
        if outcome.timed_out:
            raise CompileError(f"Compilation timed out after {timeout}s\n{build_log.text}")
        if outcome.exit.exit_code != 0:
            raise CompileError(build_log.text, exit_code=outcome.exit.exit_code)

    async def _run_program(
        self,
        prepared: _PreparedRun,
        sandbox: ISandbox,
        channel: Optional[OutputChannel],
    ) -> ExecutionResult:
        session = prepared.session
        request = prepared.request
        descriptor = prepared.descriptor
        limits = prepared.limits
        interactive = channel is not None

        argv = descriptor.render(descriptor.run_command, prepared.files, request.main_file)
        process = await sandbox.exec(
            argv,
            phase=ExecutionPhase.RUN,
            stdin=request.stdin,
            interactive=interactive,
        )
        session.interactive = interactive
        session.mark_as_running(process)

        def on_chunk(stream: OutputEventType, text: str) -> None:
            accepted = session.record_output(stream, text)
            if accepted and channel is not None:
                channel.publish(OutputEvent(stream, accepted))

        feeder = asyncio.create_task(self._feed_stdin(session, process)) if interactive else None
        started = time.monotonic()
        try:
            outcome = await self._supervise(session, process, limits.timeout_seconds, on_chunk)
        finally:
            if feeder is not None:
                feeder.cancel()
                await asyncio.gather(feeder, return_exceptions=True)
        duration_ms = round((time.monotonic() - started) * 1000, 2)

        if outcome.cancel_reason is not None or session.cancelled:
            status = ExecutionStatus.CANCELLED
        elif outcome.timed_out:
            status = ExecutionStatus.TIMEOUT
        else:
            status = classify_exit(outcome.exit, session.stderr, descriptor.oom_markers)

        error = None
        if status == ExecutionStatus.RUNTIME_ERROR:
            error = f"{status_message(status)}: process exited with code {outcome.exit.exit_code}"
        elif status == ExecutionStatus.TIMEOUT:
            error = ExecutionTimeoutError(limits.timeout_seconds).message
        elif status != ExecutionStatus.SUCCESS:
            error = status_message(status)

        return ExecutionResult(
            status=status,
            stdout=session.stdout,
            stderr=session.stderr,
            exit_code=outcome.exit.exit_code,
            timed_out=outcome.timed_out,
            duration_ms=duration_ms,
            error=error,
            session_id=session.session_id,
            metadata=dict(request.metadata),
            output_truncated=session.output_truncated,
        )

    # -- process supervision -----------------------------------------------

    def _build_sink(self, session: ExecutionSession, build_log: _BuildLog) -> ChunkHandler:
        def sink(stream: OutputEventType, text: str) -> None:
            session.touch()
            build_log.append(stream, text)

        return sink

    async def _feed_stdin(self, session: ExecutionSession, process: IProcess) -> None:
        while True:
            text = await session.next_input()
            if not await process.write_stdin(text):
                logger.warning(
                    "Program stdin is closed, input dropped",
                    session_id=session.session_id,
                    size=len(text),
                )

    async def _pump_output(self, process: IProcess, on_chunk: ChunkHandler) -> None:
        async for stream, text in process.output():
            on_chunk(stream, text)

    async def _supervise(
        self,
        session: ExecutionSession,
        process: IProcess,
        timeout: float,
        on_chunk: ChunkHandler,
    ) -> _StepOutcome:
        """
        Wait for a process under a wall-clock limit and the session's
        cancellation flag, forwarding output as it arrives.

        The output pump never waits on a consumer, so the deadline fires
        regardless of how the caller reads.
        """
        pump = asyncio.create_task(self._pump_output(process, on_chunk))
        waiter = asyncio.create_task(process.wait())
        cancelled = asyncio.create_task(session.wait_cancelled())
        timed_out = False
        cancel_reason = None
        try:
            done, _ = await asyncio.wait(
                {waiter, cancelled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if waiter not in done:
                if cancelled in done:
                    cancel_reason = cancelled.result()
                else:
                    timed_out = True
                logger.info(
                    "Stopping process",
                    session_id=session.session_id,
                    phase=session.phase.value if session.phase else None,
                    reason=cancel_reason or "timeout",
                )
                await process.terminate(self._settings.kill_grace_seconds)
            process_exit = await waiter
            await self._drain(process, pump)
        finally:
            for task in (cancelled, waiter, pump):
                if not task.done():
                    task.cancel()
            await asyncio.gather(cancelled, waiter, pump, return_exceptions=True)
        return _StepOutcome(exit=process_exit, timed_out=timed_out, cancel_reason=cancel_reason)

    async def _drain(self, process: IProcess, pump: asyncio.Task) -> None:
        """Collect the output left after exit, killing descendants that hold the pipes."""
        done, _ = await asyncio.wait({pump}, timeout=OUTPUT_DRAIN_SECONDS)
        if not done:
            await process.terminate(0)
            done, _ = await asyncio.wait({pump}, timeout=OUTPUT_DRAIN_SECONDS)
        if done:
            pump.result()
