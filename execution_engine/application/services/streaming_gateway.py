"""
Streaming Gateway

Entry point used by the calling services: batch execution, streaming
subscriptions, interactive input, cancellation and grading over one shared
orchestrator.
"""

from typing import TYPE_CHECKING, List, Optional

from execution_engine.application.services.orchestrator import ExecutionOrchestrator
from execution_engine.application.services.output_channel import OutputChannel
from execution_engine.domain.errors import SessionNotFoundError
from execution_engine.domain.ports import IIsolationBackend
from execution_engine.domain.value_objects import (
    ExecutionRequest,
    ExecutionResult,
    GradingRequest,
    GradingResult,
)
from execution_engine.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from execution_engine.application.commands.grade_submission import GradeSubmissionCommand

logger = get_logger(__name__)


class StreamingGateway:
    """
    Facade over the execution engine.

    The gateway owns the lifecycle of the shared pieces: `start()` launches
    the idle reaper on the running loop and `shutdown()` cancels everything
    in flight, waits for sandboxes to be released and closes the backend.
    """

    def __init__(
        self,
        orchestrator: ExecutionOrchestrator,
        grader: "GradeSubmissionCommand",
        backend: Optional[IIsolationBackend] = None,
    ):
        self._orchestrator = orchestrator
        self._grader = grader
        self._backend = backend
        self._sessions = orchestrator.sessions
        self._started = False

    @property
    def orchestrator(self) -> ExecutionOrchestrator:
        return self._orchestrator

    def start(self) -> None:
        """Start background maintenance. Must be called from a running loop."""
        if self._started:
            return
        self._sessions.start_reaper()
        self._started = True
        logger.info(
            "Execution gateway started",
            languages=self._orchestrator.languages.supported(),
            backend=self._backend.name if self._backend is not None else None,
        )

    async def shutdown(self) -> None:
        """Cancel every in-flight run and release shared resources."""
        logger.info("Execution gateway shutting down", active_sessions=len(self._sessions))
        await self._sessions.stop_reaper()
        await self._orchestrator.shutdown()
        if self._backend is not None:
            await self._backend.close()
        self._started = False

    async def __aenter__(self) -> "StreamingGateway":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # -- execution ---------------------------------------------------------

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run a request to completion and return its result."""
        return await self._orchestrator.run_batch(request)

    async def subscribe(self, request: ExecutionRequest) -> OutputChannel:
        """
        Start a request in stream mode.

        The returned channel yields OutputEvents until exactly one END event.
        Input may be delivered with `send_input` while the run is in flight.

        Raises:
            UnsupportedLanguageError, ValidationError, DuplicateSessionError:
                Before anything is started
        """
        return self._orchestrator.run_stream(request)

    def send_input(self, session_id: str, text: str, newline: bool = True) -> None:
        """
        Queue input for a running interactive program.

        Never blocks. Input for a program that does not read stdin is dropped
        with a warning.

        Args:
            session_id: Target session
            text: Text to deliver
            newline: Append a trailing newline for line-buffered readers

        Raises:
            SessionNotFoundError: If the session is unknown or already finished
        """
        session = self._sessions.get(session_id)
        if session.is_finished:
            raise SessionNotFoundError(session_id)
        if not session.interactive:
            logger.warning(
                "Input for non-interactive session dropped",
                session_id=session_id,
                size=len(text),
            )
            return
        if newline and not text.endswith("\n"):
            text += "\n"
        session.feed_input(text)

    def cancel(self, session_id: str) -> bool:
        """
        Cancel an in-flight run.

        Returns:
            False when the session is not in flight
        """
        return self._orchestrator.cancel(session_id)

    async def grade(self, request: GradingRequest) -> GradingResult:
        return await self._grader.execute(request)

    def active_sessions(self) -> List[str]:
        return self._sessions.list_ids()
