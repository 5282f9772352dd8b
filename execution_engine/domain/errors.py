"""
Engine Errors

Error taxonomy for the execution engine.

Errors caused by the user's program (compile, dependency, runtime, timeout,
resource) are converted into structured results by the orchestrator. Contract
errors (unsupported language, invalid request, unknown or duplicate session)
are raised to the caller. InternalSandboxError marks isolation backend faults.
"""

from typing import Any, Optional


class EngineError(Exception):
    """Base class for all execution engine errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(EngineError):
    """Malformed execution or grading request."""
    pass


class UnsupportedLanguageError(EngineError):
    """Language id is not present in the registry."""

    def __init__(self, language: str):
        super().__init__(f"Unsupported language: {language}", {"language": language})
        self.language = language


class SessionNotFoundError(EngineError):
    """No in-flight session with the given id."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", {"session_id": session_id})
        self.session_id = session_id


class DuplicateSessionError(EngineError):
    """A session with the same id is already running."""

    def __init__(self, session_id: str):
        super().__init__(f"Session already exists: {session_id}", {"session_id": session_id})
        self.session_id = session_id


class CompileError(EngineError):
    """Compilation of the user's program failed."""

    def __init__(self, diagnostics: str, exit_code: int = 1):
        super().__init__("Compilation failed", {"exit_code": exit_code})
        self.diagnostics = diagnostics
        self.exit_code = exit_code


class DependencyInstallError(EngineError):
    """Declared dependencies could not be installed."""

    def __init__(self, message: str, install_log: str = ""):
        super().__init__(message)
        self.install_log = install_log


class ProgramRuntimeError(EngineError):
    """The program exited with a non-zero status."""

    def __init__(self, stderr: str, exit_code: int):
        super().__init__(f"Program exited with code {exit_code}", {"exit_code": exit_code})
        self.stderr = stderr
        self.exit_code = exit_code


class ExecutionTimeoutError(EngineError):
    """The program exceeded its wall-clock limit."""

    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"Execution timed out after {timeout_seconds:g}s",
            {"timeout_seconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


class ResourceLimitError(EngineError):
    """The program exceeded its memory or process-count ceiling."""
    pass


class InternalSandboxError(EngineError):
    """
    Isolation backend failure unrelated to user code.

    The original exception is kept for logging only and must never be shown
    to the caller.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error
