"""
Domain Services

Business rules that don't naturally fit within entities or value objects:
outcome classification of a finished process and output comparison for
grading.
"""

from typing import Iterable

from execution_engine.domain.value_objects import ExecutionStatus, ProcessExit

SIGKILL_EXIT_CODES = frozenset({-9, 137})

HIDDEN_INPUT = "(hidden)"
HIDDEN_CORRECT = "(correct)"
HIDDEN_INCORRECT = "(incorrect)"

_STATUS_MESSAGES = {
    ExecutionStatus.SUCCESS: "Program finished successfully",
    ExecutionStatus.RUNTIME_ERROR: "Runtime error",
    ExecutionStatus.COMPILE_ERROR: "Compilation failed",
    ExecutionStatus.DEPENDENCY_ERROR: "Dependency installation failed",
    ExecutionStatus.TIMEOUT: "Time limit exceeded",
    ExecutionStatus.RESOURCE_LIMIT: "Resource limit exceeded",
    ExecutionStatus.CANCELLED: "Execution cancelled",
    ExecutionStatus.INTERNAL_ERROR: "Internal execution error",
}


def status_message(status: ExecutionStatus) -> str:
    """Generic, content-free description of an outcome."""
    return _STATUS_MESSAGES[status]


def classify_exit(
    process_exit: ProcessExit,
    stderr: str = "",
    oom_markers: Iterable[str] = (),
) -> ExecutionStatus:
    """
    Map a finished process to an execution status.

    A process the engine did not kill counts as resource exhaustion when the
    backend reports an OOM kill, when it died from SIGKILL, or when stderr
    carries one of the language's out-of-memory markers.

    Args:
        process_exit: How the process ended
        stderr: Captured standard error
        oom_markers: Language-specific out-of-memory messages

    Returns:
        ExecutionStatus (never TIMEOUT or CANCELLED, the orchestrator decides
        those)
    """
    if process_exit.oom_killed:
        return ExecutionStatus.RESOURCE_LIMIT
    if not process_exit.killed_by_engine and process_exit.exit_code in SIGKILL_EXIT_CODES:
        return ExecutionStatus.RESOURCE_LIMIT
    if process_exit.exit_code == 0:
        return ExecutionStatus.SUCCESS
    if any(marker in stderr for marker in oom_markers):
        return ExecutionStatus.RESOURCE_LIMIT
    return ExecutionStatus.RUNTIME_ERROR


def normalize_output(value: str) -> str:
    """
    Canonicalize program output for comparison.

    Converts every line terminator to "\\n" and strips leading and trailing
    whitespace. Inner content is untouched, so "5" and "05" stay different.
    """
    return value.replace("\r\n", "\n").replace("\r", "\n").strip()


def outputs_match(actual: str, expected: str) -> bool:
    """Exact comparison after normalization."""
    return normalize_output(actual) == normalize_output(expected)
