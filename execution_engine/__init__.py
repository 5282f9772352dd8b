"""
Execution Engine

Sandboxed multi-language code execution for the NexusQuest platform:
batch and streaming runs, interactive input, and test-case grading.
"""

__version__ = "1.0.0"

from .bootstrap import create_gateway
from .application.services.streaming_gateway import StreamingGateway
from .domain.errors import (
    CompileError,
    DependencyInstallError,
    DuplicateSessionError,
    EngineError,
    ExecutionTimeoutError,
    InternalSandboxError,
    ProgramRuntimeError,
    ResourceLimitError,
    SessionNotFoundError,
    UnsupportedLanguageError,
    ValidationError,
)
from .domain.value_objects import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    GradingRequest,
    GradingResult,
    OutputEvent,
    OutputEventType,
    ResourceLimit,
    SourceFile,
    TestCase,
    TestResult,
)

__all__ = [
    "create_gateway",
    "StreamingGateway",
    # Errors
    "EngineError",
    "CompileError",
    "DependencyInstallError",
    "DuplicateSessionError",
    "ExecutionTimeoutError",
    "InternalSandboxError",
    "ProgramRuntimeError",
    "ResourceLimitError",
    "SessionNotFoundError",
    "UnsupportedLanguageError",
    "ValidationError",
    # Value objects
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionStatus",
    "GradingRequest",
    "GradingResult",
    "OutputEvent",
    "OutputEventType",
    "ResourceLimit",
    "SourceFile",
    "TestCase",
    "TestResult",
]
