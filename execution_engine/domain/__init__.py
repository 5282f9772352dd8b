"""
Engine Domain Layer

This module contains the core domain logic of the execution engine:
value objects, the session entity, the error taxonomy and the isolation port.
"""

from .entities import ExecutionSession, SessionState
from .value_objects import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    GradingRequest,
    GradingResult,
    LanguageDescriptor,
    OutputEvent,
    OutputEventType,
    ResourceLimit,
    SourceFile,
    TestCase,
    TestResult,
)

__all__ = [
    "ExecutionSession",
    "SessionState",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionStatus",
    "GradingRequest",
    "GradingResult",
    "LanguageDescriptor",
    "OutputEvent",
    "OutputEventType",
    "ResourceLimit",
    "SourceFile",
    "TestCase",
    "TestResult",
]
