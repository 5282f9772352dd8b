"""
Application DTOs

Data transfer objects for the calling services.
"""

from .execute_request import (
    ExecuteRequestDTO,
    ExecutionResultDTO,
    GradeRequestDTO,
    GradingResultDTO,
    SendInputDTO,
    SourceFileDTO,
    TestCaseDTO,
    TestResultDTO,
)

__all__ = [
    "ExecuteRequestDTO",
    "ExecutionResultDTO",
    "GradeRequestDTO",
    "GradingResultDTO",
    "SendInputDTO",
    "SourceFileDTO",
    "TestCaseDTO",
    "TestResultDTO",
]
