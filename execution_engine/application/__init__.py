"""
Application Layer

Orchestrates domain objects to execute use cases.
Contains commands, services, and DTOs.
"""

from .commands.grade_submission import GradeSubmissionCommand
from .services.orchestrator import ExecutionOrchestrator
from .services.streaming_gateway import StreamingGateway

__all__ = [
    # Commands
    "GradeSubmissionCommand",
    # Services
    "ExecutionOrchestrator",
    "StreamingGateway",
]
