"""
Application Services

Service classes for handling use cases.
"""

from .dependency_resolver import DependencyResolver
from .language_registry import LanguageRegistry
from .orchestrator import ExecutionOrchestrator
from .output_channel import OutputChannel
from .session_registry import SessionRegistry
from .streaming_gateway import StreamingGateway

__all__ = [
    "DependencyResolver",
    "ExecutionOrchestrator",
    "LanguageRegistry",
    "OutputChannel",
    "SessionRegistry",
    "StreamingGateway",
]
