"""
Dependency wiring

Builds the object graph of the engine from Settings.
"""

from typing import Dict, Optional

from execution_engine.application.commands.grade_submission import GradeSubmissionCommand
from execution_engine.application.services.dependency_resolver import DependencyResolver
from execution_engine.application.services.language_registry import LanguageRegistry
from execution_engine.application.services.orchestrator import ExecutionOrchestrator
from execution_engine.application.services.session_registry import SessionRegistry
from execution_engine.application.services.streaming_gateway import StreamingGateway
from execution_engine.domain.ports import IIsolationBackend
from execution_engine.domain.value_objects import LanguageDescriptor
from execution_engine.infrastructure.config import Settings, get_settings, load_languages
from execution_engine.infrastructure.isolation import create_isolation_backend
from execution_engine.infrastructure.logging import configure_logging, get_logger

logger = get_logger(__name__)


def create_gateway(
    settings: Optional[Settings] = None,
    backend: Optional[IIsolationBackend] = None,
    languages: Optional[Dict[str, LanguageDescriptor]] = None,
    configure_logs: bool = True,
) -> StreamingGateway:
    """
    Build a ready-to-start StreamingGateway.

    Args:
        settings: Engine settings (defaults to the environment)
        backend: Isolation backend, created from settings when omitted
        languages: Descriptor map used instead of the built-in one; the
            languages file from settings is still applied on top
        configure_logs: Configure structlog from settings

    Raises:
        ValidationError: If the languages file is invalid
        InternalSandboxError: If the configured backend is unavailable
    """
    settings = settings or get_settings()
    if configure_logs:
        configure_logging(settings.log_level, settings.log_format)

    descriptors = load_languages(settings.languages_file, settings, base=languages)
    registry = LanguageRegistry(descriptors.values())
    backend = backend or create_isolation_backend(settings)

    sessions = SessionRegistry(
        idle_timeout_seconds=settings.idle_timeout_seconds,
        reaper_interval_seconds=settings.reaper_interval_seconds,
    )
    orchestrator = ExecutionOrchestrator(
        backend=backend,
        languages=registry,
        sessions=sessions,
        resolver=DependencyResolver(install_timeout_seconds=settings.install_timeout_seconds),
        settings=settings,
    )
    grader = GradeSubmissionCommand(
        orchestrator,
        grading_timeout_seconds=settings.grading_timeout_seconds,
        concurrency=settings.grading_concurrency,
    )

    logger.info(
        "Execution engine configured",
        backend=backend.name,
        languages=registry.supported(),
    )
    return StreamingGateway(orchestrator, grader, backend=backend)
