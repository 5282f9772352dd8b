"""Pytest configuration and fixtures."""

import pytest

from execution_engine.application.commands.grade_submission import GradeSubmissionCommand
from execution_engine.application.services.dependency_resolver import DependencyResolver
from execution_engine.application.services.language_registry import LanguageRegistry
from execution_engine.application.services.orchestrator import ExecutionOrchestrator
from execution_engine.application.services.session_registry import SessionRegistry
from execution_engine.application.services.streaming_gateway import StreamingGateway
from execution_engine.infrastructure.config import Settings, default_descriptors

from tests.fakes import FakeBackend


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without real processes")
    config.addinivalue_line("markers", "integration: tests that spawn real sandboxed processes")


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings tuned for fast tests."""
    return Settings(
        _env_file=None,
        isolation_backend="subprocess",
        workspace_root=str(tmp_path / "workspaces"),
        kill_grace_seconds=0.2,
        compile_timeout_seconds=5,
        install_timeout_seconds=5,
        grading_timeout_seconds=5,
        idle_timeout_seconds=-1,
        log_level="DEBUG",
    )


@pytest.fixture
def languages(settings) -> LanguageRegistry:
    return LanguageRegistry(default_descriptors(settings).values())


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def sessions() -> SessionRegistry:
    return SessionRegistry(idle_timeout_seconds=-1)


@pytest.fixture
def orchestrator(backend, languages, sessions, settings) -> ExecutionOrchestrator:
    return ExecutionOrchestrator(
        backend=backend,
        languages=languages,
        sessions=sessions,
        resolver=DependencyResolver(install_timeout_seconds=settings.install_timeout_seconds),
        settings=settings,
    )


@pytest.fixture
def grader(orchestrator, settings) -> GradeSubmissionCommand:
    return GradeSubmissionCommand(
        orchestrator, grading_timeout_seconds=settings.grading_timeout_seconds
    )


@pytest.fixture
def gateway(orchestrator, grader, backend) -> StreamingGateway:
    return StreamingGateway(orchestrator, grader, backend=backend)
