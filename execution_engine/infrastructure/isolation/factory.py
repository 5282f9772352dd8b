"""
Isolation backend selection.
"""

from execution_engine.domain.errors import InternalSandboxError
from execution_engine.domain.ports import IIsolationBackend
from execution_engine.infrastructure.config.settings import Settings
from execution_engine.infrastructure.isolation.bwrap import BubblewrapIsolationBackend
from execution_engine.infrastructure.isolation.docker import DockerIsolationBackend
from execution_engine.infrastructure.isolation.subprocess import SubprocessIsolationBackend
from execution_engine.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _docker_url(settings: Settings) -> str:
    docker_url = settings.docker_url
    if not docker_url.startswith(("unix://", "tcp://", "http://", "https://")):
        docker_url = f"unix://{docker_url}"
    return docker_url


def create_isolation_backend(settings: Settings) -> IIsolationBackend:
    """
    Build the backend named by settings.isolation_backend.

    Raises:
        InternalSandboxError: If the backend cannot be used on this host
    """
    if settings.isolation_backend == "docker":
        backend: IIsolationBackend = DockerIsolationBackend(_docker_url(settings))
    elif settings.isolation_backend == "bwrap":
        backend = BubblewrapIsolationBackend(settings.workspace_root)
    else:
        backend = SubprocessIsolationBackend(settings.workspace_root)

    if not backend.is_available():
        raise InternalSandboxError(
            f"Isolation backend '{backend.name}' is not available on this host"
        )
    logger.info("Isolation backend selected", backend=backend.name)
    return backend
