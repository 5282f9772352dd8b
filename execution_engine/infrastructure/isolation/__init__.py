"""
Isolation Infrastructure

Docker, Bubblewrap and plain subprocess sandbox adapters.
"""

from .bwrap import BubblewrapIsolationBackend
from .docker import DockerIsolationBackend
from .factory import create_isolation_backend
from .subprocess import SubprocessIsolationBackend

__all__ = [
    "BubblewrapIsolationBackend",
    "DockerIsolationBackend",
    "SubprocessIsolationBackend",
    "create_isolation_backend",
]
