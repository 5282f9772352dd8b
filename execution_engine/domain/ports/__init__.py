"""
Domain Ports

Port interfaces defining contracts between layers.
"""

from .isolation_port import IIsolationBackend, IProcess, ISandbox, OutputChunk

__all__ = [
    "IIsolationBackend",
    "IProcess",
    "ISandbox",
    "OutputChunk",
]
