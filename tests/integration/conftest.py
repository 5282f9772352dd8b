"""
Integration Test Configuration

The engine runs real Python programs through the subprocess backend, using
the interpreter that runs the tests so no language toolchain is required.
"""

import sys
from dataclasses import replace

import pytest

from execution_engine.application.services.streaming_gateway import StreamingGateway
from execution_engine.bootstrap import create_gateway
from execution_engine.infrastructure.config import default_descriptors


@pytest.fixture
def python_descriptor(settings):
    """Built-in python descriptor and limits, run with the test interpreter."""
    builtin = default_descriptors(settings)["python"]
    return replace(builtin, run_command=(sys.executable, "-u", "{main_file}"))


@pytest.fixture
def engine(settings, python_descriptor) -> StreamingGateway:
    """Gateway on the subprocess backend; use it as an async context manager."""
    return create_gateway(
        settings,
        languages={"python": python_descriptor},
        configure_logs=False,
    )
