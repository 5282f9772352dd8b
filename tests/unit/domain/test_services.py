"""
Unit tests for Domain Services.

Tests exit classification and output comparison.
"""

import pytest

from execution_engine.domain.services import (
    classify_exit,
    normalize_output,
    outputs_match,
    status_message,
)
from execution_engine.domain.value_objects import ExecutionStatus, ProcessExit


class TestClassifyExit:
    """Tests for classify_exit()."""

    def test_zero_exit_is_success(self):
        assert classify_exit(ProcessExit(exit_code=0)) == ExecutionStatus.SUCCESS

    def test_non_zero_exit_is_runtime_error(self):
        assert classify_exit(ProcessExit(exit_code=1), "Traceback") == ExecutionStatus.RUNTIME_ERROR

    def test_oom_kill_is_resource_limit(self):
        process_exit = ProcessExit(exit_code=137, oom_killed=True)
        assert classify_exit(process_exit) == ExecutionStatus.RESOURCE_LIMIT

    @pytest.mark.parametrize("exit_code", [-9, 137])
    def test_external_sigkill_is_resource_limit(self, exit_code):
        assert classify_exit(ProcessExit(exit_code=exit_code)) == ExecutionStatus.RESOURCE_LIMIT

    def test_engine_kill_is_not_resource_limit(self):
        process_exit = ProcessExit(exit_code=-9, killed_by_engine=True)
        assert classify_exit(process_exit) == ExecutionStatus.RUNTIME_ERROR

    def test_oom_marker_in_stderr(self):
        status = classify_exit(
            ProcessExit(exit_code=1),
            "Exception in thread main java.lang.OutOfMemoryError: Java heap space",
            ("java.lang.OutOfMemoryError",),
        )
        assert status == ExecutionStatus.RESOURCE_LIMIT


class TestOutputComparison:
    """Tests for output normalization."""

    def test_line_endings_and_outer_whitespace(self):
        assert normalize_output("  5\r\n6\r7 \n\n") == "5\n6\n7"

    @pytest.mark.parametrize(
        "actual, expected",
        [("5\r\n", "5 \n"), ("hello\nworld", "hello\r\nworld\r\n"), ("", "\n")],
    )
    def test_equivalent_outputs_match(self, actual, expected):
        assert outputs_match(actual, expected)

    @pytest.mark.parametrize(
        "actual, expected",
        [("5", "05"), ("5.0", "5"), ("a  b", "a b"), ("Hello", "hello")],
    )
    def test_no_coercion(self, actual, expected):
        assert not outputs_match(actual, expected)


def test_every_status_has_a_message():
    for status in ExecutionStatus:
        assert status_message(status)
    assert status_message(ExecutionStatus.INTERNAL_ERROR) == "Internal execution error"
