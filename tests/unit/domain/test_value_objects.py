"""
Unit tests for Domain Value Objects.

Tests value objects that follow hexagonal architecture principles:
- Immutability (frozen dataclasses)
- Validation in __post_init__
- Command template rendering
"""

import pytest
from dataclasses import FrozenInstanceError

from execution_engine.domain.errors import (
    CompileError,
    ExecutionTimeoutError,
    InternalSandboxError,
    ProgramRuntimeError,
    ValidationError,
)
from execution_engine.domain.value_objects import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    GradingRequest,
    GradingResult,
    LanguageDescriptor,
    OutputEvent,
    OutputEventType,
    ResourceLimit,
    SourceFile,
    TestCase,
    TestResult,
)


class TestSourceFile:
    """Tests for SourceFile value object."""

    def test_relative_nested_path_is_accepted(self):
        source = SourceFile(name="pkg/util.py", content="x = 1")
        assert source.to_dict() == {"name": "pkg/util.py", "content": "x = 1"}

    @pytest.mark.parametrize("name", ["", "   ", "/etc/passwd", "../escape.py", "a/../../b.py"])
    def test_unsafe_names_are_rejected(self, name):
        with pytest.raises(ValidationError):
            SourceFile(name=name, content="")

    def test_source_file_is_immutable(self):
        source = SourceFile(name="main.py", content="")
        with pytest.raises(FrozenInstanceError):
            source.name = "other.py"


class TestResourceLimit:
    """Tests for ResourceLimit value object."""

    def test_merge_replaces_given_fields(self):
        limits = ResourceLimit().merge({"timeout_seconds": 2, "max_memory_mb": 64})

        assert limits.timeout_seconds == 2
        assert limits.max_memory_mb == 64
        assert limits.max_processes == ResourceLimit().max_processes

    def test_merge_ignores_none_values(self):
        limits = ResourceLimit(timeout_seconds=7).merge({"timeout_seconds": None})
        assert limits.timeout_seconds == 7

    def test_merge_rejects_unknown_fields(self):
        with pytest.raises(ValidationError, match="Unknown resource limit fields"):
            ResourceLimit().merge({"gpu": 1})

    @pytest.mark.parametrize(
        "overrides",
        [
            {"timeout_seconds": 0},
            {"timeout_seconds": 7200},
            {"max_memory_mb": -1},
            {"cpu_share": 0},
            {"max_processes": 0},
            {"max_output_bytes": 0},
        ],
    )
    def test_merge_validates_values(self, overrides):
        with pytest.raises(ValidationError):
            ResourceLimit().merge(overrides)


class TestExecutionRequest:
    """Tests for ExecutionRequest value object."""

    def test_single_file_request(self):
        request = ExecutionRequest.single_file(
            session_id="s-1", language="python", file_name="main.py", code="print(1)", stdin="x"
        )

        assert request.main_file == "main.py"
        assert request.files == (SourceFile(name="main.py", content="print(1)"),)
        assert request.stdin == "x"

    def test_session_id_is_required(self):
        with pytest.raises(ValidationError, match="session_id"):
            ExecutionRequest.single_file(session_id=" ", language="python", file_name="a.py", code="")

    def test_files_are_required(self):
        with pytest.raises(ValidationError, match="At least one file"):
            ExecutionRequest(session_id="s", language="python", files=(), main_file="main.py")

    def test_main_file_must_be_among_files(self):
        with pytest.raises(ValidationError, match="main_file"):
            ExecutionRequest(
                session_id="s",
                language="python",
                files=(SourceFile(name="util.py", content=""),),
                main_file="main.py",
            )

    def test_duplicate_file_names_are_rejected(self):
        with pytest.raises(ValidationError, match="unique"):
            ExecutionRequest(
                session_id="s",
                language="python",
                files=(SourceFile("main.py", "a"), SourceFile("main.py", "b")),
                main_file="main.py",
            )


class TestLanguageDescriptor:
    """Tests for command template rendering."""

    @pytest.fixture
    def java(self):
        return LanguageDescriptor(
            id="java",
            image="nexusquest-java",
            entry_file_name="Main.java",
            source_extensions=(".java",),
            compile_command=("javac", "-d", ".", "{sources}"),
            run_command=("java", "-cp", ".", "{main_class}"),
        )

    def test_sources_placeholder_expands_to_every_source_file(self, java):
        files = [
            SourceFile("App.java", "public class App {}"),
            SourceFile("util/Helper.java", "class Helper {}"),
            SourceFile("notes.txt", "not code"),
        ]

        argv = java.render(java.compile_command, files, "App.java")

        assert argv == ["javac", "-d", ".", "App.java", "util/Helper.java"]

    def test_main_class_comes_from_public_class(self, java):
        files = [SourceFile("Program.java", "public final class Greeter { }")]

        argv = java.render(java.run_command, files, "Program.java")

        assert argv == ["java", "-cp", ".", "Greeter"]

    def test_entry_file_for_java_uses_public_class_name(self, java):
        assert java.entry_file_for("public class Calculator {}") == "Calculator.java"
        assert java.entry_file_for("class Hidden {}") == "Main.java"

    def test_is_compiled(self, java):
        python = LanguageDescriptor(
            id="python", image="img", entry_file_name="main.py", run_command=("python3", "{main_file}")
        )
        assert java.is_compiled
        assert not python.is_compiled
        assert python.render(python.run_command, [], "main.py") == ["python3", "main.py"]


class TestExecutionResult:
    """Tests for ExecutionResult value object."""

    def _result(self, status, **kwargs):
        values = dict(stdout="", stderr="", exit_code=0, timed_out=False, duration_ms=10.0)
        values.update(kwargs)
        return ExecutionResult(status=status, **values)

    def test_to_dict(self):
        result = self._result(ExecutionStatus.SUCCESS, stdout="hi\n", session_id="s-1")
        data = result.to_dict()

        assert data["status"] == "success"
        assert data["stdout"] == "hi\n"
        assert data["session_id"] == "s-1"
        assert data["output_truncated"] is False

    def test_raise_for_status_on_success_is_noop(self):
        self._result(ExecutionStatus.SUCCESS).raise_for_status()

    def test_raise_for_status_maps_compile_error(self):
        result = self._result(ExecutionStatus.COMPILE_ERROR, stderr="main.cpp:1: error", exit_code=1)
        with pytest.raises(CompileError) as exc_info:
            result.raise_for_status()
        assert exc_info.value.diagnostics == "main.cpp:1: error"

    def test_raise_for_status_maps_runtime_error(self):
        result = self._result(ExecutionStatus.RUNTIME_ERROR, stderr="boom", exit_code=3)
        with pytest.raises(ProgramRuntimeError) as exc_info:
            result.raise_for_status()
        assert exc_info.value.exit_code == 3

    def test_raise_for_status_maps_timeout_and_internal(self):
        with pytest.raises(ExecutionTimeoutError):
            self._result(ExecutionStatus.TIMEOUT, timed_out=True, duration_ms=2000).raise_for_status()
        with pytest.raises(InternalSandboxError):
            self._result(ExecutionStatus.INTERNAL_ERROR, error="Internal execution error").raise_for_status()


class TestOutputEvent:
    def test_factories(self):
        assert OutputEvent.stdout("a").type == OutputEventType.STDOUT
        assert OutputEvent.stderr("b").type == OutputEventType.STDERR
        assert OutputEvent.error("c").to_dict() == {"type": "error", "data": "c"}
        assert OutputEvent.end().is_terminal
        assert not OutputEvent.stdout("a").is_terminal


class TestGrading:
    """Tests for grading value objects."""

    def test_grading_request_needs_test_cases(self):
        with pytest.raises(ValidationError, match="test case"):
            GradingRequest(
                language="python",
                files=(SourceFile("main.py", ""),),
                main_file="main.py",
                test_cases=(),
            )

    def test_score(self):
        results = (
            TestResult(index=0, passed=True, input="1", actual_output="1"),
            TestResult(index=1, passed=False, input="2", actual_output="3"),
            TestResult(index=2, passed=True, input="(hidden)", actual_output="(correct)", is_hidden=True),
        )
        grading = GradingResult(results=results)

        assert grading.passed_count == 2
        assert grading.total_count == 3
        assert not grading.all_passed
        assert grading.score_percent == 67
        assert grading.to_dict()["results"][2]["input"] == "(hidden)"

    def test_empty_grading_result(self):
        grading = GradingResult(results=())
        assert grading.score_percent == 0
        assert not grading.all_passed

    def test_test_case_defaults(self):
        case = TestCase(input="1 2", expected_output="3")
        assert case.is_hidden is False
