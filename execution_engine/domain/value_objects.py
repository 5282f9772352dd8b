"""
Execution Value Objects

Immutable value objects for execution, streaming and grading concepts.
"""

import re
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, List, Mapping, Optional, Tuple

from execution_engine.domain.errors import (
    CompileError,
    DependencyInstallError,
    EngineError,
    ExecutionTimeoutError,
    InternalSandboxError,
    ProgramRuntimeError,
    ResourceLimitError,
    ValidationError,
)


class ExecutionStatus(str, Enum):
    """Terminal outcome of a run."""

    SUCCESS = "success"
    RUNTIME_ERROR = "runtime_error"
    COMPILE_ERROR = "compile_error"
    DEPENDENCY_ERROR = "dependency_error"
    TIMEOUT = "timeout"
    RESOURCE_LIMIT = "resource_limit"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


class OutputEventType(str, Enum):
    """Kind of event delivered on an output stream."""

    STDOUT = "stdout"
    STDERR = "stderr"
    ERROR = "error"
    END = "end"


class DependencyManifest(str, Enum):
    """Manifest format used to declare a language's dependencies."""

    REQUIREMENTS = "requirements"
    PACKAGE_JSON = "package_json"
    MAVEN = "maven"


class ExecutionPhase(str, Enum):
    """Step of a run executed inside the sandbox."""

    INSTALL = "install"
    COMPILE = "compile"
    RUN = "run"


@dataclass(frozen=True)
class SourceFile:
    """
    A single file of the user's workspace.

    Attributes:
        name: Workspace-relative path (e.g. "main.py" or "pkg/util.py")
        content: File content
    """

    name: str
    content: str

    def __post_init__(self):
        """Reject paths that would escape the workspace."""
        if not self.name or not self.name.strip():
            raise ValidationError("File name cannot be empty")
        path = PurePosixPath(self.name)
        if path.is_absolute() or self.name.startswith("\\"):
            raise ValidationError(f"File name must be relative: {self.name}")
        if ".." in path.parts:
            raise ValidationError(f"File name cannot contain '..': {self.name}")

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "content": self.content}


@dataclass(frozen=True)
class ResourceLimit:
    """
    Resource limits for a single run.

    Attributes:
        timeout_seconds: Wall-clock limit of the run step
        max_memory_mb: Memory ceiling in megabytes
        cpu_share: Fraction of one CPU (0.5 == 50% quota)
        max_processes: Process-count ceiling
        max_output_bytes: Output kept per run before truncation
    """

    timeout_seconds: float = 10
    max_memory_mb: int = 256
    cpu_share: float = 0.5
    max_processes: int = 64
    max_output_bytes: int = 1024 * 1024

    def validate(self) -> None:
        """Validate resource limits."""
        if self.timeout_seconds <= 0:
            raise ValidationError("timeout_seconds must be positive")
        if self.timeout_seconds > 3600:
            raise ValidationError("timeout_seconds cannot exceed 3600 (1 hour)")
        if self.max_memory_mb <= 0:
            raise ValidationError("max_memory_mb must be positive")
        if self.cpu_share <= 0:
            raise ValidationError("cpu_share must be positive")
        if self.max_processes <= 0:
            raise ValidationError("max_processes must be positive")
        if self.max_output_bytes <= 0:
            raise ValidationError("max_output_bytes must be positive")

    def merge(self, overrides: Optional[Mapping[str, Any]]) -> "ResourceLimit":
        """
        Return a copy with the given fields replaced.

        Args:
            overrides: Field name to value; None values are ignored

        Returns:
            New validated ResourceLimit

        Raises:
            ValidationError: On unknown fields or invalid values
        """
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValidationError(f"Unknown resource limit fields: {sorted(unknown)}")
        changes = {k: v for k, v in overrides.items() if v is not None}
        merged = replace(self, **changes)
        merged.validate()
        return merged

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timeout_seconds": self.timeout_seconds,
            "max_memory_mb": self.max_memory_mb,
            "cpu_share": self.cpu_share,
            "max_processes": self.max_processes,
            "max_output_bytes": self.max_output_bytes,
        }


_JAVA_CLASS_PATTERN = re.compile(r"public\s+(?:final\s+|abstract\s+)*class\s+(\w+)")


@dataclass(frozen=True)
class LanguageDescriptor:
    """
    Static description of how to build and run one language.

    Command templates are argv lists. Supported placeholders:
    {main_file}, {main_stem}, {main_class}; an argument that is exactly
    "{sources}" expands to every workspace file with a source extension.
    run_env values may use {workspace}, the workspace path inside the sandbox.
    """

    id: str
    image: str
    entry_file_name: str
    run_command: Tuple[str, ...]
    source_extensions: Tuple[str, ...] = ()
    compile_command: Optional[Tuple[str, ...]] = None
    dependency_manifest: Optional[DependencyManifest] = None
    install_command: Optional[Tuple[str, ...]] = None
    run_env: Dict[str, str] = field(default_factory=dict)
    aliases: Tuple[str, ...] = ()
    default_limits: ResourceLimit = field(default_factory=ResourceLimit)
    oom_markers: Tuple[str, ...] = ()
    # Local backends bound memory by address space when set, by data size
    # otherwise. Runtimes reserving large virtual ranges need data size.
    rlimit_address_space: bool = True

    @property
    def is_compiled(self) -> bool:
        return self.compile_command is not None

    def main_class(self, files: List[SourceFile], main_file: str) -> str:
        """Name of the class holding the entry point (java convention)."""
        for source in files:
            if source.name == main_file:
                match = _JAVA_CLASS_PATTERN.search(source.content)
                if match:
                    return match.group(1)
        return PurePosixPath(main_file).stem

    def entry_file_for(self, code: str) -> str:
        """Default file name for a single-file program."""
        if self.id == "java":
            match = _JAVA_CLASS_PATTERN.search(code)
            if match:
                return f"{match.group(1)}.java"
        return self.entry_file_name

    def environment(self, workspace: str) -> Dict[str, str]:
        """run_env with "{workspace}" replaced by the workspace path seen by the program."""
        return {key: value.replace("{workspace}", workspace) for key, value in self.run_env.items()}

    def render(
        self, template: Tuple[str, ...], files: List[SourceFile], main_file: str
    ) -> List[str]:
        """
        Render a command template for a concrete workspace.

        Args:
            template: argv template
            files: Workspace files
            main_file: Entry file name

        Returns:
            Concrete argv list
        """
        values = {
            "main_file": main_file,
            "main_stem": PurePosixPath(main_file).stem,
            "main_class": self.main_class(files, main_file),
        }
        argv: List[str] = []
        for arg in template:
            if arg == "{sources}":
                sources = [f.name for f in files if f.name.endswith(self.source_extensions)]
                argv.extend(sources or [main_file])
                continue
            argv.append(arg.format(**values))
        return argv


@dataclass(frozen=True)
class ExecutionRequest:
    """
    Request to run a program.

    Attributes:
        session_id: Caller-supplied opaque id, unique per in-flight run
        language: Language id or alias
        files: Ordered workspace files
        main_file: Entry file, must be one of files
        dependencies: Package name to version, may be empty
        stdin: Initial input
        limits: Caller overrides for ResourceLimit fields
        profile: Named limit profile from settings (e.g. "playground")
        metadata: Opaque caller data returned verbatim
    """

    session_id: str
    language: str
    files: Tuple[SourceFile, ...]
    main_file: str
    dependencies: Dict[str, str] = field(default_factory=dict)
    stdin: Optional[str] = None
    limits: Dict[str, Any] = field(default_factory=dict)
    profile: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Validate execution request."""
        if not self.session_id or not self.session_id.strip():
            raise ValidationError("session_id is required")
        if not self.files:
            raise ValidationError("At least one file is required")
        names = [f.name for f in self.files]
        if len(set(names)) != len(names):
            raise ValidationError("File names must be unique")
        if self.main_file not in names:
            raise ValidationError(f"main_file '{self.main_file}' is not among the files")

    @classmethod
    def single_file(
        cls,
        session_id: str,
        language: str,
        file_name: str,
        code: str,
        **kwargs: Any,
    ) -> "ExecutionRequest":
        """Build a request for a one-file program."""
        return cls(
            session_id=session_id,
            language=language,
            files=(SourceFile(name=file_name, content=code),),
            main_file=file_name,
            **kwargs,
        )


@dataclass(frozen=True)
class ProcessExit:
    """How a sandboxed process ended."""

    exit_code: int
    oom_killed: bool = False
    killed_by_engine: bool = False


@dataclass(frozen=True)
class InstallPlan:
    """
    Dependency installation step for a workspace.

    Attributes:
        manifest: Generated manifest file merged into the workspace
        command: Install argv, run inside the sandbox
        working_directory: Workspace-relative directory for the command
        timeout_seconds: Install timeout
    """

    manifest: SourceFile
    command: Tuple[str, ...]
    working_directory: str = "."
    timeout_seconds: float = 120


@dataclass(frozen=True)
class ExecutionResult:
    """
    Result of a completed run.

    Attributes:
        status: Terminal outcome
        stdout: Captured standard output
        stderr: Captured standard error (compiler diagnostics or install log
            for compile/dependency failures)
        exit_code: Process exit code, -1 when the program never ran
        timed_out: True when the wall-clock limit was hit
        duration_ms: Run step duration in milliseconds
        error: Human-readable error message, None on success
        session_id: Session the result belongs to
        metadata: Caller metadata, returned verbatim
        output_truncated: True when output exceeded the run's cap
    """

    status: ExecutionStatus
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool
    duration_ms: float
    error: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    output_truncated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def raise_for_status(self) -> None:
        """
        Raise the error matching a non-success outcome.

        For callers that prefer exceptions over inspecting the status.
        """
        if self.status == ExecutionStatus.SUCCESS:
            return
        if self.status == ExecutionStatus.COMPILE_ERROR:
            raise CompileError(self.stderr, exit_code=self.exit_code)
        if self.status == ExecutionStatus.DEPENDENCY_ERROR:
            raise DependencyInstallError(self.error or "Dependency installation failed", self.stderr)
        if self.status == ExecutionStatus.RUNTIME_ERROR:
            raise ProgramRuntimeError(self.stderr, self.exit_code)
        if self.status == ExecutionStatus.TIMEOUT:
            raise ExecutionTimeoutError(round(self.duration_ms / 1000, 3))
        if self.status == ExecutionStatus.RESOURCE_LIMIT:
            raise ResourceLimitError(self.error or "Resource limit exceeded")
        if self.status == ExecutionStatus.INTERNAL_ERROR:
            raise InternalSandboxError(self.error or "Internal execution error")
        raise EngineError(self.error or self.status.value, {"status": self.status.value})

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "session_id": self.session_id,
            "metadata": self.metadata,
            "output_truncated": self.output_truncated,
        }


@dataclass(frozen=True)
class OutputEvent:
    """One event of a streaming run."""

    type: OutputEventType
    data: str = ""

    @classmethod
    def stdout(cls, data: str) -> "OutputEvent":
        return cls(OutputEventType.STDOUT, data)

    @classmethod
    def stderr(cls, data: str) -> "OutputEvent":
        return cls(OutputEventType.STDERR, data)

    @classmethod
    def error(cls, message: str) -> "OutputEvent":
        return cls(OutputEventType.ERROR, message)

    @classmethod
    def end(cls) -> "OutputEvent":
        return cls(OutputEventType.END, "")

    @property
    def is_terminal(self) -> bool:
        return self.type == OutputEventType.END

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "data": self.data}


@dataclass(frozen=True)
class TestCase:
    """A grading fixture."""

    __test__ = False

    input: str
    expected_output: str
    is_hidden: bool = False


@dataclass(frozen=True)
class TestResult:
    """
    Outcome of one test case, safe to return to the untrusted caller.

    For hidden cases input is "(hidden)" and actual_output is
    "(correct)" or "(incorrect)".
    """

    __test__ = False

    index: int
    passed: bool
    input: str
    actual_output: str
    error: Optional[str] = None
    is_hidden: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "passed": self.passed,
            "input": self.input,
            "actual_output": self.actual_output,
            "error": self.error,
            "is_hidden": self.is_hidden,
        }


@dataclass(frozen=True)
class GradingRequest:
    """
    Request to grade a program against test cases.

    Attributes:
        language: Language id or alias
        files: Program files
        main_file: Entry file
        test_cases: Ordered fixtures
        dependencies: Package name to version
        metadata: Opaque caller data returned verbatim
    """

    language: str
    files: Tuple[SourceFile, ...]
    main_file: str
    test_cases: Tuple[TestCase, ...]
    dependencies: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.test_cases:
            raise ValidationError("At least one test case is required")
        if self.main_file not in {f.name for f in self.files}:
            raise ValidationError(f"main_file '{self.main_file}' is not among the files")


@dataclass(frozen=True)
class GradingResult:
    """Aggregated grading outcome."""

    results: Tuple[TestResult, ...]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def passed_count(self) -> int:
        return sum(1 for r in self.results if r.passed)

    @property
    def total_count(self) -> int:
        return len(self.results)

    @property
    def all_passed(self) -> bool:
        return self.total_count > 0 and self.passed_count == self.total_count

    @property
    def score_percent(self) -> int:
        if not self.results:
            return 0
        return round(self.passed_count / self.total_count * 100)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "passed_count": self.passed_count,
            "total_count": self.total_count,
            "all_passed": self.all_passed,
            "score_percent": self.score_percent,
            "metadata": self.metadata,
        }
