"""
Execution DTOs

Data transfer objects for the calling services. Payloads may use either
snake_case or camelCase keys (sessionId, mainFile, testCases, ...).
"""

from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from execution_engine.application.services.language_registry import LanguageRegistry
from execution_engine.domain.errors import ValidationError
from execution_engine.domain.value_objects import (
    ExecutionRequest,
    ExecutionResult,
    GradingRequest,
    GradingResult,
    SourceFile,
    TestCase,
    TestResult,
)


class _PayloadModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SourceFileDTO(_PayloadModel):
    name: str = Field(..., description="Workspace-relative path")
    content: str = Field(default="", description="File content")

    def to_domain(self) -> SourceFile:
        return SourceFile(name=self.name, content=self.content)


def _program_files(
    language: str,
    files: List[SourceFileDTO],
    code: Optional[str],
    main_file: Optional[str],
    languages: Optional[LanguageRegistry],
) -> Tuple[Tuple[SourceFile, ...], str]:
    """Resolve the (files, main_file) pair of a payload."""
    if code is not None:
        if main_file is None:
            if languages is None:
                raise ValidationError("A language registry is required to name a single-file program")
            main_file = languages.resolve(language).entry_file_for(code)
        return (SourceFile(name=main_file, content=code),), main_file

    domain_files = tuple(f.to_domain() for f in files)
    if main_file is None:
        if len(domain_files) != 1:
            raise ValidationError("main_file is required for multi-file programs")
        main_file = domain_files[0].name
    return domain_files, main_file


def _split_program(data: Any) -> Any:
    """Accept `program` as either a code string or a list of files."""
    if not isinstance(data, dict) or "program" not in data:
        return data
    data = dict(data)
    program = data.pop("program")
    if isinstance(program, str):
        data.setdefault("code", program)
    else:
        data.setdefault("files", program)
    return data


class ExecuteRequestDTO(_PayloadModel):
    """
    Request DTO for code execution.

    Maps the caller payload to the domain ExecutionRequest value object.
    Either `files` (with `main_file`) or a single `code` string is required.
    """

    session_id: str = Field(..., description="Caller-supplied session identifier")
    language: str = Field(..., description="Language id or alias")
    files: List[SourceFileDTO] = Field(default_factory=list)
    code: Optional[str] = Field(default=None, description="Single-file program")
    main_file: Optional[str] = Field(default=None, description="Entry file name")
    dependencies: Dict[str, str] = Field(default_factory=dict)
    stdin: Optional[str] = None
    limits: Dict[str, Any] = Field(default_factory=dict, description="ResourceLimit overrides")
    profile: Optional[str] = Field(default=None, description="Named limit profile")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _accept_program(cls, data: Any) -> Any:
        return _split_program(data)

    @model_validator(mode="after")
    def _check_program(self) -> "ExecuteRequestDTO":
        if (self.code is None) == (not self.files):
            raise ValueError("Exactly one of 'code' or 'files' must be provided")
        return self

    def to_domain(self, languages: Optional[LanguageRegistry] = None) -> ExecutionRequest:
        """
        Convert DTO to domain ExecutionRequest value object.

        Args:
            languages: Used to name the entry file of a `code` payload

        Raises:
            ValidationError: If the payload does not describe a runnable program
            UnsupportedLanguageError: If a `code` payload names an unknown language
        """
        files, main_file = _program_files(
            self.language, self.files, self.code, self.main_file, languages
        )
        return ExecutionRequest(
            session_id=self.session_id,
            language=self.language,
            files=files,
            main_file=main_file,
            dependencies=dict(self.dependencies),
            stdin=self.stdin,
            limits=dict(self.limits),
            profile=self.profile,
            metadata=dict(self.metadata),
        )


class TestCaseDTO(_PayloadModel):
    __test__ = False

    input: str = ""
    expected_output: str = ""
    is_hidden: bool = False

    def to_domain(self) -> TestCase:
        return TestCase(
            input=self.input,
            expected_output=self.expected_output,
            is_hidden=self.is_hidden,
        )


class GradeRequestDTO(_PayloadModel):
    """Request DTO for grading a program against test cases."""

    language: str
    files: List[SourceFileDTO] = Field(default_factory=list)
    code: Optional[str] = None
    main_file: Optional[str] = None
    test_cases: List[TestCaseDTO] = Field(default_factory=list)
    dependencies: Dict[str, str] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _accept_program(cls, data: Any) -> Any:
        return _split_program(data)

    @model_validator(mode="after")
    def _check_program(self) -> "GradeRequestDTO":
        if (self.code is None) == (not self.files):
            raise ValueError("Exactly one of 'code' or 'files' must be provided")
        return self

    def to_domain(self, languages: Optional[LanguageRegistry] = None) -> GradingRequest:
        """
        Raises:
            ValidationError: If there are no test cases or no runnable program
        """
        files, main_file = _program_files(
            self.language, self.files, self.code, self.main_file, languages
        )
        return GradingRequest(
            language=self.language,
            files=files,
            main_file=main_file,
            test_cases=tuple(case.to_domain() for case in self.test_cases),
            dependencies=dict(self.dependencies),
            metadata=dict(self.metadata),
        )


class SendInputDTO(_PayloadModel):
    session_id: str
    text: str
    newline: bool = True


class ExecutionResultDTO(_PayloadModel):
    """
    Response DTO for a completed run.

    Maps domain ExecutionResult to the caller payload.
    """

    status: str
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool
    duration_ms: float
    error: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    output_truncated: bool = False

    @classmethod
    def from_domain(cls, result: ExecutionResult) -> "ExecutionResultDTO":
        return cls(**result.to_dict())


class TestResultDTO(_PayloadModel):
    __test__ = False

    index: int
    passed: bool
    input: str
    actual_output: str
    error: Optional[str] = None
    is_hidden: bool = False

    @classmethod
    def from_domain(cls, result: TestResult) -> "TestResultDTO":
        return cls(**result.to_dict())


class GradingResultDTO(_PayloadModel):
    """Response DTO for a grading run."""

    results: List[TestResultDTO]
    passed_count: int
    total_count: int
    all_passed: bool
    score_percent: int
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_domain(cls, result: GradingResult) -> "GradingResultDTO":
        return cls(
            results=[TestResultDTO.from_domain(r) for r in result.results],
            passed_count=result.passed_count,
            total_count=result.total_count,
            all_passed=result.all_passed,
            score_percent=result.score_percent,
            metadata=dict(result.metadata),
        )

