"""
Grade Submission Command

Runs a program once per test case and compares its output with the expected
output. Hidden test cases are redacted before anything leaves this module.
"""

import asyncio
import uuid
from typing import Optional

from execution_engine.application.services.orchestrator import ExecutionOrchestrator
from execution_engine.domain.services import (
    HIDDEN_CORRECT,
    HIDDEN_INCORRECT,
    HIDDEN_INPUT,
    outputs_match,
    status_message,
)
from execution_engine.domain.value_objects import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    GradingRequest,
    GradingResult,
    TestCase,
    TestResult,
)
from execution_engine.infrastructure.logging import get_logger

logger = get_logger(__name__)

_STDERR_STATUSES = (
    ExecutionStatus.RUNTIME_ERROR,
    ExecutionStatus.COMPILE_ERROR,
    ExecutionStatus.DEPENDENCY_ERROR,
)


class GradeSubmissionCommand:
    """
    Command handler for grading a submission.

    Grading flow:
    1. Validate the language once for the whole submission
    2. Run every test case in batch mode with its input as stdin and the
       fixed grading timeout
    3. Compare normalized stdout with the normalized expected output
    4. Redact hidden cases and aggregate the score
    """

    def __init__(
        self,
        orchestrator: ExecutionOrchestrator,
        grading_timeout_seconds: float = 15,
        concurrency: int = 1,
    ):
        """
        Args:
            orchestrator: Runs each test case
            grading_timeout_seconds: Wall-clock limit of every test case
            concurrency: Maximum test cases in flight
        """
        self._orchestrator = orchestrator
        self._timeout = grading_timeout_seconds
        self._concurrency = max(1, concurrency)

    async def execute(self, request: GradingRequest) -> GradingResult:
        """
        Grade a program against its test cases.

        Args:
            request: Grading request value object

        Returns:
            GradingResult with results in test order

        Raises:
            UnsupportedLanguageError: If the language is unknown
        """
        self._orchestrator.languages.resolve(request.language)

        grading_id = uuid.uuid4().hex[:12]
        hidden = sum(1 for case in request.test_cases if case.is_hidden)
        logger.info(
            "Starting grading",
            grading_id=grading_id,
            language=request.language,
            test_count=len(request.test_cases),
            hidden_count=hidden,
        )

        semaphore = asyncio.Semaphore(self._concurrency)

        async def grade(index: int, case: TestCase) -> TestResult:
            async with semaphore:
                return await self._grade_case(request, grading_id, index, case)

        results = await asyncio.gather(
            *(grade(index, case) for index, case in enumerate(request.test_cases))
        )
        grading = GradingResult(results=tuple(results), metadata=dict(request.metadata))

        logger.info(
            "Grading finished",
            grading_id=grading_id,
            passed=grading.passed_count,
            total=grading.total_count,
            score_percent=grading.score_percent,
        )
        return grading

    async def _grade_case(
        self, request: GradingRequest, grading_id: str, index: int, case: TestCase
    ) -> TestResult:
        run_request = ExecutionRequest(
            session_id=f"grade-{grading_id}-{index}-{uuid.uuid4().hex[:8]}",
            language=request.language,
            files=request.files,
            main_file=request.main_file,
            dependencies=dict(request.dependencies),
            stdin=case.input,
            limits={"timeout_seconds": self._timeout},
        )
        try:
            result = await self._orchestrator.run_batch(run_request)
        except Exception as e:
            logger.error(
                "Test case failed with internal error",
                grading_id=grading_id,
                index=index,
                error_type=type(e).__name__,
                exc_info=True,
            )
            status = ExecutionStatus.INTERNAL_ERROR
            return self._build_result(index, case, False, "", status_message(status), status)

        passed = result.succeeded and outputs_match(result.stdout, case.expected_output)
        error = self._error_text(result)
        actual = result.stdout if result.succeeded else (error or result.stdout)

        logger.debug(
            "Test case graded",
            grading_id=grading_id,
            index=index,
            passed=passed,
            status=result.status.value,
            hidden=case.is_hidden,
        )
        return self._build_result(index, case, passed, actual, error, result.status)

    @staticmethod
    def _error_text(result: ExecutionResult) -> Optional[str]:
        if result.succeeded:
            return None
        if result.status in _STDERR_STATUSES and result.stderr.strip():
            return result.stderr.strip()
        return result.error or status_message(result.status)

    @staticmethod
    def _build_result(
        index: int,
        case: TestCase,
        passed: bool,
        actual: str,
        error: Optional[str],
        status: ExecutionStatus,
    ) -> TestResult:
        if case.is_hidden:
            return TestResult(
                index=index,
                passed=passed,
                input=HIDDEN_INPUT,
                actual_output=HIDDEN_CORRECT if passed else HIDDEN_INCORRECT,
                error=None if error is None else status_message(status),
                is_hidden=True,
            )
        return TestResult(
            index=index,
            passed=passed,
            input=case.input,
            actual_output=actual,
            error=error,
            is_hidden=False,
        )
