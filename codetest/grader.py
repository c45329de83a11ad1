"""
Grader module for running test cases and validating submissions.

Provides the Grader class which compiles a submission once, fans its test
cases out to the shared execution pool and classifies every outcome.
"""

import time
from concurrent.futures import wait
from typing import Any, Dict, List, Optional

from .config_loader import EngineConfig
from .errors import GradingCancelled, InternalExecutionError, RequestValidationError
from .eventlog import EventLog
from .languages import get_language
from .models import ErrorKind, SubmissionSpec, TestCase, TestCaseOutcome
from .pool import CancelToken, ExecutionPool
from .sandbox import Build, RunResult, Sandbox, SUCCESS, TIMEOUT, MEMORY_ERROR, CANCELLED


def _summarize_error(stderr: str) -> str:
    """Keep the last non-empty line of an error stream (the actual error)."""
    lines = [line for line in (stderr or "").strip().splitlines() if line.strip()]
    return lines[-1].strip()[:200] if lines else ""


class Grader:
    """Handles test case execution and output validation."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        sandbox: Optional[Sandbox] = None,
        pool: Optional[ExecutionPool] = None,
        event_log: Optional[EventLog] = None
    ):
        self.config = config or EngineConfig.default()
        self.sandbox = sandbox or Sandbox(self.config)
        self.pool = pool or ExecutionPool(self.config.pool_size)
        self.event_log = event_log

    def _log(self, event: str, details: str = ""):
        if self.event_log is not None:
            self.event_log.log(event, details)

    # ===== CHECKER =====

    @staticmethod
    def _exact_match(actual_output: str, expected_output: str) -> bool:
        """
        Exact string equality after stripping trailing whitespace and newlines.

        No numeric tolerance and no structural comparison is applied.
        """
        return (actual_output or "").rstrip() == (expected_output or "").rstrip()

    # ===== TEST EXECUTION =====

    def grade(self, submission: SubmissionSpec, cancel: Optional[CancelToken] = None) -> List[TestCaseOutcome]:
        """
        Run all test cases of a submission and return one outcome per case.

        Args:
            submission: Language, code and test cases to run
            cancel: Token that cancels every outstanding run of this submission

        Returns:
            Outcomes in the same order as submission.test_cases

        Raises:
            UnsupportedLanguage: If the language is unknown
            GradingCancelled: If the token was cancelled before grading finished
        """
        test_cases = list(submission.test_cases)
        if not test_cases:
            return []

        get_language(submission.language)
        time_limit_ms = submission.time_limit_ms or self.config.default_time_limit_ms
        memory_limit_mb = submission.memory_limit_mb or self.config.default_memory_limit_mb

        try:
            build = self.sandbox.compile(submission.language, submission.code)
        except InternalExecutionError as e:
            self._log("SANDBOX_ERROR", f"Compile phase: {e}")
            return [
                self._failed_outcome(order, tc, ErrorKind.INTERNAL_EXECUTION_ERROR, str(e))
                for order, tc in enumerate(test_cases, start=1)
            ]

        try:
            if not build.ok:
                self._log("COMPILE_FAILED", f"Language: {submission.language}, Cases: {len(test_cases)}")
                return [
                    self._failed_outcome(order, tc, ErrorKind.COMPILATION_ERROR, build.message)
                    for order, tc in enumerate(test_cases, start=1)
                ]

            futures = [
                self.pool.submit(
                    self._run_case, build, order, tc, time_limit_ms, memory_limit_mb, cancel,
                    cancel=cancel
                )
                for order, tc in enumerate(test_cases, start=1)
            ]
            wait(futures)

            if cancel is not None and cancel.cancelled:
                self._log("GRADING_CANCELLED", f"Language: {submission.language}, Cases: {len(test_cases)}")
                raise GradingCancelled("Grading was cancelled before all test cases finished")

            outcomes = [future.result() for future in futures]
        finally:
            self.sandbox.cleanup(build)

        passed = sum(1 for outcome in outcomes if outcome.passed)
        self._log("GRADING_DONE", f"Language: {submission.language}, Passed: {passed}/{len(outcomes)}")
        return outcomes

    def _run_case(
        self,
        build: Build,
        order: int,
        test_case: TestCase,
        time_limit_ms: int,
        memory_limit_mb: int,
        cancel: Optional[CancelToken]
    ) -> TestCaseOutcome:
        try:
            result = self.sandbox.execute(build, test_case.input, time_limit_ms, memory_limit_mb, cancel)
        except Exception as e:
            self._log("SANDBOX_ERROR", f"Test case {test_case.id}: {e}")
            return self._failed_outcome(order, test_case, ErrorKind.INTERNAL_EXECUTION_ERROR,
                                        f"Execution error: {e}")
        return self._classify(order, test_case, result, time_limit_ms)

    def _classify(self, order: int, test_case: TestCase, result: RunResult, time_limit_ms: int) -> TestCaseOutcome:
        error_kind = None
        error_message = None
        passed = False

        if result.status == SUCCESS:
            passed = self._exact_match(result.stdout, test_case.expected_output)
            if not passed:
                error_kind = ErrorKind.WRONG_ANSWER
                error_message = "Output does not match expected output"
        elif result.status == TIMEOUT:
            error_kind = ErrorKind.TIMEOUT_ERROR
            error_message = f"Time limit exceeded ({time_limit_ms} ms)"
        elif result.status == MEMORY_ERROR:
            error_kind = ErrorKind.RUNTIME_ERROR
            error_message = "Memory limit exceeded"
        elif result.status == CANCELLED:
            error_kind = ErrorKind.INTERNAL_EXECUTION_ERROR
            error_message = "Execution cancelled"
        else:
            error_kind = ErrorKind.RUNTIME_ERROR
            error_message = _summarize_error(result.stderr) or f"Exit code: {result.exit_code}"

        return TestCaseOutcome(
            test_case_id=test_case.id,
            order=order,
            input=test_case.input,
            expected_output=test_case.expected_output,
            actual_output=result.stdout.rstrip(),
            passed=passed,
            runtime_ms=round(result.runtime_ms, 2),
            memory_kb=result.memory_kb,
            error_kind=error_kind,
            error_message=error_message,
            stdout=result.stdout,
            stderr=result.stderr
        )

    @staticmethod
    def _failed_outcome(order: int, test_case: TestCase, error_kind: ErrorKind, message: str) -> TestCaseOutcome:
        return TestCaseOutcome(
            test_case_id=test_case.id,
            order=order,
            input=test_case.input,
            expected_output=test_case.expected_output,
            actual_output="",
            passed=False,
            error_kind=error_kind,
            error_message=message,
            stderr=message if error_kind == ErrorKind.COMPILATION_ERROR else ""
        )

    # ===== EXECUTE REQUEST =====

    def validate_request(self, request: Dict[str, Any]):
        """
        Validate an execute request.

        Raises:
            RequestValidationError: Listing every problem found
        """
        errors = []
        if not isinstance(request, dict):
            raise RequestValidationError(["Request cannot be null"])

        language = request.get("language")
        code = request.get("code")
        test_cases = request.get("testCases")

        if not language or not str(language).strip():
            errors.append("Language is required")
        if not code or not str(code).strip():
            errors.append("Code is required")
        elif len(code) > self.config.max_code_length:
            errors.append(f"Code exceeds maximum length of {self.config.max_code_length:,} characters")

        if not test_cases:
            errors.append("At least one test case is required")
        elif len(test_cases) > self.config.max_test_cases:
            errors.append(f"Maximum {self.config.max_test_cases} test cases allowed per execution")
        elif not isinstance(test_cases, list) or not all(isinstance(tc, dict) for tc in test_cases):
            errors.append("Each test case must be an object with input and expectedOutput")

        if errors:
            raise RequestValidationError(errors)

    def execute(self, request: Dict[str, Any], cancel: Optional[CancelToken] = None) -> Dict[str, Any]:
        """
        Execute code in a language against request-supplied test cases.

        Args:
            request: {"language", "code", "testCases": [{"input", "expectedOutput"}]}

        Returns:
            {"results": [...], "error": str or None, "executionTimeMs": float}
        """
        self.validate_request(request)
        get_language(request["language"])

        test_cases = [
            TestCase(
                id=tc.get("id", index),
                problem_id=request.get("problemId", 0),
                input=tc.get("input") or "",
                expected_output=tc.get("expectedOutput") or ""
            )
            for index, tc in enumerate(request["testCases"], start=1)
        ]
        submission = SubmissionSpec(
            language=request["language"],
            code=request["code"],
            test_cases=test_cases,
            time_limit_ms=request.get("timeLimitMs"),
            memory_limit_mb=request.get("memoryLimitMb")
        )

        start_time = time.monotonic()
        outcomes = self.grade(submission, cancel)
        execution_time_ms = (time.monotonic() - start_time) * 1000.0

        error = None
        if outcomes and outcomes[0].error_kind in (ErrorKind.COMPILATION_ERROR, ErrorKind.INTERNAL_EXECUTION_ERROR) \
                and all(o.error_kind == outcomes[0].error_kind for o in outcomes):
            error = outcomes[0].error_message

        return {
            "results": [
                {
                    "input": o.input,
                    "output": o.actual_output,
                    "expected": o.expected_output,
                    "passed": o.passed,
                    "stdout": o.stdout,
                    "stderr": o.stderr,
                    "runtimeMs": o.runtime_ms,
                    "memoryMb": round(o.memory_kb / 1024.0, 2),
                    "error": o.error_message,
                    "errorKind": o.error_kind.value if o.error_kind else None,
                }
                for o in outcomes
            ],
            "error": error,
            "executionTimeMs": round(execution_time_ms, 2),
        }

    # ===== UTILITY METHODS =====

    def format_test_results(self, outcomes: List[TestCaseOutcome], show_details: bool = False) -> str:
        """
        Format outcomes for terminal display.

        Args:
            outcomes: Result of grade()
            show_details: If True, show error messages and output comparison for failed tests
        """
        labels = {
            ErrorKind.WRONG_ANSWER: "FAILED (wrong answer)",
            ErrorKind.TIMEOUT_ERROR: "FAILED (time limit exceeded)",
            ErrorKind.RUNTIME_ERROR: "FAILED (runtime error)",
            ErrorKind.COMPILATION_ERROR: "FAILED (compilation error)",
            ErrorKind.INTERNAL_EXECUTION_ERROR: "ERROR (sandbox failure, not counted against you)",
        }
        lines = [f"Running {len(outcomes)} test cases..."]

        for outcome in outcomes:
            if outcome.passed:
                lines.append(f"  Test {outcome.order}: PASSED ({outcome.runtime_ms:.0f} ms)")
                continue
            lines.append(f"  Test {outcome.order}: {labels[outcome.error_kind]}")
            if show_details:
                if outcome.error_message and outcome.error_kind != ErrorKind.WRONG_ANSWER:
                    lines.append(f"    Details: {outcome.error_message.strip()[:200]}")
                if outcome.error_kind == ErrorKind.WRONG_ANSWER:
                    lines.append(f"    Your output: {repr(outcome.actual_output)[:100]}")
                    lines.append(f"    Expected:    {repr(outcome.expected_output.rstrip())[:100]}")

        passed = sum(1 for outcome in outcomes if outcome.passed)
        lines.append("")
        lines.append(f"Result: {passed}/{len(outcomes)} passed")
        return "\n".join(lines)
