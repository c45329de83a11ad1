"""
Tests for grader module.

Uses a mocked sandbox to test:
- Outcome ordering under concurrent execution
- Compile failure short-circuit
- Classification of every run status
- Cancellation and execute request validation
"""

import random
import time
import pytest
from pathlib import Path
from unittest.mock import Mock

# Add parent directory to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from codetest.config_loader import EngineConfig
from codetest.errors import (
    GradingCancelled, InternalExecutionError, RequestValidationError, UnsupportedLanguage
)
from codetest.eventlog import EventLog
from codetest.grader import Grader
from codetest.languages import get_language
from codetest.models import ErrorKind, SubmissionSpec, TestCase
from codetest.pool import CancelToken, ExecutionPool
from codetest.sandbox import Build, RunResult


def _cases(*pairs):
    return [TestCase(id=i, problem_id=1, input=inp, expected_output=out)
            for i, (inp, out) in enumerate(pairs, start=1)]


def _result(status="success", stdout="", stderr="", exit_code=0):
    return RunResult(status, stdout, stderr, exit_code, 12.5, 2048)


@pytest.fixture
def pool():
    with ExecutionPool(4) as pool:
        yield pool


@pytest.fixture
def sandbox():
    sandbox = Mock()
    sandbox.compile.return_value = Build(get_language("python"), Path("/nonexistent"), ok=True)
    return sandbox


@pytest.fixture
def grader(sandbox, pool):
    return Grader(EngineConfig.default(), sandbox, pool, EventLog())


class TestGrading:
    """Test grading submissions."""

    def test_outcomes_in_input_order(self, grader, sandbox):
        """Test that outcomes keep input order when runs finish out of order."""
        def echo(build, stdin, *args):
            time.sleep(random.uniform(0, 0.05))
            return _result(stdout=stdin)

        sandbox.execute.side_effect = echo
        cases = _cases(*[(str(i), str(i)) for i in range(12)])

        outcomes = grader.grade(SubmissionSpec("python", "print()", cases))

        assert [o.test_case_id for o in outcomes] == [c.id for c in cases]
        assert [o.order for o in outcomes] == list(range(1, 13))
        assert all(o.passed for o in outcomes)

    def test_compile_failure_runs_nothing(self, grader, sandbox):
        """Test that a compile error fails every case without executing any."""
        sandbox.compile.return_value = Build(get_language("cpp"), Path("/nonexistent"), ok=False,
                                             message="main.cpp:1: error: expected ';'")
        cases = _cases(("1", "1"), ("2", "2"), ("3", "3"))

        outcomes = grader.grade(SubmissionSpec("cpp", "int main(", cases))

        assert len(outcomes) == 3
        assert all(o.error_kind == ErrorKind.COMPILATION_ERROR for o in outcomes)
        assert len({o.error_message for o in outcomes}) == 1
        assert not any(o.passed for o in outcomes)
        sandbox.execute.assert_not_called()
        sandbox.cleanup.assert_called_once()
        assert grader.event_log.events("COMPILE_FAILED")

    def test_empty_test_cases(self, grader, sandbox):
        """Test that no test cases means no outcomes and no compile."""
        assert grader.grade(SubmissionSpec("python", "print()", [])) == []
        sandbox.compile.assert_not_called()

    def test_unsupported_language(self, grader):
        """Test that unknown languages are rejected."""
        with pytest.raises(UnsupportedLanguage):
            grader.grade(SubmissionSpec("cobol", "DISPLAY 1", _cases(("", "1"))))

    def test_build_cleaned_up(self, grader, sandbox):
        """Test that the build directory is removed after grading."""
        sandbox.execute.return_value = _result(stdout="1")
        grader.grade(SubmissionSpec("python", "print(1)", _cases(("", "1"))))
        sandbox.cleanup.assert_called_once()


class TestClassification:
    """Test mapping run results to outcomes."""

    @pytest.mark.parametrize("result, kind", [
        (_result("timeout", exit_code=-9), ErrorKind.TIMEOUT_ERROR),
        (_result("runtime_error", stderr="Traceback\nZeroDivisionError: division by zero", exit_code=1),
         ErrorKind.RUNTIME_ERROR),
        (_result("memory_error", exit_code=-9), ErrorKind.RUNTIME_ERROR),
        (_result("success", stdout="4\n"), ErrorKind.WRONG_ANSWER),
    ])
    def test_failure_kinds(self, grader, sandbox, result, kind):
        """Test that each failing status maps to its error kind."""
        sandbox.execute.return_value = result

        outcome = grader.grade(SubmissionSpec("python", "...", _cases(("", "3"))))[0]

        assert not outcome.passed
        assert outcome.error_kind == kind
        assert outcome.error_message

    def test_runtime_error_message_is_last_line(self, grader, sandbox):
        """Test that the reported error is the last traceback line."""
        sandbox.execute.return_value = _result(
            "runtime_error", stderr="Traceback (most recent call last):\n  ...\nZeroDivisionError: division by zero\n",
            exit_code=1
        )
        outcome = grader.grade(SubmissionSpec("python", "1/0", _cases(("", ""))))[0]

        assert outcome.error_message == "ZeroDivisionError: division by zero"

    def test_trailing_whitespace_ignored(self, grader, sandbox):
        """Test that trailing whitespace and newlines do not matter."""
        sandbox.execute.return_value = _result(stdout="1 2 3  \n\n")

        outcome = grader.grade(SubmissionSpec("python", "...", _cases(("", "1 2 3\n"))))[0]

        assert outcome.passed
        assert outcome.error_kind is None
        assert outcome.actual_output == "1 2 3"

    def test_leading_whitespace_matters(self, grader, sandbox):
        """Test that comparison is otherwise literal."""
        sandbox.execute.return_value = _result(stdout=" 3\n")

        outcome = grader.grade(SubmissionSpec("python", "...", _cases(("", "3"))))[0]

        assert not outcome.passed
        assert outcome.error_kind == ErrorKind.WRONG_ANSWER

    def test_infrastructure_error_does_not_abort_siblings(self, grader, sandbox):
        """Test that a sandbox failure only affects its own case."""
        def execute(build, stdin, *args):
            if stdin == "bad":
                raise InternalExecutionError("sandbox setup failed")
            return _result(stdout=stdin)

        sandbox.execute.side_effect = execute

        outcomes = grader.grade(SubmissionSpec("python", "...", _cases(("a", "a"), ("bad", "bad"), ("c", "c"))))

        assert [o.passed for o in outcomes] == [True, False, True]
        assert outcomes[1].error_kind == ErrorKind.INTERNAL_EXECUTION_ERROR

    def test_compile_infrastructure_error(self, grader, sandbox):
        """Test that a missing toolchain is reported as an internal error."""
        sandbox.compile.side_effect = InternalExecutionError("'g++' is not installed")

        outcomes = grader.grade(SubmissionSpec("cpp", "...", _cases(("", ""), ("", ""))))

        assert all(o.error_kind == ErrorKind.INTERNAL_EXECUTION_ERROR for o in outcomes)
        sandbox.execute.assert_not_called()


class TestCancellation:
    """Test submission-level cancellation."""

    def test_cancelled_token_raises(self, grader, sandbox):
        """Test that grading with a cancelled token raises GradingCancelled."""
        sandbox.execute.return_value = _result(stdout="1")
        token = CancelToken()
        token.cancel()

        with pytest.raises(GradingCancelled):
            grader.grade(SubmissionSpec("python", "...", _cases(("", "1"), ("", "1"))), token)

        sandbox.cleanup.assert_called_once()
        assert grader.event_log.events("GRADING_CANCELLED")

    def test_cancel_during_grading(self, sandbox):
        """Test that cancelling mid-grading stops queued runs."""
        started = []

        def slow(build, stdin, time_limit_ms, memory_limit_mb, cancel):
            started.append(stdin)
            token.cancel()
            return _result("cancelled")

        sandbox.execute.side_effect = slow
        token = CancelToken()

        with ExecutionPool(1) as single:
            grader = Grader(EngineConfig.default(), sandbox, single)
            with pytest.raises(GradingCancelled):
                grader.grade(SubmissionSpec("python", "...", _cases(*[(str(i), "") for i in range(5)])), token)

        assert len(started) < 5


class TestExecuteRequest:
    """Test the execute request shape."""

    def test_response_shape(self, grader, sandbox):
        """Test per-case results and timing of an execute request."""
        sandbox.execute.return_value = _result(stdout="3\n")

        response = grader.execute({
            "language": "python",
            "code": "print(3)",
            "testCases": [{"input": "", "expectedOutput": "3"}, {"input": "", "expectedOutput": "4"}],
        })

        assert response["error"] is None
        assert response["executionTimeMs"] >= 0
        first, second = response["results"]
        assert first["passed"] and first["output"] == "3" and first["error"] is None
        assert not second["passed"] and second["errorKind"] == "WrongAnswer"
        assert first["memoryMb"] == 2.0

    def test_compile_error_reported_at_top_level(self, grader, sandbox):
        """Test that a compile failure is also the response error."""
        sandbox.compile.return_value = Build(get_language("java"), Path("/nonexistent"), ok=False,
                                             message="Solution.java:1: error")
        response = grader.execute({
            "language": "java", "code": "class", "testCases": [{"input": "", "expectedOutput": ""}],
        })

        assert response["error"] == "Solution.java:1: error"

    @pytest.mark.parametrize("request_data, message", [
        ({"code": "x", "testCases": [{}]}, "Language is required"),
        ({"language": "python", "code": "  ", "testCases": [{}]}, "Code is required"),
        ({"language": "python", "code": "x" * 10001, "testCases": [{}]}, "maximum length"),
        ({"language": "python", "code": "x", "testCases": []}, "At least one test case"),
        ({"language": "python", "code": "x", "testCases": [{}] * 21}, "Maximum 20 test cases"),
        ({"language": "python", "code": "x", "testCases": ["1 2"]}, "must be an object"),
    ])
    def test_validation(self, grader, sandbox, request_data, message):
        """Test that invalid requests are rejected before compiling."""
        with pytest.raises(RequestValidationError) as excinfo:
            grader.execute(request_data)

        assert message in str(excinfo.value)
        sandbox.compile.assert_not_called()

    def test_validation_collects_all_errors(self, grader):
        """Test that every problem is listed."""
        with pytest.raises(RequestValidationError) as excinfo:
            grader.execute({})

        assert len(excinfo.value.errors) == 3

    def test_unsupported_language(self, grader):
        """Test that unknown languages are rejected."""
        with pytest.raises(UnsupportedLanguage):
            grader.execute({"language": "cobol", "code": "x", "testCases": [{}]})


class TestFormatting:
    """Test terminal formatting of outcomes."""

    def test_format_results(self, grader, sandbox):
        """Test the summary line and failure details."""
        sandbox.execute.side_effect = lambda build, stdin, *args: _result(stdout=stdin)
        outcomes = grader.grade(SubmissionSpec("python", "...", _cases(("1", "1"), ("5", "2"))))

        text = grader.format_test_results(outcomes, show_details=True)

        assert "Result: 1/2 passed" in text
        assert "FAILED (wrong answer)" in text
        assert "Expected:    '2'" in text
