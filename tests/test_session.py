"""
Tests for session module.

Tests the attempt lifecycle including:
- Start rules, attempt numbering and concurrent starts
- Submit, end, expire and abandon transitions
- Late submission and breach rules
- Cancellation of in-flight grading on expiry
"""

import threading
import time
import pytest
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import Mock

# Add parent directory to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from codetest.bank import ProblemBank
from codetest.errors import GradingCancelled, InternalExecutionError, InvalidStateTransition, NotFound
from codetest.eventlog import EventLog
from codetest.models import (
    AssignmentStatus, AttemptStatus, CodingTest, ErrorKind, Problem, QuestionSubmission,
    TestCase, TestCaseOutcome, TestQuestion
)
from codetest.session import SessionManager
from codetest.store import Store

START = datetime(2026, 5, 1, 9, 0, 0)
END = datetime(2026, 5, 1, 12, 0, 0)
NOW = datetime(2026, 5, 1, 10, 0, 0)


def _problem(problem_id, cases=3):
    return Problem(
        id=problem_id, title=f"P{problem_id}", statement="",
        test_cases=[TestCase(id=i, problem_id=problem_id, input=str(i), expected_output=str(i))
                    for i in range(1, cases + 1)]
    )


def _outcomes(passed, total, kind=ErrorKind.WRONG_ANSWER):
    return [
        TestCaseOutcome(test_case_id=i, order=i, input="", expected_output="", actual_output="",
                        passed=i <= passed, error_kind=None if i <= passed else kind)
        for i in range(1, total + 1)
    ]


def _coding_test(**overrides):
    values = dict(
        id=1, name="Midterm", start_date=START, end_date=END, duration_minutes=60,
        questions=[
            TestQuestion(id=1, test_id=1, problem_id=10, order=1, marks=10),
            TestQuestion(id=2, test_id=1, problem_id=20, order=2, marks=10),
        ],
    )
    values.update(overrides)
    return CodingTest(**values)


def _manager(test=None, grade_result=None):
    store = Store()
    store.add_test(test or _coding_test())
    grader = Mock()
    grader.grade.return_value = grade_result if grade_result is not None else _outcomes(3, 3)
    bank = ProblemBank([_problem(10), _problem(20)])
    manager = SessionManager(store, grader, bank, EventLog(), clock=lambda: NOW)
    manager.assign(1, 42)
    return manager


def _submission(question_id=1):
    return QuestionSubmission(question_id=question_id, language="python", code="print(input())")


class TestStart:
    """Test starting attempts."""

    def test_start_returns_deadline(self):
        """Test the start response."""
        manager = _manager()

        started = manager.start(1, 42, NOW)

        assert started["attemptNumber"] == 1
        assert started["startedAt"] == NOW
        assert started["deadline"] == NOW + timedelta(minutes=60)
        assert manager.store.get_attempt(started["attemptId"]).status == AttemptStatus.IN_PROGRESS

    def test_deadline_capped_by_end_date(self):
        """Test that the deadline never passes the test's end date."""
        manager = _manager()
        late_start = END - timedelta(minutes=15)

        assert manager.start(1, 42, late_start)["deadline"] == END

    def test_double_start_rejected(self):
        """Test that a second start while in progress fails and creates nothing."""
        manager = _manager()
        manager.start(1, 42, NOW)

        with pytest.raises(InvalidStateTransition):
            manager.start(1, 42, NOW)

        assert len(manager.store.attempts_for(1, 42)) == 1

    def test_concurrent_starts_create_one_attempt(self):
        """Test that racing starts produce exactly one attempt."""
        manager = _manager()
        barrier = threading.Barrier(8)
        successes, failures = [], []

        def start():
            barrier.wait()
            try:
                successes.append(manager.start(1, 42, NOW))
            except InvalidStateTransition as e:
                failures.append(e)

        threads = [threading.Thread(target=start) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(successes) == 1
        assert len(failures) == 7
        assert [a.attempt_number for a in manager.store.attempts_for(1, 42)] == [1]

    def test_not_assigned(self):
        """Test that only assigned users can start."""
        manager = _manager()
        with pytest.raises(InvalidStateTransition, match="not assigned"):
            manager.start(1, 7, NOW)

    @pytest.mark.parametrize("when", [START - timedelta(seconds=1), END, END + timedelta(hours=1)])
    def test_outside_window(self, when):
        """Test that starts outside [start_date, end_date) are rejected."""
        manager = _manager()
        assert not manager.can_start(1, 42, when)
        with pytest.raises(InvalidStateTransition):
            manager.start(1, 42, when)

    def test_start_at_start_date(self):
        """Test that the window start is inclusive."""
        assert _manager().start(1, 42, START)["attemptNumber"] == 1

    def test_single_attempt_policy(self):
        """Test that a finished attempt blocks retakes by default."""
        manager = _manager()
        attempt_id = manager.start(1, 42, NOW)["attemptId"]
        manager.end(attempt_id, NOW)

        with pytest.raises(InvalidStateTransition, match="already been attempted"):
            manager.start(1, 42, NOW)

    def test_multiple_attempts_numbering(self):
        """Test attempt numbers and the max attempts limit."""
        manager = _manager(_coding_test(allow_multiple_attempts=True, max_attempts=2))

        first = manager.start(1, 42, NOW)
        manager.end(first["attemptId"], NOW)
        second = manager.start(1, 42, NOW)
        manager.end(second["attemptId"], NOW)

        assert (first["attemptNumber"], second["attemptNumber"]) == (1, 2)
        with pytest.raises(InvalidStateTransition, match="Maximum attempts"):
            manager.start(1, 42, NOW)

    def test_single_attempt_ignores_max_attempts(self):
        """Test that the attempt cap only applies to tests allowing retakes."""
        manager = _manager(_coding_test(allow_multiple_attempts=False, max_attempts=0))

        assert manager.can_start(1, 42, NOW)
        assert manager.start(1, 42, NOW)["attemptNumber"] == 1

    def test_unknown_test(self):
        """Test that unknown tests raise NotFound."""
        with pytest.raises(NotFound):
            _manager().start(99, 42, NOW)


class TestSubmit:
    """Test submitting attempts."""

    def test_submit_scores_and_rolls_up(self):
        """Test partial credit and unattempted questions."""
        manager = _manager(grade_result=_outcomes(1, 3))
        attempt_id = manager.start(1, 42, NOW)["attemptId"]

        result = manager.submit(attempt_id, [_submission(1)], NOW + timedelta(minutes=30, seconds=59))
        attempt = manager.store.get_attempt(attempt_id)

        assert result.total_score == 3
        assert result.max_score == 20
        assert result.percentage == 15.0
        assert result.passed is False
        assert attempt.status == AttemptStatus.SUBMITTED
        assert attempt.submitted_at == attempt.completed_at
        assert attempt.time_spent_minutes == 30
        assert [q.question_id for q in result.questions] == [1]
        assert result.questions[0].error_kind == ErrorKind.WRONG_ANSWER

    def test_grader_receives_problem_cases(self):
        """Test that the question's problem test cases are graded."""
        manager = _manager()
        attempt_id = manager.start(1, 42, NOW)["attemptId"]

        manager.submit(attempt_id, [_submission(2)], NOW)

        submission = manager.grader.grade.call_args[0][0]
        assert submission.language == "python"
        assert [tc.problem_id for tc in submission.test_cases] == [20, 20, 20]

    @pytest.mark.parametrize("offset, late", [(-1, False), (1, True)])
    def test_late_submission(self, offset, late):
        """Test the late flag one second either side of the end date."""
        manager = _manager()
        attempt_id = manager.start(1, 42, NOW)["attemptId"]

        result = manager.submit(attempt_id, [_submission()], END + timedelta(seconds=offset))

        assert result.is_late_submission is late
        assert manager.store.get_attempt(attempt_id).status == AttemptStatus.SUBMITTED

    def test_internal_error_keeps_attempt_in_progress(self):
        """Test that a sandbox failure leaves the attempt untouched."""
        manager = _manager(grade_result=_outcomes(1, 3, ErrorKind.INTERNAL_EXECUTION_ERROR))
        attempt_id = manager.start(1, 42, NOW)["attemptId"]

        with pytest.raises(InternalExecutionError):
            manager.submit(attempt_id, [_submission()], NOW)

        assert manager.store.get_attempt(attempt_id).status == AttemptStatus.IN_PROGRESS
        assert manager.store.results_for(attempt_id) == []

    def test_unknown_question(self):
        """Test that questions outside the test are rejected before grading."""
        manager = _manager()
        attempt_id = manager.start(1, 42, NOW)["attemptId"]

        with pytest.raises(NotFound):
            manager.submit(attempt_id, [_submission(99)], NOW)
        manager.grader.grade.assert_not_called()

    def test_submit_question_then_regrade(self):
        """Test that regrading appends a result and the newest wins."""
        manager = _manager()
        attempt_id = manager.start(1, 42, NOW)["attemptId"]

        manager.grader.grade.return_value = _outcomes(0, 3)
        first = manager.submit_question(attempt_id, _submission(1), NOW)
        manager.grader.grade.return_value = _outcomes(3, 3)
        second = manager.submit_question(attempt_id, _submission(1), NOW)

        attempt = manager.store.get_attempt(attempt_id)
        assert (first.score, second.score) == (0, 10)
        assert len(manager.store.results_for(attempt_id)) == 2
        assert attempt.status == AttemptStatus.IN_PROGRESS
        assert attempt.total_score == 10
        assert manager.attempt_result(attempt_id).total_score == 10


class TestTerminalStates:
    """Test that terminal attempts reject transitions."""

    @pytest.mark.parametrize("finish", ["end", "abandon", "submit"])
    def test_terminal_rejects_everything(self, finish):
        """Test that every mutation of a terminal attempt fails."""
        manager = _manager()
        attempt_id = manager.start(1, 42, NOW)["attemptId"]
        if finish == "submit":
            manager.submit(attempt_id, [_submission()], NOW)
        else:
            getattr(manager, finish)(attempt_id, now=NOW)
        status = manager.store.get_attempt(attempt_id).status

        for call in (
            lambda: manager.submit(attempt_id, [_submission()], NOW),
            lambda: manager.submit_question(attempt_id, _submission(), NOW),
            lambda: manager.end(attempt_id, NOW),
            lambda: manager.abandon(attempt_id, "again", NOW),
            lambda: manager.record_violation(attempt_id, "tab", NOW),
        ):
            with pytest.raises(InvalidStateTransition):
                call()

        assert manager.store.get_attempt(attempt_id).status == status

    def test_end_records_timing(self):
        """Test completion time and floored minutes."""
        manager = _manager()
        attempt_id = manager.start(1, 42, NOW)["attemptId"]

        manager.end(attempt_id, NOW + timedelta(minutes=5, seconds=59))
        attempt = manager.store.get_attempt(attempt_id)

        assert attempt.status == AttemptStatus.COMPLETED
        assert attempt.time_spent_minutes == 5
        assert attempt.submitted_at is None
        assert attempt.is_late_submission is False


class TestExpire:
    """Test system-driven expiry."""

    def test_expire_only_after_end(self):
        """Test that expiry waits for the end date."""
        manager = _manager()
        attempt_id = manager.start(1, 42, NOW)["attemptId"]

        assert manager.expire(attempt_id, END) is False
        assert manager.expire(attempt_id, END + timedelta(seconds=1)) is True
        assert manager.store.get_attempt(attempt_id).status == AttemptStatus.EXPIRED

    def test_expire_is_idempotent(self):
        """Test that expiring twice changes nothing."""
        manager = _manager()
        attempt_id = manager.start(1, 42, NOW)["attemptId"]
        later = END + timedelta(minutes=1)
        manager.expire(attempt_id, later)
        before = vars(manager.store.get_attempt(attempt_id)).copy()

        assert manager.expire(attempt_id, later + timedelta(hours=1)) is False
        assert vars(manager.store.get_attempt(attempt_id)) == before

    def test_expire_keeps_partial_results(self):
        """Test that results recorded before expiry are rolled up."""
        manager = _manager(grade_result=_outcomes(2, 3))
        attempt_id = manager.start(1, 42, NOW)["attemptId"]
        manager.submit_question(attempt_id, _submission(1), NOW)

        manager.expire(attempt_id, END + timedelta(seconds=1))

        assert manager.store.get_attempt(attempt_id).total_score == 7

    def test_expire_does_not_touch_submitted(self):
        """Test that submitted attempts never expire."""
        manager = _manager()
        attempt_id = manager.start(1, 42, NOW)["attemptId"]
        manager.submit(attempt_id, [_submission()], NOW)

        assert manager.expire(attempt_id, END + timedelta(days=1)) is False
        assert manager.store.get_attempt(attempt_id).status == AttemptStatus.SUBMITTED

    def test_expire_overdue(self):
        """Test bulk expiry of in-progress attempts."""
        manager = _manager()
        manager.assign(1, 43)
        first = manager.start(1, 42, NOW)["attemptId"]
        second = manager.start(1, 43, NOW)["attemptId"]
        manager.end(second, NOW)

        assert manager.expire_overdue(END + timedelta(seconds=1)) == [first]
        assert manager.assignment_status(1, 42, END + timedelta(seconds=1)) == AssignmentStatus.EXPIRED

    def test_expire_cancels_grading(self):
        """Test that expiry cancels a submit that is still grading."""
        manager = _manager()
        attempt_id = manager.start(1, 42, NOW)["attemptId"]
        grading = threading.Event()
        errors = []

        def grade(submission, cancel):
            grading.set()
            while not cancel.cancelled:
                time.sleep(0.01)
            raise GradingCancelled("cancelled")

        manager.grader.grade.side_effect = grade

        def submit():
            try:
                manager.submit(attempt_id, [_submission()], END + timedelta(seconds=2))
            except GradingCancelled as e:
                errors.append(e)

        worker = threading.Thread(target=submit)
        worker.start()
        assert grading.wait(timeout=5)
        assert manager.expire(attempt_id, END + timedelta(seconds=1)) is True
        worker.join(timeout=5)

        assert len(errors) == 1
        assert manager.store.get_attempt(attempt_id).status == AttemptStatus.EXPIRED


class TestBreachRule:
    """Test integrity violations."""

    def test_abandoned_at_limit(self):
        """Test that the third violation abandons with a limit of 3, not the second."""
        manager = _manager(_coding_test(breach_rule_limit=3))
        attempt_id = manager.start(1, 42, NOW)["attemptId"]

        manager.record_violation(attempt_id, "tab_switch", NOW)
        manager.record_violation(attempt_id, "tab_switch", NOW)
        assert manager.store.get_attempt(attempt_id).status == AttemptStatus.IN_PROGRESS

        attempt = manager.record_violation(attempt_id, "tab_switch", NOW)
        assert attempt.status == AttemptStatus.ABANDONED
        assert attempt.violation_count == 3
        assert "Breach limit" in attempt.notes
        assert manager.event_log.events("ATTEMPT_ABANDONED")

    def test_zero_limit_disables_rule(self):
        """Test that a limit of 0 never abandons."""
        manager = _manager(_coding_test(breach_rule_limit=0))
        attempt_id = manager.start(1, 42, NOW)["attemptId"]

        for _ in range(10):
            manager.record_violation(attempt_id, "paste", NOW)

        assert manager.store.get_attempt(attempt_id).status == AttemptStatus.IN_PROGRESS

    def test_rule_not_applied(self):
        """Test that violations are only counted when the rule is off."""
        manager = _manager(_coding_test(apply_breach_rule=False, breach_rule_limit=1))
        attempt_id = manager.start(1, 42, NOW)["attemptId"]

        attempt = manager.record_violation(attempt_id, "paste", NOW)

        assert attempt.status == AttemptStatus.IN_PROGRESS
        assert attempt.violation_count == 1

    def test_explicit_abandon(self):
        """Test abandoning on an explicit signal."""
        manager = _manager()
        attempt_id = manager.start(1, 42, NOW)["attemptId"]

        attempt = manager.abandon(attempt_id, "closed the browser", NOW)

        assert attempt.status == AttemptStatus.ABANDONED
        assert attempt.notes == "closed the browser"


class TestStatus:
    """Test status predicates."""

    def test_status_before_start(self):
        """Test status of an assigned, unstarted test."""
        status = _manager().status(1, 42, NOW)

        assert status == {
            "status": "Assigned",
            "canStart": True,
            "canEnd": False,
            "isExpired": False,
            "timeSpentMinutes": 0,
            "attemptNumber": 0,
            "attemptsUsed": 0,
        }

    def test_status_in_progress(self):
        """Test status while an attempt runs."""
        manager = _manager()
        manager.start(1, 42, NOW)

        status = manager.status(1, 42, NOW + timedelta(minutes=12, seconds=30))

        assert status["status"] == "InProgress"
        assert status["canStart"] is False
        assert status["canEnd"] is True
        assert status["timeSpentMinutes"] == 12
        assert manager.can_end(1, 42)
        assert manager.assignment_status(1, 42, NOW) == AssignmentStatus.IN_PROGRESS

    def test_assignment_status_past_end_date(self):
        """Test that a running attempt past the end date reports Expired before it is expired."""
        manager = _manager()
        attempt_id = manager.start(1, 42, NOW)["attemptId"]

        assert manager.assignment_status(1, 42, END) == AssignmentStatus.IN_PROGRESS
        assert manager.assignment_status(1, 42, END + timedelta(seconds=1)) == AssignmentStatus.EXPIRED
        assert manager.store.get_attempt(attempt_id).status == AttemptStatus.IN_PROGRESS

    def test_status_has_no_side_effects(self):
        """Test that querying after the end date does not expire the attempt."""
        manager = _manager()
        attempt_id = manager.start(1, 42, NOW)["attemptId"]

        status = manager.status(1, 42, END + timedelta(hours=1))

        assert status["isExpired"] is True
        assert manager.is_expired(1, END + timedelta(hours=1))
        assert manager.store.get_attempt(attempt_id).status == AttemptStatus.IN_PROGRESS

    def test_status_not_assigned(self):
        """Test status for a user without an assignment."""
        with pytest.raises(NotFound):
            _manager().status(1, 7, NOW)

    def test_assign_is_idempotent(self):
        """Test that assigning twice keeps one assignment."""
        manager = _manager()
        assert manager.assign(1, 42).id == manager.assign(1, 42).id
        assert len(manager.store.assignments) == 1
