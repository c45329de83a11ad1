"""
Attempt lifecycle for timed coding tests.

States: Assigned -> InProgress -> Completed | Submitted | Expired | Abandoned.
Terminal states accept no further transitions. All transitions for one
(test, user) pair are serialized; grading runs outside that lock and its
results are only stored if the attempt is still in progress afterwards.
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from .errors import InternalExecutionError, InvalidStateTransition, NotFound
from .eventlog import EventLog
from .grader import Grader
from .models import (
    AssignmentStatus, Attempt, AttemptResult, AttemptStatus, CodingTest, ErrorKind,
    QuestionResult, QuestionSubmission, SubmissionSpec, TestCaseOutcome, TestMode,
    TestQuestion, TestType, Assignment
)
from .pool import CancelToken
from .scoring import is_late_submission, latest_results, score_attempt, score_question
from .store import Store


class SessionManager:
    """Owns every attempt state transition and the can-start/can-end/expired predicates."""

    def __init__(
        self,
        store: Store,
        grader: Grader,
        bank,
        event_log: Optional[EventLog] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Args:
            store: Entity store holding tests, assignments, attempts and results
            grader: Grades question submissions
            bank: Problem source with get_problem(problem_id)
            event_log: Optional log receiving one entry per transition
            clock: Returns the current time when an operation is given no "now"
        """
        self.store = store
        self.grader = grader
        self.bank = bank
        self.event_log = event_log
        self.clock = clock

        self._locks: Dict[Tuple[int, int], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._inflight: Dict[int, List[CancelToken]] = {}
        self._inflight_guard = threading.Lock()

    # ===== HELPER FUNCTIONS =====

    def _log(self, event: str, details: str = ""):
        if self.event_log is not None:
            self.event_log.log(event, details)

    def _key_lock(self, test_id: int, user_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get((test_id, user_id))
            if lock is None:
                lock = self._locks[(test_id, user_id)] = threading.Lock()
            return lock

    def _track(self, attempt_id: int) -> CancelToken:
        token = CancelToken()
        with self._inflight_guard:
            self._inflight.setdefault(attempt_id, []).append(token)
        return token

    def _untrack(self, attempt_id: int, token: CancelToken):
        with self._inflight_guard:
            tokens = self._inflight.get(attempt_id, [])
            if token in tokens:
                tokens.remove(token)
            if not tokens:
                self._inflight.pop(attempt_id, None)

    def _cancel_inflight(self, attempt_id: int):
        with self._inflight_guard:
            tokens = self._inflight.pop(attempt_id, [])
        for token in tokens:
            token.cancel()

    @staticmethod
    def _require_in_progress(attempt: Attempt, action: str):
        if attempt.status != AttemptStatus.IN_PROGRESS:
            raise InvalidStateTransition(
                f"Cannot {action} attempt {attempt.id}: status is {attempt.status.value}",
                status=attempt.status
            )

    def _active_attempt(self, test_id: int, user_id: int) -> Optional[Attempt]:
        for attempt in self.store.attempts_for(test_id, user_id):
            if attempt.status == AttemptStatus.IN_PROGRESS:
                return attempt
        return None

    @staticmethod
    def deadline(attempt: Attempt, test: CodingTest) -> datetime:
        """End of the attempt's time allowance, never past the test's end date."""
        return min(attempt.started_at + timedelta(minutes=test.duration_minutes), test.end_date)

    @staticmethod
    def _minutes_between(start: datetime, end: datetime) -> int:
        return max(0, int((end - start).total_seconds() // 60))

    def _roll_up(self, attempt: Attempt, test: CodingTest):
        total, maximum, percentage, _ = score_attempt(
            self.store.results_for(attempt.id), test.questions, test.passing_percentage
        )
        attempt.total_score = total
        attempt.max_score = maximum
        attempt.percentage = percentage

    def _close(self, attempt: Attempt, test: CodingTest, status: AttemptStatus, now: datetime):
        """Move an in-progress attempt into a terminal state and roll up its results."""
        attempt.status = status
        attempt.completed_at = now
        if status == AttemptStatus.SUBMITTED:
            attempt.submitted_at = now
        attempt.time_spent_minutes = self._minutes_between(attempt.started_at, now)
        if status in (AttemptStatus.SUBMITTED, AttemptStatus.COMPLETED):
            attempt.is_late_submission = is_late_submission(now, test.end_date)
        self._roll_up(attempt, test)
        self._cancel_inflight(attempt.id)

    # ===== ASSIGNMENT =====

    def assign(
        self,
        test_id: int,
        user_id: int,
        assigned_by: int = 0,
        test_type: TestType = TestType.CODING_TEST,
        test_mode: TestMode = TestMode.CODING,
        now: Optional[datetime] = None
    ) -> Assignment:
        """Assign a test to a user. Assigning twice returns the existing assignment."""
        self.store.get_test(test_id)
        with self._key_lock(test_id, user_id):
            existing = self.store.find_assignment(test_id, user_id)
            if existing is not None:
                return existing
            assignment = self.store.add_assignment(
                test_id, user_id, assigned_by, now or self.clock(), test_type, test_mode
            )
        self._log("ASSIGNED", f"Test: {test_id}, User: {user_id}, By: {assigned_by}")
        return assignment

    def assignment_status(self, test_id: int, user_id: int, now: Optional[datetime] = None) -> AssignmentStatus:
        """Assignment status derived from the latest attempt and the test window."""
        now = now or self.clock()
        test = self.store.get_test(test_id)
        attempts = self.store.attempts_for(test_id, user_id)
        if not attempts:
            return AssignmentStatus.EXPIRED if now > test.end_date else AssignmentStatus.ASSIGNED
        latest = attempts[-1]
        if latest.status == AttemptStatus.IN_PROGRESS:
            return AssignmentStatus.EXPIRED if now > test.end_date else AssignmentStatus.IN_PROGRESS
        if latest.status == AttemptStatus.EXPIRED:
            return AssignmentStatus.EXPIRED
        return AssignmentStatus.COMPLETED

    # ===== PREDICATES =====

    def _start_refusal(self, test: CodingTest, user_id: int, now: datetime) -> Optional[str]:
        if self.store.find_assignment(test.id, user_id) is None:
            return f"Test {test.id} is not assigned to user {user_id}"
        if now < test.start_date:
            return f"Test {test.id} has not started yet"
        if now >= test.end_date:
            return f"Test {test.id} has ended"

        attempts = self.store.attempts_for(test.id, user_id)
        if any(a.status == AttemptStatus.IN_PROGRESS for a in attempts):
            return f"An attempt at test {test.id} is already in progress"
        if attempts and not test.allow_multiple_attempts:
            return f"Test {test.id} has already been attempted"
        if test.allow_multiple_attempts and len(attempts) >= test.max_attempts:
            return f"Maximum attempts ({test.max_attempts}) reached for test {test.id}"
        return None

    def can_start(self, test_id: int, user_id: int, now: Optional[datetime] = None) -> bool:
        test = self.store.get_test(test_id)
        return self._start_refusal(test, user_id, now or self.clock()) is None

    def can_end(self, test_id: int, user_id: int) -> bool:
        return self._active_attempt(test_id, user_id) is not None

    def is_expired(self, test_id: int, now: Optional[datetime] = None) -> bool:
        return (now or self.clock()) > self.store.get_test(test_id).end_date

    def status(self, test_id: int, user_id: int, now: Optional[datetime] = None) -> dict:
        """
        Side-effect free status query.

        Returns:
            {status, canStart, canEnd, isExpired, timeSpentMinutes, attemptNumber, attemptsUsed}

        Raises:
            NotFound: If the test does not exist or is not assigned to the user
        """
        now = now or self.clock()
        test = self.store.get_test(test_id)
        if self.store.find_assignment(test_id, user_id) is None:
            raise NotFound(f"Test {test_id} is not assigned to user {user_id}")

        attempts = self.store.attempts_for(test_id, user_id)
        latest = attempts[-1] if attempts else None
        if latest is None:
            status = AttemptStatus.ASSIGNED
            time_spent = 0
        elif latest.status == AttemptStatus.IN_PROGRESS:
            status = latest.status
            time_spent = self._minutes_between(latest.started_at, now)
        else:
            status = latest.status
            time_spent = latest.time_spent_minutes

        return {
            "status": status.value,
            "canStart": self._start_refusal(test, user_id, now) is None,
            "canEnd": latest is not None and latest.status == AttemptStatus.IN_PROGRESS,
            "isExpired": now > test.end_date,
            "timeSpentMinutes": time_spent,
            "attemptNumber": latest.attempt_number if latest else 0,
            "attemptsUsed": len(attempts),
        }

    # ===== TRANSITIONS =====

    def start(self, test_id: int, user_id: int, now: Optional[datetime] = None) -> dict:
        """
        Start a new attempt.

        Returns:
            {attemptId, attemptNumber, startedAt, deadline}

        Raises:
            InvalidStateTransition: If the user may not start an attempt now
        """
        now = now or self.clock()
        test = self.store.get_test(test_id)

        with self._key_lock(test_id, user_id):
            refusal = self._start_refusal(test, user_id, now)
            if refusal is not None:
                raise InvalidStateTransition(refusal)
            attempt = Attempt(
                id=self.store.next_id("attempt"),
                test_id=test_id,
                user_id=user_id,
                attempt_number=len(self.store.attempts_for(test_id, user_id)) + 1,
                status=AttemptStatus.IN_PROGRESS,
                started_at=now,
                max_score=test.max_score
            )
            self.store.add_attempt(attempt)

        deadline = self.deadline(attempt, test)
        self._log("ATTEMPT_START", f"Test: {test_id}, User: {user_id}, Attempt: {attempt.attempt_number}, "
                                   f"Deadline: {deadline.strftime('%Y-%m-%d %H:%M:%S')}")
        return {
            "attemptId": attempt.id,
            "attemptNumber": attempt.attempt_number,
            "startedAt": attempt.started_at,
            "deadline": deadline,
        }

    def _grade(
        self,
        attempt: Attempt,
        test: CodingTest,
        submissions: List[QuestionSubmission]
    ) -> List[Tuple[TestQuestion, int, QuestionSubmission, List[TestCaseOutcome]]]:
        """Grade question submissions outside the attempt lock."""
        plan = []
        for submission in submissions:
            question = test.question_by_id(submission.question_id)
            if question is None:
                raise NotFound(f"Question {submission.question_id} is not part of test {test.id}")
            plan.append((question, self.bank.get_problem(question.problem_id), submission))

        token = self._track(attempt.id)
        try:
            graded = []
            for question, problem, submission in plan:
                outcomes = self.grader.grade(
                    SubmissionSpec(
                        language=submission.language,
                        code=submission.code,
                        test_cases=problem.test_cases,
                        time_limit_ms=problem.time_limit_ms,
                        memory_limit_mb=problem.memory_limit_mb
                    ),
                    token
                )
                graded.append((question, problem.id, submission, outcomes))
        finally:
            self._untrack(attempt.id, token)

        for question, _, _, outcomes in graded:
            failure = next((o for o in outcomes if o.error_kind == ErrorKind.INTERNAL_EXECUTION_ERROR), None)
            if failure is not None:
                self._log("GRADING_INTERNAL_ERROR", f"Attempt: {attempt.id}, Question: {question.id}")
                raise InternalExecutionError(
                    f"Question {question.id} could not be graded: {failure.error_message}"
                )
        return graded

    def _store_results(self, attempt: Attempt, graded, now: datetime) -> List[QuestionResult]:
        results = []
        for question, problem_id, submission, outcomes in graded:
            result = score_question(
                outcomes,
                question.marks,
                result_id=self.store.next_id("question_result"),
                attempt_id=attempt.id,
                question_id=question.id,
                problem_id=problem_id,
                language=submission.language,
                outcome_ids=self.store.add_outcomes(outcomes),
                graded_at=now
            )
            results.append(self.store.add_question_result(result))
        return results

    def submit(
        self,
        attempt_id: int,
        question_submissions: List[QuestionSubmission],
        now: Optional[datetime] = None
    ) -> AttemptResult:
        """
        Grade the final code of each question and submit the attempt.

        Raises:
            InvalidStateTransition: If the attempt is not in progress
            InternalExecutionError: If the sandbox failed; the attempt stays in progress
            GradingCancelled: If the attempt expired or was abandoned while grading
        """
        now = now or self.clock()
        attempt = self.store.get_attempt(attempt_id)
        test = self.store.get_test(attempt.test_id)
        lock = self._key_lock(attempt.test_id, attempt.user_id)

        with lock:
            self._require_in_progress(attempt, "submit")
        graded = self._grade(attempt, test, list(question_submissions))

        with lock:
            self._require_in_progress(attempt, "submit")
            self._store_results(attempt, graded, now)
            self._close(attempt, test, AttemptStatus.SUBMITTED, now)

        self._log("ATTEMPT_SUBMIT", f"Attempt: {attempt.id}, Score: {attempt.total_score}/{attempt.max_score}, "
                                    f"Late: {attempt.is_late_submission}")
        return self.attempt_result(attempt_id)

    def submit_question(
        self,
        attempt_id: int,
        question_submission: QuestionSubmission,
        now: Optional[datetime] = None
    ) -> QuestionResult:
        """Grade one question of an in-progress attempt without ending it."""
        now = now or self.clock()
        attempt = self.store.get_attempt(attempt_id)
        test = self.store.get_test(attempt.test_id)
        lock = self._key_lock(attempt.test_id, attempt.user_id)

        with lock:
            self._require_in_progress(attempt, "submit a question for")
        graded = self._grade(attempt, test, [question_submission])

        with lock:
            self._require_in_progress(attempt, "submit a question for")
            result = self._store_results(attempt, graded, now)[0]
            self._roll_up(attempt, test)

        self._log("QUESTION_SUBMIT", f"Attempt: {attempt.id}, Question: {result.question_id}, "
                                     f"Score: {result.score}/{result.max_score}")
        return result

    def end(self, attempt_id: int, now: Optional[datetime] = None) -> AttemptResult:
        """Complete an attempt with the results recorded so far."""
        now = now or self.clock()
        attempt = self.store.get_attempt(attempt_id)
        test = self.store.get_test(attempt.test_id)

        with self._key_lock(attempt.test_id, attempt.user_id):
            self._require_in_progress(attempt, "end")
            self._close(attempt, test, AttemptStatus.COMPLETED, now)

        self._log("ATTEMPT_END", f"Attempt: {attempt.id}, Score: {attempt.total_score}/{attempt.max_score}")
        return self.attempt_result(attempt_id)

    def expire(self, attempt_id: int, now: Optional[datetime] = None) -> bool:
        """
        Expire an in-progress attempt once the test's end date has passed.

        Returns:
            True if the attempt moved to Expired, False if nothing changed
        """
        now = now or self.clock()
        attempt = self.store.get_attempt(attempt_id)
        test = self.store.get_test(attempt.test_id)

        with self._key_lock(attempt.test_id, attempt.user_id):
            if attempt.status != AttemptStatus.IN_PROGRESS or not now > test.end_date:
                return False
            self._close(attempt, test, AttemptStatus.EXPIRED, now)

        self._log("ATTEMPT_EXPIRED", f"Attempt: {attempt.id}, Score: {attempt.total_score}/{attempt.max_score}")
        return True

    def expire_overdue(self, now: Optional[datetime] = None) -> List[int]:
        """Expire every overdue in-progress attempt. Returns the ids that changed."""
        now = now or self.clock()
        candidates = [a.id for a in list(self.store.attempts.values()) if a.status == AttemptStatus.IN_PROGRESS]
        return [attempt_id for attempt_id in candidates if self.expire(attempt_id, now)]

    def _abandon_locked(self, attempt: Attempt, test: CodingTest, reason: str, now: datetime):
        attempt.notes = reason
        self._close(attempt, test, AttemptStatus.ABANDONED, now)
        self._log("ATTEMPT_ABANDONED", f"Attempt: {attempt.id}, Reason: {reason}")

    def abandon(self, attempt_id: int, reason: str = "", now: Optional[datetime] = None) -> Attempt:
        """Abandon an in-progress attempt on an explicit signal."""
        now = now or self.clock()
        attempt = self.store.get_attempt(attempt_id)
        test = self.store.get_test(attempt.test_id)

        with self._key_lock(attempt.test_id, attempt.user_id):
            self._require_in_progress(attempt, "abandon")
            self._abandon_locked(attempt, test, reason, now)
        return attempt

    def record_violation(self, attempt_id: int, kind: str = "", now: Optional[datetime] = None) -> Attempt:
        """
        Count an integrity violation; abandon the attempt when the breach limit is reached.

        A breach limit of 0 or less disables automatic abandonment.
        """
        now = now or self.clock()
        attempt = self.store.get_attempt(attempt_id)
        test = self.store.get_test(attempt.test_id)

        with self._key_lock(attempt.test_id, attempt.user_id):
            self._require_in_progress(attempt, "record a violation for")
            attempt.violation_count += 1
            self._log("BREACH_VIOLATION", f"Attempt: {attempt.id}, Kind: {kind or 'unspecified'}, "
                                          f"Count: {attempt.violation_count}")
            if test.apply_breach_rule and 0 < test.breach_rule_limit <= attempt.violation_count:
                self._abandon_locked(
                    attempt, test, f"Breach limit of {test.breach_rule_limit} reached", now
                )
        return attempt

    # ===== RESULTS =====

    def attempt_result(self, attempt_id: int) -> AttemptResult:
        """Canonical roll-up of an attempt, latest result per question in question order."""
        attempt = self.store.get_attempt(attempt_id)
        test = self.store.get_test(attempt.test_id)
        results = self.store.results_for(attempt_id)
        total, maximum, percentage, passed = score_attempt(results, test.questions, test.passing_percentage)
        latest = latest_results(results)

        return AttemptResult(
            attempt_id=attempt.id,
            total_score=total,
            max_score=maximum,
            percentage=percentage,
            passed=passed,
            is_late_submission=attempt.is_late_submission,
            questions=[latest[q.id] for q in test.questions if q.id in latest]
        )
