"""
Transport-agnostic facade over the engine.

Accepts and returns plain dictionaries with camelCase keys so that any
transport (HTTP handler, queue consumer, CLI) can call it directly.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .activity import ActivityRecorder, ActivityTracker
from .bank import ProblemBank
from .config_loader import EngineConfig
from .eventlog import EventLog
from .grader import Grader
from .models import ActivityKind, AttemptStatus, QuestionSubmission, TestMode, TestType
from .pool import ExecutionPool
from .sandbox import Sandbox
from .session import SessionManager
from .store import Store


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class CodingTestService:
    """Entry point for executing code and driving coding test attempts."""

    def __init__(
        self,
        bank: ProblemBank,
        config: Optional[EngineConfig] = None,
        event_log: Optional[EventLog] = None,
        profile_lookup: Optional[Callable[[int], Optional[dict]]] = None,
        clock: Callable[[], datetime] = datetime.now,
        grader: Optional[Grader] = None
    ):
        self.config = config or EngineConfig.default()
        self.bank = bank
        self.event_log = event_log or EventLog(self.config.event_log_path)
        self.profile_lookup = profile_lookup
        self.clock = clock

        if grader is None:
            self.pool = ExecutionPool(self.config.pool_size)
            grader = Grader(self.config, Sandbox(self.config), self.pool, self.event_log)
        else:
            self.pool = grader.pool
        self.grader = grader

        self.store = Store()
        for test in bank.tests:
            self.store.add_test(test)

        self.sessions = SessionManager(self.store, self.grader, bank, self.event_log, clock)
        self.activity = ActivityRecorder(listener=self._on_abandoned, clock=clock)

    def shutdown(self):
        self.pool.shutdown()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    # ===== HELPER FUNCTIONS =====

    def _on_abandoned(self, tracker: ActivityTracker):
        if tracker.attempt_id is None:
            return
        attempt = self.store.get_attempt(tracker.attempt_id)
        if attempt.status == AttemptStatus.IN_PROGRESS:
            self.sessions.abandon(attempt.id, "Session abandoned", self.clock())

    def _profile(self, user_id: int) -> Optional[dict]:
        """Profile of a user, or None when no lookup is configured or it fails."""
        if self.profile_lookup is None:
            return None
        try:
            return self.profile_lookup(user_id)
        except Exception as e:
            self.event_log.log("PROFILE_LOOKUP_FAILED", f"User: {user_id}, Error: {e}")
            return None

    @staticmethod
    def _submission(item: Union[dict, QuestionSubmission]) -> QuestionSubmission:
        if isinstance(item, QuestionSubmission):
            return item
        return QuestionSubmission(
            question_id=item.get('questionId', item.get('question_id')),
            language=item['language'],
            code=item['code']
        )

    def _track_submit(self, attempt_id: int, question_results: Iterable):
        attempt = self.store.get_attempt(attempt_id)
        for result in question_results:
            tracker = self.activity.tracker(attempt.user_id, result.problem_id, attempt.attempt_number, attempt.id)
            tracker.record(ActivityKind.SUBMIT)
            tracker.record_results(self.store.outcomes[oid] for oid in result.outcome_ids)

    # ===== EXECUTION =====

    def execute(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run code against request-supplied test cases without touching any attempt.

        When the request names userId, problemId and attemptNumber the run is
        counted by the activity recorder.
        """
        response = self.grader.execute(request)
        if all(k in request for k in ("userId", "problemId", "attemptNumber")):
            tracker = self.activity.tracker(request["userId"], request["problemId"], request["attemptNumber"])
            tracker.record(ActivityKind.RUN)
        return response

    # ===== ATTEMPT LIFECYCLE =====

    def assign(
        self,
        test_id: int,
        user_id: int,
        assigned_by: int = 0,
        test_type: TestType = TestType.CODING_TEST,
        test_mode: TestMode = TestMode.CODING
    ) -> Dict[str, Any]:
        assignment = self.sessions.assign(test_id, user_id, assigned_by, test_type, test_mode, self.clock())
        return {
            "assignmentId": assignment.id,
            "testId": assignment.test_id,
            "userId": assignment.user_id,
            "testType": int(assignment.test_type),
            "testMode": int(assignment.test_mode),
        }

    def start(self, test_id: int, user_id: int) -> Dict[str, Any]:
        started = self.sessions.start(test_id, user_id, self.clock())
        return {
            "attemptId": started["attemptId"],
            "attemptNumber": started["attemptNumber"],
            "startedAt": _iso(started["startedAt"]),
            "deadline": _iso(started["deadline"]),
        }

    def submit(
        self,
        attempt_id: int,
        question_submissions: List[Union[dict, QuestionSubmission]],
        activity: Optional[Dict[int, Dict[str, int]]] = None
    ) -> Dict[str, Any]:
        """
        Grade and submit an attempt.

        Args:
            attempt_id: Attempt to submit
            question_submissions: Final code per question
            activity: Optional client counters per problem id, merged into the activity log
        """
        result = self.sessions.submit(
            attempt_id, [self._submission(item) for item in question_submissions], self.clock()
        )
        self._track_submit(attempt_id, result.questions)

        if activity:
            attempt = self.store.get_attempt(attempt_id)
            for problem_id, counts in activity.items():
                self.activity.tracker(attempt.user_id, int(problem_id), attempt.attempt_number, attempt.id).merge(counts)
        return result.as_dict()

    def submit_question(self, attempt_id: int, question_submission: Union[dict, QuestionSubmission]) -> Dict[str, Any]:
        result = self.sessions.submit_question(attempt_id, self._submission(question_submission), self.clock())
        self._track_submit(attempt_id, [result])
        return result.as_dict()

    def end(self, attempt_id: int) -> Dict[str, Any]:
        return self.sessions.end(attempt_id, self.clock()).as_dict()

    def abandon(self, attempt_id: int, reason: str = "") -> Dict[str, Any]:
        attempt = self.sessions.abandon(attempt_id, reason, self.clock())
        return {"attemptId": attempt.id, "status": attempt.status.value}

    def record_violation(self, attempt_id: int, kind: str = "") -> Dict[str, Any]:
        attempt = self.sessions.record_violation(attempt_id, kind, self.clock())
        return {
            "attemptId": attempt.id,
            "status": attempt.status.value,
            "violationCount": attempt.violation_count,
        }

    def status(self, test_id: int, user_id: int) -> Dict[str, Any]:
        status = self.sessions.status(test_id, user_id, self.clock())
        status["profile"] = self._profile(user_id)
        return status

    def attempt_result(self, attempt_id: int) -> Dict[str, Any]:
        attempt = self.store.get_attempt(attempt_id)
        result = self.sessions.attempt_result(attempt_id).as_dict()
        result.update({
            "status": attempt.status.value,
            "attemptNumber": attempt.attempt_number,
            "startedAt": _iso(attempt.started_at),
            "completedAt": _iso(attempt.completed_at),
            "timeSpentMinutes": attempt.time_spent_minutes,
        })
        return result

    def expire_overdue(self) -> List[int]:
        return self.sessions.expire_overdue(self.clock())

    # ===== ACTIVITY =====

    def record_activity(self, user_id: int, problem_id: int, attempt_number: int, kind) -> Dict[str, Any]:
        tracker = self.activity.tracker(user_id, problem_id, attempt_number)
        tracker.record(kind)
        return self.activity_log(user_id, problem_id, attempt_number)

    def mark_abandoned(self, attempt_id: int, problem_id: int):
        """Client reports the session as abandoned; the attempt is abandoned if still in progress."""
        attempt = self.store.get_attempt(attempt_id)
        self.activity.tracker(attempt.user_id, problem_id, attempt.attempt_number, attempt.id).mark_abandoned()

    def activity_log(self, user_id: int, problem_id: int, attempt_number: int) -> Dict[str, Any]:
        log = self.activity.tracker(user_id, problem_id, attempt_number).snapshot()
        return {
            "userId": log.user_id,
            "problemId": log.problem_id,
            "attemptNumber": log.attempt_number,
            "counters": {kind.value: count for kind, count in log.counters.items()},
            "passedTestCaseIds": log.passed_test_case_ids,
            "failedTestCaseIds": log.failed_test_case_ids,
            "isSessionAbandoned": log.is_session_abandoned,
            "timeTakenSeconds": log.time_taken_seconds,
        }
