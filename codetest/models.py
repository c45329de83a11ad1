"""
Data models for problems, coding tests, attempts and grading results.

Entities reference each other by id only. Collections of entities live in
codetest.store; nothing here holds a back-pointer to its owner.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any


class ErrorKind(str, Enum):
    """Classification of a failed test case."""
    COMPILATION_ERROR = "CompilationError"
    RUNTIME_ERROR = "RuntimeError"
    TIMEOUT_ERROR = "TimeoutError"
    WRONG_ANSWER = "WrongAnswer"
    INTERNAL_EXECUTION_ERROR = "InternalExecutionError"


class AttemptStatus(str, Enum):
    ASSIGNED = "Assigned"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    SUBMITTED = "Submitted"
    EXPIRED = "Expired"
    ABANDONED = "Abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    AttemptStatus.COMPLETED,
    AttemptStatus.SUBMITTED,
    AttemptStatus.EXPIRED,
    AttemptStatus.ABANDONED,
})


class AssignmentStatus(str, Enum):
    ASSIGNED = "Assigned"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    EXPIRED = "Expired"


class ActivityKind(str, Enum):
    """Interaction counted by the activity recorder."""
    RUN = "run"
    SUBMIT = "submit"
    SAVE = "save"
    ERASE = "erase"
    LANGUAGE_SWITCH = "language_switch"
    LOGIN_LOGOUT = "login_logout"


class TestType(int, Enum):
    """
    Test type codes used by the external assignment system.

    CODING_TEST (1002) marks assignments that belong to this engine.
    GENERAL (1) is the default type for tests created without a code.
    """
    __test__ = False

    GENERAL = 1
    CODING_TEST = 1002


class TestMode(int, Enum):
    """
    Delivery mode codes used by the external assignment system.

    CODING (5) is the mode the assignment system stores for coding tests.
    """
    __test__ = False

    CODING = 5


def _parse_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class TestCase:
    """A single hidden test case of a problem."""
    __test__ = False

    id: int
    problem_id: int
    input: str
    expected_output: str

    @staticmethod
    def from_dict(data: dict, problem_id: int = 0) -> 'TestCase':
        return TestCase(
            id=data['id'],
            problem_id=data.get('problem_id', problem_id),
            input=data.get('input') or "",
            expected_output=data.get('expected_output') or ""
        )


@dataclass
class StarterCode:
    """Starter template shown to the user for one language."""
    language: str
    code: str


@dataclass
class Problem:
    """A programming problem with its test cases and starter code."""
    id: int
    title: str
    statement: str
    test_cases: List[TestCase]
    starter_code: List[StarterCode] = field(default_factory=list)
    time_limit_ms: Optional[int] = None
    memory_limit_mb: Optional[int] = None

    def starter_for(self, language: str) -> Optional[StarterCode]:
        for starter in self.starter_code:
            if starter.language.lower() == language.lower():
                return starter
        return None

    @staticmethod
    def from_dict(data: dict) -> 'Problem':
        """Create a Problem object from a dictionary."""
        problem_id = data['id']
        starters = [
            StarterCode(language=lang, code=code)
            for lang, code in (data.get('starter_code') or {}).items()
        ]
        return Problem(
            id=problem_id,
            title=data.get('title', ""),
            statement=data.get('statement', ""),
            test_cases=[TestCase.from_dict(tc, problem_id) for tc in data.get('test_cases', [])],
            starter_code=starters,
            time_limit_ms=data.get('time_limit_ms'),
            memory_limit_mb=data.get('memory_limit_mb')
        )


@dataclass
class SubmissionSpec:
    """Source code in one language to grade against a list of test cases."""
    language: str
    code: str
    test_cases: List[TestCase]
    time_limit_ms: Optional[int] = None
    memory_limit_mb: Optional[int] = None


@dataclass(frozen=True)
class TestCaseOutcome:
    """The graded result of running one test case."""
    __test__ = False

    test_case_id: int
    order: int
    input: str
    expected_output: str
    actual_output: str
    passed: bool
    runtime_ms: float = 0.0
    memory_kb: int = 0
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    stdout: str = ""
    stderr: str = ""


@dataclass
class TestQuestion:
    """One problem as it appears within a coding test."""
    __test__ = False

    id: int
    test_id: int
    problem_id: int
    order: int
    marks: int
    time_limit_minutes: int = 0
    custom_instructions: str = ""

    @staticmethod
    def from_dict(data: dict, test_id: int = 0) -> 'TestQuestion':
        return TestQuestion(
            id=data['id'],
            test_id=data.get('test_id', test_id),
            problem_id=data['problem_id'],
            order=data.get('order', 0),
            marks=data['marks'],
            time_limit_minutes=data.get('time_limit_minutes', 0),
            custom_instructions=data.get('custom_instructions', "")
        )


@dataclass
class CodingTest:
    """
    A timed coding test.

    Attributes:
        start_date / end_date: Window in which attempts may be started
        duration_minutes: Time allowed for a single attempt
        allow_multiple_attempts / max_attempts: Retake policy
        apply_breach_rule / breach_rule_limit: Integrity violations allowed
            before an attempt is abandoned
        passing_percentage: Threshold for the pass/fail flag
    """
    id: int
    name: str
    start_date: datetime
    end_date: datetime
    duration_minutes: int
    total_marks: int = 0
    allow_multiple_attempts: bool = False
    max_attempts: int = 1
    apply_breach_rule: bool = True
    breach_rule_limit: int = 0
    is_result_publish_automatically: bool = True
    passing_percentage: float = 60.0
    questions: List[TestQuestion] = field(default_factory=list)
    test_type: TestType = TestType.CODING_TEST

    def __post_init__(self):
        if self.start_date >= self.end_date:
            raise ValueError(f"Test {self.id}: start_date must be before end_date")
        if self.duration_minutes <= 0:
            raise ValueError(f"Test {self.id}: duration_minutes must be positive")

    @property
    def max_score(self) -> int:
        return sum(q.marks for q in self.questions)

    def question_by_id(self, question_id: int) -> Optional[TestQuestion]:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None

    @staticmethod
    def from_dict(data: dict, default_passing_percentage: float = 60.0) -> 'CodingTest':
        """Create a CodingTest object from a dictionary."""
        test_id = data['id']
        questions = [TestQuestion.from_dict(q, test_id) for q in data.get('questions', [])]
        questions.sort(key=lambda q: q.order)
        return CodingTest(
            id=test_id,
            name=data.get('name', ""),
            start_date=_parse_datetime(data['start_date']),
            end_date=_parse_datetime(data['end_date']),
            duration_minutes=data['duration_minutes'],
            total_marks=data.get('total_marks', sum(q.marks for q in questions)),
            allow_multiple_attempts=data.get('allow_multiple_attempts', False),
            max_attempts=data.get('max_attempts', 1),
            apply_breach_rule=data.get('apply_breach_rule', True),
            breach_rule_limit=data.get('breach_rule_limit', 0),
            is_result_publish_automatically=data.get('is_result_publish_automatically', True),
            passing_percentage=float(data.get('passing_percentage', default_passing_percentage)),
            questions=questions,
            test_type=TestType(data.get('test_type', TestType.CODING_TEST))
        )


@dataclass
class Assignment:
    """Maps a coding test to a user."""
    id: int
    test_id: int
    user_id: int
    assigned_by: int = 0
    assigned_at: Optional[datetime] = None
    test_type: TestType = TestType.CODING_TEST
    test_mode: TestMode = TestMode.CODING


@dataclass
class Attempt:
    """One user's timed try at one coding test."""
    id: int
    test_id: int
    user_id: int
    attempt_number: int
    status: AttemptStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    total_score: int = 0
    max_score: int = 0
    percentage: float = 0.0
    time_spent_minutes: int = 0
    is_late_submission: bool = False
    violation_count: int = 0
    notes: str = ""


@dataclass
class QuestionResult:
    """Aggregate of all test case outcomes for one question in one attempt."""
    id: int
    attempt_id: int
    question_id: int
    problem_id: int
    total_cases: int
    passed_cases: int
    score: int
    max_score: int
    is_correct: bool
    error_kind: Optional[ErrorKind] = None
    language: str = ""
    outcome_ids: List[int] = field(default_factory=list)
    graded_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "questionId": self.question_id,
            "problemId": self.problem_id,
            "totalCases": self.total_cases,
            "passedCases": self.passed_cases,
            "score": self.score,
            "maxScore": self.max_score,
            "isCorrect": self.is_correct,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "language": self.language,
        }


@dataclass
class AttemptResult:
    """Canonical roll-up of an attempt's question results."""
    attempt_id: int
    total_score: int
    max_score: int
    percentage: float
    passed: bool
    is_late_submission: bool
    questions: List[QuestionResult] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "attemptId": self.attempt_id,
            "totalScore": self.total_score,
            "maxScore": self.max_score,
            "percentage": self.percentage,
            "passed": self.passed,
            "isLateSubmission": self.is_late_submission,
            "perQuestion": [q.as_dict() for q in self.questions],
        }


@dataclass
class QuestionSubmission:
    """User code for one question of an attempt."""
    question_id: int
    language: str
    code: str

    @staticmethod
    def from_dict(data: dict) -> 'QuestionSubmission':
        return QuestionSubmission(
            question_id=data['question_id'],
            language=data['language'],
            code=data['code']
        )


@dataclass
class ActivityLog:
    """Snapshot of the interaction counters for one (user, problem, attempt)."""
    user_id: int
    problem_id: int
    attempt_number: int
    counters: Dict[ActivityKind, int]
    passed_test_case_ids: List[int] = field(default_factory=list)
    failed_test_case_ids: List[int] = field(default_factory=list)
    is_session_abandoned: bool = False
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def time_taken_seconds(self) -> int:
        if self.started_at is None or self.ended_at is None:
            return 0
        return max(0, int((self.ended_at - self.started_at).total_seconds()))
