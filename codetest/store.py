"""
In-memory entity store.

Entities are kept in id-keyed dictionaries and refer to each other by id.
Ids are allocated per entity kind, start at 1 and only grow, so the newest
record of a kind always has the highest id.
"""

import itertools
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .errors import NotFound
from .models import (
    Assignment, Attempt, CodingTest, QuestionResult, TestCaseOutcome,
    TestMode, TestType
)


class Store:
    """Id-keyed collections of tests, assignments, attempts and results."""

    def __init__(self):
        self.tests: Dict[int, CodingTest] = {}
        self.assignments: Dict[int, Assignment] = {}
        self.attempts: Dict[int, Attempt] = {}
        self.question_results: Dict[int, QuestionResult] = {}
        self.outcomes: Dict[int, TestCaseOutcome] = {}
        self._counters = {
            "assignment": itertools.count(1),
            "attempt": itertools.count(1),
            "question_result": itertools.count(1),
            "outcome": itertools.count(1),
        }
        self._lock = threading.RLock()

    def next_id(self, kind: str) -> int:
        with self._lock:
            return next(self._counters[kind])

    # ===== TESTS =====

    def add_test(self, test: CodingTest):
        with self._lock:
            self.tests[test.id] = test

    def get_test(self, test_id: int) -> CodingTest:
        try:
            return self.tests[test_id]
        except KeyError:
            raise NotFound(f"Coding test {test_id} not found") from None

    # ===== ASSIGNMENTS =====

    def add_assignment(
        self,
        test_id: int,
        user_id: int,
        assigned_by: int = 0,
        assigned_at: Optional[datetime] = None,
        test_type: TestType = TestType.CODING_TEST,
        test_mode: TestMode = TestMode.CODING
    ) -> Assignment:
        with self._lock:
            assignment = Assignment(
                id=self.next_id("assignment"),
                test_id=test_id,
                user_id=user_id,
                assigned_by=assigned_by,
                assigned_at=assigned_at,
                test_type=test_type,
                test_mode=test_mode
            )
            self.assignments[assignment.id] = assignment
            return assignment

    def find_assignment(self, test_id: int, user_id: int) -> Optional[Assignment]:
        with self._lock:
            for assignment in self.assignments.values():
                if assignment.test_id == test_id and assignment.user_id == user_id:
                    return assignment
        return None

    # ===== ATTEMPTS =====

    def add_attempt(self, attempt: Attempt) -> Attempt:
        with self._lock:
            for existing in self.attempts.values():
                if (existing.test_id, existing.user_id, existing.attempt_number) == \
                        (attempt.test_id, attempt.user_id, attempt.attempt_number):
                    raise ValueError(
                        f"Attempt {attempt.attempt_number} already exists for "
                        f"test {attempt.test_id}, user {attempt.user_id}"
                    )
            self.attempts[attempt.id] = attempt
            return attempt

    def get_attempt(self, attempt_id: int) -> Attempt:
        try:
            return self.attempts[attempt_id]
        except KeyError:
            raise NotFound(f"Attempt {attempt_id} not found") from None

    def attempts_for(self, test_id: int, user_id: int) -> List[Attempt]:
        """All attempts of a user at a test, oldest first."""
        with self._lock:
            attempts = [
                a for a in self.attempts.values()
                if a.test_id == test_id and a.user_id == user_id
            ]
        return sorted(attempts, key=lambda a: a.attempt_number)

    # ===== RESULTS =====

    def add_outcomes(self, outcomes: Iterable[TestCaseOutcome]) -> List[int]:
        """Store outcomes and return their ids in the same order."""
        ids = []
        with self._lock:
            for outcome in outcomes:
                outcome_id = self.next_id("outcome")
                self.outcomes[outcome_id] = outcome
                ids.append(outcome_id)
        return ids

    def add_question_result(self, result: QuestionResult) -> QuestionResult:
        with self._lock:
            self.question_results[result.id] = result
            return result

    def results_for(self, attempt_id: int) -> List[QuestionResult]:
        """Every stored result of an attempt, including superseded ones, oldest first."""
        with self._lock:
            results = [r for r in self.question_results.values() if r.attempt_id == attempt_id]
        return sorted(results, key=lambda r: r.id)
