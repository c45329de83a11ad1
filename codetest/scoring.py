"""
Scoring aggregation: test case outcomes -> question score -> attempt score.

All rounding is decimal half-up so that 10 * 1/3 scores 3 and 10 * 2/3
scores 7 regardless of binary floating point representation.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .models import QuestionResult, TestCaseOutcome, TestQuestion


def round_half_up(value, places: int = 0):
    """
    Round a number half away from zero.

    Args:
        value: int, float, Decimal or a numeric string
        places: Decimal places to keep; 0 returns an int

    Returns:
        int when places is 0, float otherwise
    """
    quantum = Decimal(1).scaleb(-places)
    rounded = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    return int(rounded) if places == 0 else float(rounded)


def _ratio_score(max_score: int, passed: int, total: int) -> int:
    if total <= 0:
        return 0
    return round_half_up(Decimal(max_score) * Decimal(passed) / Decimal(total))


def _percentage(part, whole) -> float:
    if not whole:
        return 0.0
    return round_half_up(Decimal(part) / Decimal(whole) * 100, 2)


# ===== QUESTION LEVEL =====

def score_question(
    outcomes: Sequence[TestCaseOutcome],
    max_score: int,
    result_id: int = 0,
    attempt_id: int = 0,
    question_id: int = 0,
    problem_id: int = 0,
    language: str = "",
    outcome_ids: Optional[List[int]] = None,
    graded_at: Optional[datetime] = None
) -> QuestionResult:
    """
    Build the QuestionResult for one graded question.

    Score is proportional to the passed share of test cases. A question is
    correct only when every test case passed and there was at least one.
    The reported error kind is the kind of the first failing outcome.
    """
    total = len(outcomes)
    passed = sum(1 for o in outcomes if o.passed)
    first_failure = next((o for o in outcomes if not o.passed), None)

    return QuestionResult(
        id=result_id,
        attempt_id=attempt_id,
        question_id=question_id,
        problem_id=problem_id,
        total_cases=total,
        passed_cases=passed,
        score=_ratio_score(max_score, passed, total),
        max_score=max_score,
        is_correct=total > 0 and passed == total,
        error_kind=first_failure.error_kind if first_failure else None,
        language=language,
        outcome_ids=list(outcome_ids or []),
        graded_at=graded_at
    )


def latest_results(question_results: Iterable[QuestionResult]) -> Dict[int, QuestionResult]:
    """Latest (highest id) result per question id. Regrading appends, the newest wins."""
    latest: Dict[int, QuestionResult] = {}
    for result in question_results:
        current = latest.get(result.question_id)
        if current is None or result.id > current.id:
            latest[result.question_id] = result
    return latest


# ===== ATTEMPT LEVEL =====

def score_attempt(
    question_results: Iterable[QuestionResult],
    questions: Sequence[TestQuestion],
    passing_percentage: float
) -> Tuple[int, int, float, bool]:
    """
    Roll question results up into the attempt score.

    Unattempted questions add 0 to the total but their full marks to the max.
    Results for questions outside the test are ignored.

    Returns:
        Tuple of (total_score, max_score, percentage, passed)
    """
    latest = latest_results(question_results)
    max_score = sum(q.marks for q in questions)
    total_score = sum(latest[q.id].score for q in questions if q.id in latest)
    percentage = _percentage(total_score, max_score)
    return total_score, max_score, percentage, percentage >= passing_percentage


def is_late_submission(submitted_at: datetime, end_date: datetime) -> bool:
    """A submission is late only when strictly after the test's end date."""
    return submitted_at > end_date


# ===== DERIVED VIEWS =====

def test_case_accuracy(outcomes: Iterable[TestCaseOutcome]) -> float:
    """Percentage of passed test cases across all outcomes."""
    outcomes = list(outcomes)
    return _percentage(sum(1 for o in outcomes if o.passed), len(outcomes))


def _graded_outcomes(result: QuestionResult, outcomes: Mapping[int, TestCaseOutcome]) -> List[TestCaseOutcome]:
    return [outcomes[oid] for oid in result.outcome_ids if oid in outcomes]


def _solved(graded: Sequence[TestCaseOutcome]) -> bool:
    return bool(graded) and all(o.passed for o in graded)


def problem_accuracy(
    question_results: Iterable[QuestionResult],
    outcomes: Mapping[int, TestCaseOutcome]
) -> float:
    """
    Percentage of questions solved completely, using the latest result per question.

    A question counts as solved only when its stored outcomes exist and all passed.
    """
    latest = list(latest_results(question_results).values())
    solved = sum(1 for r in latest if _solved(_graded_outcomes(r, outcomes)))
    return _percentage(solved, len(latest))


def final_score_view(
    question_results: Iterable[QuestionResult],
    outcomes: Mapping[int, TestCaseOutcome]
) -> List[dict]:
    """
    Per-question breakdown recomputed from stored outcomes.

    Args:
        question_results: Results of one attempt
        outcomes: Stored outcomes keyed by outcome id

    Returns:
        One dict per question (latest result), ordered by question id
    """
    view = []
    latest = latest_results(question_results)
    for question_id in sorted(latest):
        result = latest[question_id]
        graded = _graded_outcomes(result, outcomes)
        passed = [o.test_case_id for o in graded if o.passed]
        view.append({
            "questionId": result.question_id,
            "problemId": result.problem_id,
            "score": _ratio_score(result.max_score, len(passed), len(graded)),
            "maxScore": result.max_score,
            "isCorrect": _solved(graded),
            "passedTestCaseIds": passed,
            "failedTestCaseIds": [o.test_case_id for o in graded if not o.passed],
            "accuracy": test_case_accuracy(graded),
        })
    return view
