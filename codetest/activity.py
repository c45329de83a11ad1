"""
Activity tracking for coding sessions.

Counts user interactions (runs, submits, saves, erases, language switches,
login/logout) per (user, problem, attempt number), remembers which test
cases passed or failed, and signals the attempt lifecycle when a session is
abandoned.
"""

import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .models import ActivityKind, ActivityLog, TestCaseOutcome


ActivityKey = Tuple[int, int, int]

# Counter names accepted by merge(), as sent by clients with a final submit
CLIENT_COUNTER_NAMES = {
    "runCount": ActivityKind.RUN,
    "submitCount": ActivityKind.SUBMIT,
    "saveCount": ActivityKind.SAVE,
    "eraseCount": ActivityKind.ERASE,
    "languageSwitchCount": ActivityKind.LANGUAGE_SWITCH,
    "loginLogoutCount": ActivityKind.LOGIN_LOGOUT,
}


def _as_kind(name) -> ActivityKind:
    if isinstance(name, ActivityKind):
        return name
    if name in CLIENT_COUNTER_NAMES:
        return CLIENT_COUNTER_NAMES[name]
    return ActivityKind(name)


class ActivityTracker:
    """Interaction counters for one user on one problem in one attempt."""

    def __init__(
        self,
        user_id: int,
        problem_id: int,
        attempt_number: int,
        attempt_id: Optional[int] = None,
        listener: Optional[Callable[['ActivityTracker'], None]] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.user_id = user_id
        self.problem_id = problem_id
        self.attempt_number = attempt_number
        self.attempt_id = attempt_id
        self.listener = listener
        self.clock = clock

        self.counters: Dict[ActivityKind, int] = {kind: 0 for kind in ActivityKind}
        self.passed_test_case_ids: List[int] = []
        self.failed_test_case_ids: List[int] = []
        self.is_session_abandoned = False
        self.started_at = clock()
        self.ended_at: Optional[datetime] = None
        self._lock = threading.Lock()

    @property
    def key(self) -> ActivityKey:
        return self.user_id, self.problem_id, self.attempt_number

    def record(self, kind, count: int = 1):
        """Increment one counter."""
        kind = _as_kind(kind)
        if count < 0:
            raise ValueError(f"Counter increment must not be negative: {count}")
        with self._lock:
            self.counters[kind] += count
            self.ended_at = self.clock()

    def record_results(self, outcomes: Iterable[TestCaseOutcome]):
        """Replace the passed/failed test case ids with those of the latest run."""
        outcomes = list(outcomes)
        with self._lock:
            self.passed_test_case_ids = [o.test_case_id for o in outcomes if o.passed]
            self.failed_test_case_ids = [o.test_case_id for o in outcomes if not o.passed]
            self.ended_at = self.clock()

    def merge(self, counts: Dict):
        """
        Add bulk counters reported by a client.

        Args:
            counts: Mapping of ActivityKind, kind value ("run") or client
                counter name ("runCount") to a non-negative count

        Raises:
            ValueError: On unknown counter names or negative counts
        """
        parsed = [(_as_kind(name), int(value)) for name, value in counts.items()]
        for kind, value in parsed:
            if value < 0:
                raise ValueError(f"Counter '{kind.value}' must not be negative: {value}")
        with self._lock:
            for kind, value in parsed:
                self.counters[kind] += value
            self.ended_at = self.clock()

    def mark_abandoned(self):
        """Flag the session as abandoned and notify the listener once."""
        with self._lock:
            if self.is_session_abandoned:
                return
            self.is_session_abandoned = True
            self.ended_at = self.clock()
        if self.listener is not None:
            self.listener(self)

    def snapshot(self) -> ActivityLog:
        with self._lock:
            return ActivityLog(
                user_id=self.user_id,
                problem_id=self.problem_id,
                attempt_number=self.attempt_number,
                counters=dict(self.counters),
                passed_test_case_ids=list(self.passed_test_case_ids),
                failed_test_case_ids=list(self.failed_test_case_ids),
                is_session_abandoned=self.is_session_abandoned,
                started_at=self.started_at,
                ended_at=self.ended_at
            )


class ActivityRecorder:
    """Registry of activity trackers keyed by (user, problem, attempt number)."""

    def __init__(
        self,
        listener: Optional[Callable[[ActivityTracker], None]] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.listener = listener
        self.clock = clock
        self._trackers: Dict[ActivityKey, ActivityTracker] = {}
        self._lock = threading.Lock()

    def tracker(
        self,
        user_id: int,
        problem_id: int,
        attempt_number: int,
        attempt_id: Optional[int] = None
    ) -> ActivityTracker:
        """Get the tracker for a key, creating it on first use."""
        key = (user_id, problem_id, attempt_number)
        with self._lock:
            tracker = self._trackers.get(key)
            if tracker is None:
                tracker = ActivityTracker(
                    user_id, problem_id, attempt_number,
                    attempt_id=attempt_id,
                    listener=self.listener,
                    clock=self.clock
                )
                self._trackers[key] = tracker
            elif attempt_id is not None and tracker.attempt_id is None:
                tracker.attempt_id = attempt_id
            return tracker

    def find(self, user_id: int, problem_id: int, attempt_number: int) -> Optional[ActivityTracker]:
        with self._lock:
            return self._trackers.get((user_id, problem_id, attempt_number))

    def snapshots(self, user_id: Optional[int] = None) -> List[ActivityLog]:
        """Snapshots of all trackers, optionally for one user only."""
        with self._lock:
            trackers = list(self._trackers.values())
        return [t.snapshot() for t in trackers if user_id is None or t.user_id == user_id]
