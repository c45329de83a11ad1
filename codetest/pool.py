"""
Bounded worker pool shared by every submission.

The pool size caps the number of sandboxes alive at once on the execution
host. A CancelToken groups the runs of one submission so they can be
cancelled together without touching other submissions.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List


class CancelToken:
    """Cancellation flag for all outstanding runs of one submission."""

    def __init__(self):
        self._event = threading.Event()
        self._futures: List[Future] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def attach(self, future: Future):
        """Track a pending run so cancel() can drop it before it starts."""
        with self._lock:
            self._futures.append(future)
            if self._event.is_set():
                future.cancel()

    def cancel(self):
        """
        Cancel the submission: queued runs never start and running sandboxes
        observe the flag and kill their process tree.
        """
        with self._lock:
            self._event.set()
            for future in self._futures:
                future.cancel()


class ExecutionPool:
    """Thread pool whose worker count bounds concurrent sandboxes."""

    def __init__(self, max_workers: int):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="sandbox"
        )
        self._active = 0
        self._peak = 0
        self._lock = threading.Lock()

    def submit(self, fn: Callable, *args, cancel: CancelToken = None, **kwargs) -> Future:
        """Schedule fn(*args, **kwargs) on the pool, optionally tied to a CancelToken."""
        future = self._executor.submit(self._tracked, fn, *args, **kwargs)
        if cancel is not None:
            cancel.attach(future)
        return future

    def _tracked(self, fn, *args, **kwargs):
        with self._lock:
            self._active += 1
            self._peak = max(self._peak, self._active)
        try:
            return fn(*args, **kwargs)
        finally:
            with self._lock:
                self._active -= 1

    def stats(self) -> dict:
        """Return pool statistics for monitoring."""
        with self._lock:
            return {
                "max_workers": self.max_workers,
                "in_use": self._active,
                "available": self.max_workers - self._active,
                "peak_in_use": self._peak,
            }

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
