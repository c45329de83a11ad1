"""
Append-only event log for engine activity.

Each entry is a single line "[YYYY-MM-DD HH:MM:SS] - EVENT - details",
appended to a file when one is configured and always kept in memory.
"""

import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple


class EventLog:
    """Thread-safe event log shared by the grader and the session manager."""

    def __init__(self, log_path: Optional[Path] = None):
        self.log_path = Path(log_path) if log_path else None
        self.entries: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def log(self, event: str, details: str = ""):
        """Append an entry to the event log."""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        log_entry = f"[{timestamp}] - {event}"
        if details:
            log_entry += f" - {details}"
        log_entry += "\n"

        with self._lock:
            self.entries.append((event, details))
            if self.log_path is not None:
                with open(self.log_path, 'a', encoding='utf-8') as f:
                    f.write(log_entry)

    def __call__(self, event: str, details: str = ""):
        self.log(event, details)

    def events(self, name: Optional[str] = None) -> List[Tuple[str, str]]:
        """Return logged (event, details) pairs, optionally filtered by event name."""
        with self._lock:
            if name is None:
                return list(self.entries)
            return [entry for entry in self.entries if entry[0] == name]
