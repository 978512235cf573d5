"""Deduplicating FIFO queue of GitHub issue URLs.

Every issue lives in exactly one of four collections: the FIFO of queued
URLs, or the processing / completed / failed sets.  Completed and failed are
terminal for the lifetime of the process, so re-fetching the same issue on
the next monitor cycle never schedules it again.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass

log = logging.getLogger(__name__)


class IssueState(enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class QueueStats:
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)

    def __str__(self) -> str:
        return (
            f"queued={self.queued} processing={self.processing} "
            f"completed={self.completed} failed={self.failed}"
        )


class IssueQueue:
    """Thread-safe dedup queue shared by the monitor loop and the workers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queue: deque[str] = deque()
        self._queued: set[str] = set()
        self._processing: set[str] = set()
        self._completed: set[str] = set()
        self._failed: set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(self, issue_url: str) -> bool:
        """Append *issue_url* unless it has been seen in any state.

        Returns False (and changes nothing) for an issue that is already
        queued, processing, completed or failed.
        """
        with self._lock:
            if (
                issue_url in self._queued
                or issue_url in self._processing
                or issue_url in self._completed
                or issue_url in self._failed
            ):
                return False
            self._queue.append(issue_url)
            self._queued.add(issue_url)
            return True

    def dequeue(self) -> str | None:
        """Pop the oldest queued issue and move it to processing."""
        with self._lock:
            if not self._queue:
                return None
            issue_url = self._queue.popleft()
            self._queued.discard(issue_url)
            self._processing.add(issue_url)
            return issue_url

    def mark_completed(self, issue_url: str) -> None:
        self._finish(issue_url, self._completed, "completed")

    def mark_failed(self, issue_url: str) -> None:
        self._finish(issue_url, self._failed, "failed")

    def stats(self) -> QueueStats:
        with self._lock:
            return QueueStats(
                queued=len(self._queue),
                processing=len(self._processing),
                completed=len(self._completed),
                failed=len(self._failed),
            )

    def state_of(self, issue_url: str) -> IssueState | None:
        with self._lock:
            if issue_url in self._queued:
                return IssueState.QUEUED
            if issue_url in self._processing:
                return IssueState.PROCESSING
            if issue_url in self._completed:
                return IssueState.COMPLETED
            if issue_url in self._failed:
                return IssueState.FAILED
            return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _finish(self, issue_url: str, target: set[str], label: str) -> None:
        with self._lock:
            if issue_url not in self._processing:
                log.warning("Marking %s %s but it was not processing", issue_url, label)
            if issue_url in self._queued:
                self._queued.discard(issue_url)
                self._queue.remove(issue_url)
            self._processing.discard(issue_url)
            self._completed.discard(issue_url)
            self._failed.discard(issue_url)
            target.add(issue_url)
