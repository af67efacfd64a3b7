"""Progress Monitoring for install runs.

Tracks how many tasks have been dispatched and how many have finished, and
logs an ``install_progress`` record for every dispatch.
"""

import threading
from dataclasses import dataclass
from typing import Any

import structlog

# Initialize logger
logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProgressSnapshot:
    """Immutable snapshot of progress at a point in time.

    Attributes:
        total: Total number of tasks
        dispatched: Tasks handed to a job slot so far
        succeeded: Tasks that finished successfully
        failed: Tasks that finished after exhausting retries
        in_progress: Dispatched tasks that have not finished
    """

    total: int
    dispatched: int
    succeeded: int
    failed: int
    in_progress: int

    @property
    def percent(self) -> int:
        if self.total == 0:
            return 100
        return self.dispatched * 100 // self.total


class ProgressMonitor:
    """Thread-safe counters for one install run.

    Example:
        >>> monitor = ProgressMonitor(total_tasks=3)
        >>> monitor.task_dispatched("wget")
        >>> monitor.task_finished(succeeded=True)
        >>> monitor.report()["succeeded"]
        1
    """

    def __init__(self, total_tasks: int):
        """Initialize progress monitor with total task count.

        Raises:
            ValueError: If total_tasks is negative
        """
        if total_tasks < 0:
            msg = "total_tasks must not be negative"
            raise ValueError(msg)

        self.total_tasks = total_tasks
        self.dispatched = 0
        self.succeeded = 0
        self.failed = 0
        self._lock = threading.Lock()

    def task_dispatched(self, task_id: str) -> None:
        """Record that a task got a job slot and log ``[n/total] (pct%)``."""
        with self._lock:
            self.dispatched += 1
            snapshot = self._create_snapshot()

        logger.info(
            "install_progress",
            task_id=task_id,
            position=snapshot.dispatched,
            total=snapshot.total,
            percent=snapshot.percent,
        )

    def task_finished(self, succeeded: bool) -> None:
        with self._lock:
            if succeeded:
                self.succeeded += 1
            else:
                self.failed += 1

    def get_snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return self._create_snapshot()

    def _create_snapshot(self) -> ProgressSnapshot:
        """Must be called with lock held."""
        return ProgressSnapshot(
            total=self.total_tasks,
            dispatched=self.dispatched,
            succeeded=self.succeeded,
            failed=self.failed,
            in_progress=self.dispatched - self.succeeded - self.failed,
        )

    def report(self) -> dict[str, Any]:
        snapshot = self.get_snapshot()
        return {
            "total": snapshot.total,
            "dispatched": snapshot.dispatched,
            "succeeded": snapshot.succeeded,
            "failed": snapshot.failed,
            "in_progress": snapshot.in_progress,
            "percent": snapshot.percent,
        }
