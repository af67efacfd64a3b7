"""Run ledger: per-task outcomes and the rollback set.

This module provides the data model of an install run and the thread-safe
ledger that concurrent task completions write their outcomes into.
"""

import json
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from macsetup.errors import DuplicateOutcomeError


class TaskStatus(Enum):
    """Final status of one install task."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class InstallTask:
    """One package to install or upgrade.

    Attributes:
        name: Homebrew formula or cask name
        cask: True for a cask, False for a native formula
    """

    name: str
    cask: bool = False

    @property
    def task_id(self) -> str:
        return self.name

    def __str__(self) -> str:
        return f"{self.name} (cask)" if self.cask else self.name


@dataclass(frozen=True)
class TaskOutcome:
    """Result of running one task through the retry loop.

    Attributes:
        task_id: Identifier of the task
        status: Final task status
        duration_seconds: Start of first attempt to end of last attempt
        attempts: Number of install attempts made (0 if never dispatched)
        started_at: Wall-clock time of the first attempt
        finished_at: Wall-clock time the last attempt ended
        error: Text of the last failure, if any
    """

    task_id: str
    status: TaskStatus
    duration_seconds: float
    attempts: int
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is TaskStatus.SUCCEEDED


class RunLedger:
    """Owned record of one run: one outcome per task plus the rollback set.

    Writes are serialized with a lock so concurrent completions never lose an
    update. A task lands in the rollback set exactly when its outcome is
    ``failed``.
    """

    def __init__(self) -> None:
        """Initialize an empty ledger."""
        self._outcomes: dict[str, TaskOutcome] = {}
        self._completion_order: list[str] = []
        self._rollback: set[str] = set()
        self._lock = threading.Lock()

    def record(self, outcome: TaskOutcome) -> None:
        """Store the outcome of a task.

        Args:
            outcome: Outcome to store

        Raises:
            DuplicateOutcomeError: If the task already has an outcome
        """
        with self._lock:
            if outcome.task_id in self._outcomes:
                msg = f"Outcome already recorded for task {outcome.task_id}"
                raise DuplicateOutcomeError(msg)

            self._outcomes[outcome.task_id] = outcome
            self._completion_order.append(outcome.task_id)
            if outcome.status is TaskStatus.FAILED:
                self._rollback.add(outcome.task_id)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._outcomes

    def __len__(self) -> int:
        return len(self._outcomes)

    def get(self, task_id: str) -> TaskOutcome | None:
        return self._outcomes.get(task_id)

    @property
    def outcomes(self) -> dict[str, TaskOutcome]:
        with self._lock:
            return dict(self._outcomes)

    @property
    def rollback_set(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._rollback)

    def by_status(self, status: TaskStatus) -> list[TaskOutcome]:
        """Outcomes with the given status, in completion order."""
        with self._lock:
            return [
                self._outcomes[task_id]
                for task_id in self._completion_order
                if self._outcomes[task_id].status is status
            ]

    def succeeded(self) -> list[TaskOutcome]:
        return self.by_status(TaskStatus.SUCCEEDED)

    def failed(self) -> list[TaskOutcome]:
        return self.by_status(TaskStatus.FAILED)

    def cancelled(self) -> list[TaskOutcome]:
        return self.by_status(TaskStatus.CANCELLED)

    def timings(self) -> list[tuple[str, float]]:
        """Per-task durations in completion order."""
        with self._lock:
            return [
                (task_id, self._outcomes[task_id].duration_seconds)
                for task_id in self._completion_order
            ]

    @property
    def all_succeeded(self) -> bool:
        with self._lock:
            return all(o.status is TaskStatus.SUCCEEDED for o in self._outcomes.values())

    def get_summary(self) -> dict[str, Any]:
        """Generate the run summary.

        Returns:
            Dictionary containing:
                - total_tasks: Number of recorded tasks
                - succeeded / failed / cancelled: Task ids per status
                - rollback: Sorted task ids that required rollback
                - timings: ``{task_id: seconds}`` in completion order
        """
        return {
            "total_tasks": len(self),
            "succeeded": [o.task_id for o in self.succeeded()],
            "failed": [o.task_id for o in self.failed()],
            "cancelled": [o.task_id for o in self.cancelled()],
            "rollback": sorted(self.rollback_set),
            "timings": dict(self.timings()),
        }

    def export_json(self, filepath: str | Path) -> None:
        """Export the summary and every outcome to a JSON file.

        Args:
            filepath: Path to output JSON file
        """
        filepath = Path(filepath)

        with self._lock:
            outcomes = [
                {**asdict(self._outcomes[task_id]), "status": self._outcomes[task_id].status.value}
                for task_id in self._completion_order
            ]

        data = {"summary": self.get_summary(), "outcomes": outcomes}

        filepath.parent.mkdir(parents=True, exist_ok=True)
        with filepath.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
