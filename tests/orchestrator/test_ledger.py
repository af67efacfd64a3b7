"""Unit tests for RunLedger, TaskOutcome and InstallTask."""

import json
import threading
from dataclasses import FrozenInstanceError

import pytest

from macsetup.errors import DuplicateOutcomeError
from macsetup.orchestrator.ledger import InstallTask, RunLedger, TaskOutcome, TaskStatus


def make_outcome(task_id: str, status: TaskStatus, attempts: int = 1, duration: float = 1.0):
    return TaskOutcome(
        task_id=task_id,
        status=status,
        duration_seconds=duration,
        attempts=attempts,
    )


@pytest.fixture
def ledger():
    """Create a fresh RunLedger for each test."""
    return RunLedger()


class TestInstallTask:
    """Tests for the InstallTask dataclass."""

    def test_task_id_is_package_name(self):
        assert InstallTask("iterm2", cask=True).task_id == "iterm2"

    def test_defaults_to_formula(self):
        assert InstallTask("wget").cask is False

    def test_str_marks_casks(self):
        assert str(InstallTask("vlc", cask=True)) == "vlc (cask)"
        assert str(InstallTask("git")) == "git"

    def test_is_immutable(self):
        task = InstallTask("git")
        with pytest.raises(FrozenInstanceError):
            task.name = "wget"


class TestRunLedger:
    """Tests for RunLedger."""

    def test_initially_empty(self, ledger):
        assert len(ledger) == 0
        assert ledger.rollback_set == frozenset()
        assert ledger.all_succeeded is True

    def test_record_success(self, ledger):
        ledger.record(make_outcome("git", TaskStatus.SUCCEEDED))

        assert "git" in ledger
        assert ledger.get("git").succeeded is True
        assert ledger.rollback_set == frozenset()

    def test_failed_task_enters_rollback_set(self, ledger):
        ledger.record(make_outcome("docker", TaskStatus.FAILED, attempts=3))

        assert ledger.rollback_set == frozenset({"docker"})
        assert ledger.all_succeeded is False

    def test_cancelled_task_not_rolled_back(self, ledger):
        ledger.record(make_outcome("vlc", TaskStatus.CANCELLED, attempts=0))

        assert ledger.rollback_set == frozenset()
        assert [o.task_id for o in ledger.cancelled()] == ["vlc"]

    def test_duplicate_outcome_rejected(self, ledger):
        ledger.record(make_outcome("git", TaskStatus.SUCCEEDED))

        with pytest.raises(DuplicateOutcomeError, match="git"):
            ledger.record(make_outcome("git", TaskStatus.FAILED))

        assert ledger.get("git").status is TaskStatus.SUCCEEDED
        assert ledger.rollback_set == frozenset()

    def test_timings_in_completion_order(self, ledger):
        ledger.record(make_outcome("b", TaskStatus.SUCCEEDED, duration=2.0))
        ledger.record(make_outcome("a", TaskStatus.FAILED, duration=0.5))

        assert ledger.timings() == [("b", 2.0), ("a", 0.5)]

    def test_summary(self, ledger):
        ledger.record(make_outcome("git", TaskStatus.SUCCEEDED))
        ledger.record(make_outcome("docker", TaskStatus.FAILED))
        ledger.record(make_outcome("vlc", TaskStatus.CANCELLED, attempts=0, duration=0.0))

        summary = ledger.get_summary()

        assert summary["total_tasks"] == 3
        assert summary["succeeded"] == ["git"]
        assert summary["failed"] == ["docker"]
        assert summary["cancelled"] == ["vlc"]
        assert summary["rollback"] == ["docker"]
        assert summary["timings"] == {"git": 1.0, "docker": 1.0, "vlc": 0.0}

    def test_concurrent_records_are_not_lost(self, ledger):
        """Outcomes recorded from many threads all land in the ledger."""

        def worker(start: int):
            for i in range(start, start + 50):
                status = TaskStatus.FAILED if i % 2 else TaskStatus.SUCCEEDED
                ledger.record(make_outcome(f"pkg-{i}", status))

        threads = [threading.Thread(target=worker, args=(n * 50,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(ledger) == 400
        assert len(ledger.rollback_set) == 200
        assert len(ledger.timings()) == 400

    def test_export_json(self, ledger, tmp_path):
        ledger.record(make_outcome("git", TaskStatus.SUCCEEDED))
        ledger.record(make_outcome("docker", TaskStatus.FAILED, attempts=3))
        report = tmp_path / "reports" / "run.json"

        ledger.export_json(report)

        data = json.loads(report.read_text())
        assert data["summary"]["failed"] == ["docker"]
        assert [o["task_id"] for o in data["outcomes"]] == ["git", "docker"]
        assert data["outcomes"][1]["status"] == "failed"
        assert data["outcomes"][1]["attempts"] == 3
