"""Install Orchestration with Bounded Concurrency and Rollback.

This module implements the TaskOrchestrator class that runs independent
install tasks through the retry loop with at most ``max_parallel_jobs``
executing at once, records every outcome in a RunLedger, and uninstalls
whatever failed once all tasks have finished.
"""

import asyncio
import functools
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

import structlog

from macsetup.errors import PreconditionError
from macsetup.log_config import bind_context
from macsetup.orchestrator.cancellation import CancellationToken
from macsetup.orchestrator.ledger import InstallTask, RunLedger, TaskOutcome, TaskStatus
from macsetup.orchestrator.progress import ProgressMonitor
from macsetup.orchestrator.retry import RetryConfig, execute_with_retry

# Initialize logger
logger = structlog.get_logger(__name__)

Precondition = Callable[[], Awaitable[Any]]


class Installer(Protocol):
    """Install and compensating uninstall actions for one task."""

    async def install(self, task: InstallTask) -> bool: ...

    async def uninstall(self, task: InstallTask) -> bool: ...


class TaskOrchestrator:
    """Runs install tasks with a job-slot limit, retries and rollback.

    Key Features:
        - At most ``max_parallel_jobs`` tasks execute concurrently
        - Each task is attempted up to ``max_retries + 1`` times
        - A failed task never stops its siblings
        - Failed tasks are uninstalled after the run, best effort
        - Cancellation stops dispatch; in-flight attempts finish

    Example:
        >>> orchestrator = TaskOrchestrator(
        ...     installer=BrewInstaller(),
        ...     max_parallel_jobs=2,
        ...     retry_config=RetryConfig(max_retries=2),
        ... )
        >>> ledger = await orchestrator.run([InstallTask("wget"), InstallTask("iterm2", cask=True)])
        >>> print(ledger.get_summary()["failed"])

    Attributes:
        installer: Install/uninstall actions
        max_parallel_jobs: Number of job slots
        retry_config: Retry budget and backoff policy
        cancel_token: Token consulted before dispatch and between attempts
        semaphore: Job-slot limiter
        active_tasks: Ids of tasks currently holding a slot
        peak_active: Highest number of simultaneously active tasks seen
        rolled_back: Ids of tasks whose rollback was attempted
    """

    def __init__(
        self,
        installer: Installer,
        max_parallel_jobs: int = 1,
        retry_config: RetryConfig | None = None,
        cancel_token: CancellationToken | None = None,
        preconditions: Sequence[Precondition] = (),
    ):
        """Initialize the orchestrator.

        Args:
            installer: Object providing ``install``/``uninstall`` coroutines
            max_parallel_jobs: Concurrency limit (>= 1)
            retry_config: Retry configuration (default: RetryConfig())
            cancel_token: Shared cancellation token (default: a fresh one)
            preconditions: Coroutine functions awaited before any task starts;
                each signals failure by raising PreconditionError

        Raises:
            ValueError: If max_parallel_jobs is less than 1
        """
        if max_parallel_jobs < 1:
            msg = "max_parallel_jobs must be at least 1"
            raise ValueError(msg)

        self.installer = installer
        self.max_parallel_jobs = max_parallel_jobs
        self.retry_config = retry_config or RetryConfig()
        self.cancel_token = cancel_token or CancellationToken()
        self.preconditions = list(preconditions)

        self.semaphore = asyncio.Semaphore(max_parallel_jobs)
        self.active_tasks: set[str] = set()
        self.peak_active = 0
        self.rolled_back: list[str] = []

        logger.info(
            "task_orchestrator_initialized",
            max_parallel_jobs=max_parallel_jobs,
            max_retries=self.retry_config.max_retries,
            backoff=type(self.retry_config.backoff).__name__,
        )

    async def run(self, tasks: Sequence[InstallTask]) -> RunLedger:
        """Execute every task once and return the run's ledger.

        Preconditions run first; a PreconditionError aborts before any task is
        dispatched. Tasks are then dispatched in order as job slots free up.
        When all dispatched tasks have finished, tasks that were never
        dispatched (because of cancellation) are recorded as cancelled and
        every failed task is rolled back.

        Args:
            tasks: Independent install tasks with unique ids

        Returns:
            RunLedger holding exactly one outcome per task

        Raises:
            PreconditionError: If a precondition fails
            ValueError: If two tasks share an id
        """
        task_ids = [task.task_id for task in tasks]
        if len(set(task_ids)) != len(task_ids):
            msg = "Task ids must be unique"
            raise ValueError(msg)

        await self._check_preconditions()

        ledger = RunLedger()
        monitor = ProgressMonitor(total_tasks=len(tasks))
        in_flight: list[asyncio.Task[None]] = []

        logger.info("orchestration_started", total_tasks=len(tasks), task_ids=task_ids)

        try:
            for task in tasks:
                if not await self._acquire_slot():
                    logger.warning(
                        "dispatch_stopped_cancelled",
                        dispatched=len(in_flight),
                        total_tasks=len(tasks),
                    )
                    break

                monitor.task_dispatched(task.task_id)
                in_flight.append(
                    asyncio.create_task(
                        self._execute_task(task, ledger, monitor),
                        name=f"install:{task.task_id}",
                    ),
                )

            await asyncio.gather(*in_flight)
        finally:
            self._record_undispatched(tasks, ledger)
            await self._rollback(tasks, ledger)

        summary = ledger.get_summary()
        logger.info(
            "orchestration_completed",
            total_tasks=summary["total_tasks"],
            succeeded=len(summary["succeeded"]),
            failed=len(summary["failed"]),
            cancelled=len(summary["cancelled"]),
            peak_active=self.peak_active,
        )

        return ledger

    async def _check_preconditions(self) -> None:
        for precondition in self.preconditions:
            try:
                await precondition()
            except PreconditionError as e:
                logger.error("precondition_failed", check=e.check, error=e.message)
                raise

    async def _acquire_slot(self) -> bool:
        """Wait for a free job slot unless cancellation arrives first.

        Returns:
            True with a slot held, False (holding nothing) if cancelled
        """
        if self.cancel_token.cancelled:
            return False

        acquire = asyncio.ensure_future(self.semaphore.acquire())
        cancelled = asyncio.ensure_future(self.cancel_token.wait())
        await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        cancelled.cancel()

        if not acquire.done():
            acquire.cancel()
        await asyncio.gather(acquire, return_exceptions=True)
        got_slot = not acquire.cancelled() and acquire.exception() is None

        if self.cancel_token.cancelled:
            if got_slot:
                self.semaphore.release()
            return False
        return got_slot

    async def _execute_task(
        self,
        task: InstallTask,
        ledger: RunLedger,
        monitor: ProgressMonitor,
    ) -> None:
        """Run one task through the retry loop. The caller holds its slot."""
        bind_context(task_id=task.task_id)
        self.active_tasks.add(task.task_id)
        self.peak_active = max(self.peak_active, len(self.active_tasks))

        try:
            result = await execute_with_retry(
                task_id=task.task_id,
                func=functools.partial(self.installer.install, task),
                max_retries=self.retry_config.max_retries,
                backoff=self.retry_config.backoff,
                cancel_token=self.cancel_token,
            )

            outcome = TaskOutcome(
                task_id=task.task_id,
                status=TaskStatus.SUCCEEDED if result.succeeded else TaskStatus.FAILED,
                duration_seconds=result.duration_seconds,
                attempts=result.attempts,
                started_at=result.started_at,
                finished_at=result.finished_at,
                error=result.error,
            )
            ledger.record(outcome)
            monitor.task_finished(result.succeeded)
        finally:
            self.active_tasks.discard(task.task_id)
            self.semaphore.release()

        if outcome.succeeded:
            logger.info(
                "task_succeeded",
                task_id=task.task_id,
                attempts=outcome.attempts,
                duration_seconds=round(outcome.duration_seconds, 3),
            )
        else:
            logger.error(
                "task_failed",
                task_id=task.task_id,
                attempts=outcome.attempts,
                duration_seconds=round(outcome.duration_seconds, 3),
                error=outcome.error,
            )

    def _record_undispatched(self, tasks: Sequence[InstallTask], ledger: RunLedger) -> None:
        for task in tasks:
            if task.task_id not in ledger:
                ledger.record(
                    TaskOutcome(
                        task_id=task.task_id,
                        status=TaskStatus.CANCELLED,
                        duration_seconds=0.0,
                        attempts=0,
                    ),
                )
                logger.warning("task_cancelled_not_dispatched", task_id=task.task_id)

    async def _rollback(self, tasks: Sequence[InstallTask], ledger: RunLedger) -> None:
        """Uninstall every failed task. Errors are logged, never raised."""
        rollback_ids = sorted(ledger.rollback_set)
        if not rollback_ids:
            return

        by_id = {task.task_id: task for task in tasks}
        logger.warning("rollback_started", task_ids=rollback_ids)

        for task_id in rollback_ids:
            self.rolled_back.append(task_id)
            try:
                removed = await self.installer.uninstall(by_id[task_id])
            except Exception as e:
                logger.warning(
                    "rollback_failed",
                    task_id=task_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            if removed:
                logger.info("rollback_completed", task_id=task_id)
            else:
                logger.warning("rollback_failed", task_id=task_id, error="uninstall reported failure")

    def get_stats(self) -> dict[str, Any]:
        """Get orchestration statistics.

        Returns:
            Dictionary with active task count, peak concurrency, slot limit
            and the rolled back task ids
        """
        return {
            "active_tasks": len(self.active_tasks),
            "peak_active": self.peak_active,
            "max_parallel_jobs": self.max_parallel_jobs,
            "rolled_back": list(self.rolled_back),
        }
