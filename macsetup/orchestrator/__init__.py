"""Orchestrator module for install task execution.

This module contains the TaskOrchestrator (job-slot limiting, retries and
rollback), the retry loop with its backoff policies, and the RunLedger that
records per-task outcomes.
"""

from macsetup.orchestrator.cancellation import CancellationToken
from macsetup.orchestrator.ledger import InstallTask, RunLedger, TaskOutcome, TaskStatus
from macsetup.orchestrator.orchestrator import Installer, TaskOrchestrator
from macsetup.orchestrator.retry import (
    ExponentialBackoff,
    LinearJitterBackoff,
    RetryConfig,
    build_backoff_policy,
    execute_with_retry,
)

__all__ = [
    "CancellationToken",
    "ExponentialBackoff",
    "InstallTask",
    "Installer",
    "LinearJitterBackoff",
    "RetryConfig",
    "RunLedger",
    "TaskOrchestrator",
    "TaskOutcome",
    "TaskStatus",
    "build_backoff_policy",
    "execute_with_retry",
]
