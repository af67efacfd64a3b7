"""Bounded Retry with Pluggable Backoff for Install Tasks.

This module provides the per-task retry loop. An install action is attempted
up to ``max_retries + 1`` times; between failed attempts the loop waits for
the delay chosen by a backoff policy. Policies are plain objects with a
``delay(attempt)`` method so callers can swap linear-with-jitter for
exponential backoff, or supply their own.
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from macsetup.log_config import get_logger
from macsetup.orchestrator.cancellation import CancellationToken

if TYPE_CHECKING:
    from macsetup.config import InstallerConfig

# Initialize logger
logger = get_logger(__name__)


class BackoffPolicy(Protocol):
    """Delay function between retry attempts."""

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        ...


@dataclass(frozen=True)
class LinearJitterBackoff:
    """``base * attempt + uniform(0, jitter)``.

    Attributes:
        base_seconds: Delay added per attempt
        jitter_seconds: Upper bound of the random jitter
        rng: Random source, injectable for deterministic tests
    """

    base_seconds: float
    jitter_seconds: float = 0.0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def delay(self, attempt: int) -> float:
        jitter = self.rng.uniform(0, self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        return self.base_seconds * attempt + jitter


@dataclass(frozen=True)
class ExponentialBackoff:
    """``base * 2^(attempt-1)``, optionally capped at ``max_delay_seconds``.

    attempt=1: base, attempt=2: 2 * base, attempt=3: 4 * base
    """

    base_seconds: float
    max_delay_seconds: float | None = None

    def delay(self, attempt: int) -> float:
        delay = self.base_seconds * (2 ** (attempt - 1))
        if self.max_delay_seconds is not None:
            return min(delay, self.max_delay_seconds)
        return delay


def build_backoff_policy(
    name: str,
    base_seconds: float,
    jitter_seconds: float = 0.0,
    max_delay_seconds: float | None = None,
) -> BackoffPolicy:
    """Create a backoff policy by configuration name.

    Args:
        name: ``linear`` or ``exponential``
        base_seconds: Base delay
        jitter_seconds: Jitter bound (linear only)
        max_delay_seconds: Delay cap (exponential only)

    Raises:
        ValueError: If the policy name is unknown
    """
    if name == "linear":
        return LinearJitterBackoff(base_seconds=base_seconds, jitter_seconds=jitter_seconds)
    if name == "exponential":
        return ExponentialBackoff(base_seconds=base_seconds, max_delay_seconds=max_delay_seconds)
    msg = f"Unknown backoff policy: {name}"
    raise ValueError(msg)


@dataclass(frozen=True)
class RetryResult:
    """What the retry loop observed for one task.

    Attributes:
        succeeded: Whether an attempt succeeded
        attempts: Attempts made, between 1 and max_retries + 1
        duration_seconds: Start of first attempt to end of last attempt
        started_at: Wall-clock start of the first attempt
        finished_at: Wall-clock end of the last attempt
        error: Text of the last failure (None on success)
    """

    succeeded: bool
    attempts: int
    duration_seconds: float
    started_at: datetime
    finished_at: datetime
    error: str | None = None


async def execute_with_retry(
    task_id: str,
    func: Callable[[], Awaitable[bool]],
    max_retries: int,
    backoff: BackoffPolicy,
    cancel_token: CancellationToken | None = None,
) -> RetryResult:
    """Run an install action with bounded retries.

    A falsy return value or a raised exception both count as a failed
    attempt. After failed attempt ``a`` with ``a <= max_retries`` the loop
    waits ``backoff.delay(a)`` and tries again. Once cancellation is
    requested no further attempt starts and any backoff wait ends early.

    Args:
        task_id: Identifier for the task (for logging)
        func: Zero-argument coroutine function performing one attempt
        max_retries: Retries after the first attempt (>= 0)
        backoff: Policy producing the delay before each retry
        cancel_token: Optional token checked between attempts

    Returns:
        RetryResult describing the final attempt

    Raises:
        ValueError: If max_retries is negative
    """
    if max_retries < 0:
        msg = "max_retries must be non-negative"
        raise ValueError(msg)

    max_attempts = max_retries + 1
    started_at = datetime.now(UTC)
    start = time.monotonic()
    error: str | None = None
    succeeded = False
    attempt = 0

    for attempt in range(1, max_attempts + 1):
        logger.info(
            "task_attempt_started",
            task_id=task_id,
            attempt=attempt,
            max_attempts=max_attempts,
        )

        try:
            succeeded = bool(await func())
            error = None if succeeded else "installer reported failure"
        except Exception as e:
            succeeded = False
            error = str(e) or type(e).__name__
            logger.warning(
                "task_attempt_raised",
                task_id=task_id,
                attempt=attempt,
                error=error,
                error_type=type(e).__name__,
            )

        if succeeded:
            break

        logger.warning(
            "task_attempt_failed",
            task_id=task_id,
            attempt=attempt,
            max_attempts=max_attempts,
            error=error,
        )

        if attempt >= max_attempts:
            break

        if cancel_token is not None and cancel_token.cancelled:
            logger.warning("retry_abandoned_cancelled", task_id=task_id, attempt=attempt)
            break

        delay = backoff.delay(attempt)
        logger.info(
            "retry_backoff_delay",
            task_id=task_id,
            attempt=attempt,
            delay_seconds=round(delay, 3),
            next_attempt=attempt + 1,
        )

        if cancel_token is None:
            await asyncio.sleep(delay)
        elif not await cancel_token.sleep(delay):
            logger.warning("retry_abandoned_cancelled", task_id=task_id, attempt=attempt)
            break

    return RetryResult(
        succeeded=succeeded,
        attempts=attempt,
        duration_seconds=time.monotonic() - start,
        started_at=started_at,
        finished_at=datetime.now(UTC),
        error=error,
    )


class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Retries after the first attempt
        backoff: Policy producing the delay between attempts
    """

    def __init__(self, max_retries: int = 3, backoff: BackoffPolicy | None = None):
        """Initialize retry configuration.

        Args:
            max_retries: Retries after the first attempt (default: 3)
            backoff: Backoff policy (default: linear, 5 seconds, no jitter)

        Raises:
            ValueError: If max_retries is negative
        """
        if max_retries < 0:
            msg = "max_retries must be non-negative"
            raise ValueError(msg)

        self.max_retries = max_retries
        self.backoff = backoff or LinearJitterBackoff(base_seconds=5)

    @classmethod
    def from_installer_config(cls, installer_config: "InstallerConfig") -> "RetryConfig":
        """Create RetryConfig from the ``installer`` configuration section.

        Example:
            >>> from macsetup.config import InstallerConfig
            >>> retry_config = RetryConfig.from_installer_config(
            ...     InstallerConfig(max_retries=3, retry_delay_seconds=5, backoff="exponential")
            ... )
        """
        return cls(
            max_retries=installer_config.max_retries,
            backoff=build_backoff_policy(
                installer_config.backoff,
                base_seconds=installer_config.retry_delay_seconds,
                jitter_seconds=installer_config.jitter_seconds,
                max_delay_seconds=installer_config.max_backoff_seconds,
            ),
        )
