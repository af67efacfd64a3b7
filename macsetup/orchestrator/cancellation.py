"""Cancellation token shared between the signal handlers and the orchestrator.

The token is only consulted at safe points: before a task is dispatched and
between install attempts. An attempt that has started always runs to
completion.
"""

import asyncio

from macsetup.log_config import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """One-way flag that requests a run to stop dispatching work."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Repeated calls keep the first reason."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.warning("cancellation_requested", reason=reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds unless cancelled first.

        Returns:
            True if the full delay elapsed, False if cancellation cut it short
        """
        if self.cancelled:
            return False
        if delay <= 0:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except TimeoutError:
            return True
        return False
