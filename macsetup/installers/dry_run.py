"""Dry-run installer: logs what would happen and reports success."""

import structlog

from macsetup.orchestrator.ledger import InstallTask

logger = structlog.get_logger(__name__)


class DryRunInstaller:
    """Stand-in for a real installer that never touches the system.

    Every install is reported as successful, so a dry run exercises the same
    dispatch and summary path as a real run without triggering retries or
    rollback.
    """

    def __init__(self) -> None:
        self.planned: list[InstallTask] = []

    async def install(self, task: InstallTask) -> bool:
        self.planned.append(task)
        logger.info("dry_run_install", task_id=task.task_id, cask=task.cask)
        return True

    async def uninstall(self, task: InstallTask) -> bool:
        logger.info("dry_run_uninstall", task_id=task.task_id, cask=task.cask)
        return True

    async def cleanup(self) -> bool:
        logger.info("dry_run_cleanup")
        return True
