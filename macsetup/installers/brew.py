"""Homebrew install actions.

This module wraps the ``brew`` command line so the orchestrator can install,
upgrade and roll back formulae and casks. Every invocation is a subprocess
started with ``asyncio.create_subprocess_exec``; nothing is passed through a
shell.
"""

import asyncio
from dataclasses import dataclass

import structlog

from macsetup.errors import InstallerError
from macsetup.orchestrator.ledger import InstallTask

# Initialize logger
logger = structlog.get_logger(__name__)

# Constants
OUTPUT_TAIL_CHARS = 2000


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of one brew invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class BrewInstaller:
    """Install, upgrade and uninstall packages through Homebrew.

    Example:
        >>> installer = BrewInstaller()
        >>> await installer.install(InstallTask("iterm2", cask=True))
        True

    Attributes:
        brew_path: Name or path of the brew executable
        use_sudo: Prefix every invocation with ``sudo``
        preexisting: Ids of tasks already installed before their first attempt
    """

    def __init__(self, brew_path: str = "brew", use_sudo: bool = False):
        self.brew_path = brew_path
        self.use_sudo = use_sudo
        self.preexisting: set[str] = set()
        self._seen: set[str] = set()

    def _command(self, *args: str) -> list[str]:
        command = [self.brew_path, *args]
        if self.use_sudo:
            command.insert(0, "sudo")
        return command

    @staticmethod
    def _package_args(task: InstallTask) -> list[str]:
        return ["--cask", task.name] if task.cask else [task.name]

    async def run_brew(self, *args: str) -> CommandResult:
        """Run brew with the given arguments and capture its output.

        Raises:
            InstallerError: If the executable cannot be started
        """
        command = self._command(*args)
        logger.debug("brew_command_started", command=command)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            msg = f"Cannot run {command[0]}: {e}"
            raise InstallerError(msg) from e

        stdout, stderr = await process.communicate()
        result = CommandResult(
            args=tuple(command),
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

        logger.debug(
            "brew_command_finished",
            command=command,
            returncode=result.returncode,
        )
        return result

    async def is_installed(self, task: InstallTask) -> bool:
        result = await self.run_brew("list", *self._package_args(task))
        return result.ok

    async def install(self, task: InstallTask) -> bool:
        """Upgrade the package if present, install it otherwise.

        Returns:
            True if brew exited successfully
        """
        installed = await self.is_installed(task)
        if task.task_id not in self._seen:
            self._seen.add(task.task_id)
            if installed:
                self.preexisting.add(task.task_id)

        action = "upgrade" if installed else "install"
        result = await self.run_brew(action, *self._package_args(task))

        if result.ok:
            logger.info("brew_action_succeeded", task_id=task.task_id, action=action)
        else:
            logger.warning(
                "brew_action_failed",
                task_id=task.task_id,
                action=action,
                returncode=result.returncode,
                stderr=result.stderr[-OUTPUT_TAIL_CHARS:].strip(),
            )
        return result.ok

    async def uninstall(self, task: InstallTask) -> bool:
        """Force-remove a package left behind by a failed install.

        A package that is not installed, or that was already installed
        before this run first touched it, needs no rollback and counts as
        success.
        """
        if task.task_id in self.preexisting:
            logger.info("rollback_skipped_preexisting", task_id=task.task_id)
            return True

        if not await self.is_installed(task):
            logger.info("rollback_skipped_not_installed", task_id=task.task_id)
            return True

        result = await self.run_brew("uninstall", "--force", *self._package_args(task))
        if not result.ok:
            logger.warning(
                "brew_uninstall_failed",
                task_id=task.task_id,
                returncode=result.returncode,
                stderr=result.stderr[-OUTPUT_TAIL_CHARS:].strip(),
            )
        return result.ok

    async def cleanup(self) -> bool:
        """Run ``brew cleanup``. Failures are logged and reported, not raised."""
        try:
            result = await self.run_brew("cleanup")
        except InstallerError as e:
            logger.warning("brew_cleanup_failed", error=str(e))
            return False

        if not result.ok:
            logger.warning("brew_cleanup_failed", returncode=result.returncode)
        return result.ok
