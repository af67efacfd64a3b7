"""Exception hierarchy for the installer.

Fatal errors (ConfigError, PreconditionError) abort a run before any task is
dispatched. Installer failures are contained by the retry loop and never
escape a single task.
"""


class MacSetupError(Exception):
    """Base class for all installer errors."""


class ConfigError(MacSetupError):
    """Configuration file missing, unreadable, or invalid."""


class PreconditionError(MacSetupError):
    """A preflight check failed before any task started.

    Attributes:
        check: Name of the failed check
    """

    def __init__(self, message: str, check: str | None = None):
        super().__init__(message)
        self.message = message
        self.check = check


class InstallerError(MacSetupError):
    """The package manager could not be invoked at all."""


class DuplicateOutcomeError(MacSetupError):
    """A second outcome was recorded for a task already in the ledger."""
