"""Install actions used by the orchestrator.

BrewInstaller drives Homebrew; DryRunInstaller only logs intent.
"""

from macsetup.installers.brew import BrewInstaller, CommandResult
from macsetup.installers.dry_run import DryRunInstaller

__all__ = ["BrewInstaller", "CommandResult", "DryRunInstaller"]
