"""Configuration Management with Pydantic.

This module implements configuration models using Pydantic for parsing and
validation of YAML configuration files with environment variable overrides,
plus the parser for the ``name[:variant]`` application list.
"""

import os
import re
from collections.abc import Iterable
from pathlib import Path

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from macsetup.errors import ConfigError
from macsetup.orchestrator.ledger import InstallTask

# Initialize logger
logger = structlog.get_logger(__name__)

# Constants
DEFAULT_CONFIG_NAMES = ("config.yaml", "config.yml")
DEFAULT_ENDPOINTS = ["google.com", "cloudflare.com", "github.com"]
HIGH_PARALLELISM_THRESHOLD = 8
CASK_VARIANTS = frozenset({"true", "cask"})
FORMULA_VARIANTS = frozenset({"", "false", "formula"})
PACKAGE_NAME_PATTERN = re.compile(r"^[\w@+.-]+(/[\w@+.-]+)*$")


class InstallerConfig(BaseModel):
    """Retry, concurrency and backoff settings for the install run.

    Attributes:
        max_retries: Retries after the first attempt (MAX_RETRIES)
        retry_delay_seconds: Base backoff delay (RETRY_DELAY)
        max_parallel_jobs: Number of job slots (MAX_PARALLEL_JOBS)
        backoff: Backoff policy name, ``linear`` or ``exponential``
        jitter_seconds: Upper bound of random jitter for linear backoff
        max_backoff_seconds: Optional cap for exponential backoff
        use_sudo: Prefix brew invocations with sudo
    """

    max_retries: int = Field(ge=0, description="Retries after the first attempt")
    retry_delay_seconds: int = Field(ge=0, description="Base delay between retries")
    max_parallel_jobs: int = Field(default=4, ge=1, description="Concurrent install slots")
    backoff: str = Field(
        default="linear",
        pattern=r"^(linear|exponential)$",
        description="Backoff policy",
    )
    jitter_seconds: float = Field(default=1.0, ge=0, description="Linear backoff jitter")
    max_backoff_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Cap for exponential backoff",
    )
    use_sudo: bool = Field(default=False, description="Run brew through sudo")


class PreflightConfig(BaseModel):
    """Thresholds for the checks run before any install starts.

    Attributes:
        required_macos_version: Minimum macOS version, e.g. ``13.0``
        required_disk_gb: Minimum free space on ``/`` in gigabytes
        max_cpu_percent: Highest tolerated CPU load percentage
        min_free_memory_mb: Lowest tolerated free memory in megabytes
        connectivity_endpoints: Hosts probed for internet access
        connectivity_timeout_seconds: Per-probe timeout
    """

    required_macos_version: str = Field(
        pattern=r"^\d+(\.\d+){0,2}$",
        description="Minimum macOS version",
    )
    required_disk_gb: float = Field(default=10, ge=0)
    max_cpu_percent: float = Field(default=80, gt=0)
    min_free_memory_mb: int = Field(default=1024, ge=0)
    connectivity_endpoints: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ENDPOINTS),
        min_length=1,
    )
    connectivity_timeout_seconds: float = Field(default=5.0, gt=0)

    model_config = {"str_strip_whitespace": True}


class MacSetupConfig(BaseModel):
    """Main configuration combining all settings.

    Attributes:
        installer: Retry and concurrency configuration
        preflight: Precondition thresholds
        dry_run: Log intended installs instead of running brew (DRY_RUN)
        verbose: Show INFO records on the console (VERBOSE_MODE)
        log_file: Path of the newline-delimited JSON log
        logging_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        apps: Inline ``name[:variant]`` entries
        apps_file: File of ``name[:variant]`` entries, one per line
    """

    installer: InstallerConfig
    preflight: PreflightConfig
    dry_run: bool = False
    verbose: bool = True
    log_file: str = "install_log.jsonl"
    logging_level: str = Field(
        default="INFO",
        description="Logging level",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
    )
    apps: list[str] = Field(default_factory=list)
    apps_file: str | None = None

    @field_validator("logging_level", mode="before")
    @classmethod
    def normalize_level(cls, v: object) -> object:
        """Accept lower-case level names."""
        return v.upper() if isinstance(v, str) else v

    @classmethod
    def from_yaml(cls, path: str | Path) -> "MacSetupConfig":
        """Load configuration from a YAML file.

        Relative ``apps_file`` paths are resolved against the directory of
        the configuration file.

        Args:
            path: Path to the YAML configuration file

        Returns:
            Parsed and validated MacSetupConfig instance

        Raises:
            ConfigError: If the file is missing, empty, not valid YAML, or
                fails validation (including missing required keys)
        """
        config_path = Path(path)

        if not config_path.is_file():
            msg = f"Configuration file not found: {config_path}"
            raise ConfigError(msg)

        logger.info("loading_configuration", path=str(config_path))

        try:
            with config_path.open(encoding="utf-8") as f:
                config_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.exception("yaml_parse_error", error=str(e), path=str(config_path))
            msg = f"Invalid YAML in configuration file: {e}"
            raise ConfigError(msg) from e

        if not config_data:
            msg = f"Configuration file is empty: {config_path}"
            raise ConfigError(msg)
        if not isinstance(config_data, dict):
            msg = f"Configuration file must contain a mapping: {config_path}"
            raise ConfigError(msg)

        config_data = cls._apply_env_overrides(config_data)

        apps_file = config_data.get("apps_file")
        if apps_file and not Path(apps_file).is_absolute():
            config_data["apps_file"] = str(config_path.parent / apps_file)

        try:
            config = cls(**config_data)
        except ValidationError as e:
            msg = f"Invalid configuration in {config_path}: {e}"
            raise ConfigError(msg) from e

        logger.info(
            "configuration_loaded",
            max_retries=config.installer.max_retries,
            max_parallel_jobs=config.installer.max_parallel_jobs,
            dry_run=config.dry_run,
        )
        return config

    @classmethod
    def _apply_env_overrides(cls, config_data: dict) -> dict:
        """Apply environment variable overrides to configuration.

        Args:
            config_data: Base configuration dictionary from file

        Returns:
            Configuration dictionary with environment overrides applied

        Raises:
            ConfigError: If an integer override is not a number
        """
        env_overrides = {
            ("installer", "max_retries"): "MACSETUP_MAX_RETRIES",
            ("installer", "retry_delay_seconds"): "MACSETUP_RETRY_DELAY",
            ("installer", "max_parallel_jobs"): "MACSETUP_MAX_PARALLEL_JOBS",
            ("dry_run",): "MACSETUP_DRY_RUN",
            ("verbose",): "MACSETUP_VERBOSE_MODE",
            ("logging_level",): "MACSETUP_LOGGING_LEVEL",
            ("log_file",): "MACSETUP_LOG_FILE",
        }

        for path, env_var in env_overrides.items():
            value = os.environ.get(env_var)
            if value is None:
                continue

            current = config_data
            for key in path[:-1]:
                if not isinstance(current.get(key), dict):
                    current[key] = {}
                current = current[key]

            if env_var.endswith(("_RETRIES", "_DELAY", "_JOBS")):
                try:
                    value = int(value)
                except ValueError as e:
                    msg = f"{env_var} must be an integer, got {value!r}"
                    raise ConfigError(msg) from e
            elif env_var.endswith(("_RUN", "_MODE")):
                value = value.strip().lower() in ("true", "1", "yes")

            current[path[-1]] = value
            logger.debug(
                "env_override_applied",
                env_var=env_var,
                config_path=".".join(path),
            )

        return config_data

    def load_tasks(self) -> list[InstallTask]:
        """Build the task list from ``apps_file`` followed by inline ``apps``.

        Returns:
            InstallTasks in configuration order

        Raises:
            ConfigError: If the apps file is missing or an entry is invalid
        """
        lines: list[str] = []
        if self.apps_file:
            apps_path = Path(self.apps_file)
            if not apps_path.is_file():
                msg = f"Applications file not found: {apps_path}"
                raise ConfigError(msg)
            lines.extend(apps_path.read_text(encoding="utf-8").splitlines())
        lines.extend(self.apps)
        return parse_task_list(lines)

    def validate_config(self) -> list[str]:
        """Validate configuration and return list of warnings.

        Returns:
            List of validation warning messages (empty if no warnings)
        """
        warnings = []

        if self.dry_run:
            warnings.append("Dry run is enabled - nothing will be installed")

        if self.installer.use_sudo:
            warnings.append("use_sudo is enabled - recent Homebrew releases refuse to run as root")

        if self.installer.max_parallel_jobs > HIGH_PARALLELISM_THRESHOLD:
            warnings.append(
                f"max_parallel_jobs is {self.installer.max_parallel_jobs} - "
                "Homebrew serializes on its own lock, extra slots mostly wait",
            )

        if self.installer.max_retries > 0 and self.installer.retry_delay_seconds == 0:
            warnings.append("Retries are enabled with a zero retry delay")

        return warnings


def parse_task_entry(entry: str) -> InstallTask:
    """Parse one ``name[:variant]`` entry.

    The variant is ``true``/``cask`` for a cask and ``false``/``formula``
    (or omitted) for a formula.

    Raises:
        ConfigError: If the name or variant is invalid
    """
    name, _, variant = entry.strip().partition(":")
    name = name.strip()
    variant = variant.strip().lower()

    if not PACKAGE_NAME_PATTERN.match(name):
        msg = f"Invalid package name in entry {entry!r}"
        raise ConfigError(msg)

    if variant in CASK_VARIANTS:
        return InstallTask(name=name, cask=True)
    if variant in FORMULA_VARIANTS:
        return InstallTask(name=name, cask=False)

    msg = f"Unknown variant {variant!r} in entry {entry!r}"
    raise ConfigError(msg)


def parse_task_list(lines: Iterable[str]) -> list[InstallTask]:
    """Parse application entries, skipping blank lines and ``#`` comments.

    Args:
        lines: Raw entry lines

    Returns:
        InstallTasks in input order

    Raises:
        ConfigError: If an entry is invalid or a package is listed twice
    """
    tasks: list[InstallTask] = []
    seen: set[str] = set()

    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        task = parse_task_entry(line)
        if task.name in seen:
            msg = f"Package listed more than once: {task.name}"
            raise ConfigError(msg)
        seen.add(task.name)
        tasks.append(task)

    return tasks


def find_config_file(config_path: str | Path | None = None) -> Path:
    """Resolve the configuration path, falling back to config.yaml/config.yml.

    Raises:
        ConfigError: If no configuration file exists
    """
    if config_path is not None:
        return Path(config_path)

    for default_name in DEFAULT_CONFIG_NAMES:
        default_path = Path(default_name)
        if default_path.exists():
            return default_path

    msg = "No configuration file found. Expected config.yaml or config.yml"
    raise ConfigError(msg)


def load_config(config_path: str | Path | None = None) -> MacSetupConfig:
    """Load configuration from file."""
    return MacSetupConfig.from_yaml(find_config_file(config_path))


__all__ = [
    "InstallerConfig",
    "MacSetupConfig",
    "PreflightConfig",
    "load_config",
    "parse_task_entry",
    "parse_task_list",
]
