"""Preflight checks run before any package is installed.

Hard checks (connectivity, disk space, Homebrew on PATH) always abort the run
when they fail. Soft checks (macOS version, CPU load, free memory) abort too
unless the run is forced, in which case they only log a warning.
"""

import asyncio
import os
import platform
import re
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass

import httpx
import structlog

from macsetup.config import PreflightConfig
from macsetup.errors import PreconditionError

# Initialize logger
logger = structlog.get_logger(__name__)

# Constants
BYTES_PER_GB = 1024**3
BYTES_PER_MB = 1024**2
DEFAULT_PAGE_SIZE = 4096
VM_PAGE_SIZE_PATTERN = re.compile(r"page size of (\d+) bytes")
VM_FREE_PAGES_PATTERN = re.compile(r"^Pages free:\s+(\d+)\.?", re.MULTILINE)
VM_STAT_TIMEOUT_SECONDS = 5


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one preflight check.

    Attributes:
        name: Check identifier
        passed: Whether the check passed (skipped checks pass)
        message: Human-readable detail
        fatal: Whether a failure always aborts, even when forced
    """

    name: str
    passed: bool
    message: str
    fatal: bool = True


def parse_version(version: str) -> tuple[int, ...]:
    """Turn ``13.4.1`` into ``(13, 4, 1)``; non-numeric parts count as 0."""
    parts = []
    for part in version.strip().split("."):
        match = re.match(r"\d+", part)
        parts.append(int(match.group()) if match else 0)
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts)


def current_macos_version() -> str | None:
    """Product version of the running macOS, or None on other systems."""
    version = platform.mac_ver()[0]
    return version or None


def cpu_load_percent() -> float | None:
    """One-minute load average as a percentage of available CPUs."""
    try:
        load_1m = os.getloadavg()[0]
    except (AttributeError, OSError):
        return None
    return load_1m / (os.cpu_count() or 1) * 100


def parse_vm_stat(output: str) -> int | None:
    """Free memory in megabytes from ``vm_stat`` output."""
    free_match = VM_FREE_PAGES_PATTERN.search(output)
    if free_match is None:
        return None
    size_match = VM_PAGE_SIZE_PATTERN.search(output)
    page_size = int(size_match.group(1)) if size_match else DEFAULT_PAGE_SIZE
    return int(free_match.group(1)) * page_size // BYTES_PER_MB


def free_memory_mb() -> int | None:
    """Free memory reported by ``vm_stat``, or None when unavailable."""
    try:
        completed = subprocess.run(
            ["vm_stat"],
            capture_output=True,
            text=True,
            check=False,
            timeout=VM_STAT_TIMEOUT_SECONDS,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.debug("vm_stat_unavailable", error=str(e))
        return None
    if completed.returncode != 0:
        return None
    return parse_vm_stat(completed.stdout)


def free_disk_bytes(path: str = "/") -> int:
    return shutil.disk_usage(path).free


class PreflightChecker:
    """Runs the preflight checks in order and stops at the first blocker.

    Example:
        >>> checker = PreflightChecker(config.preflight, force=args.force)
        >>> results = await checker.run()

    Attributes:
        settings: Thresholds from the ``preflight`` configuration section
        force: Downgrade soft check failures to warnings
        require_brew: Whether Homebrew must be on PATH
        brew_path: Name or path of the brew executable
    """

    def __init__(
        self,
        settings: PreflightConfig,
        client: httpx.AsyncClient | None = None,
        force: bool = False,
        require_brew: bool = True,
        brew_path: str = "brew",
        disk_path: str = "/",
    ):
        self.settings = settings
        self.force = force
        self.require_brew = require_brew
        self.brew_path = brew_path
        self.disk_path = disk_path
        self._client = client

    async def run(self) -> list[CheckResult]:
        """Run every check.

        Returns:
            Results of all checks that ran

        Raises:
            PreconditionError: On the first hard failure, or the first soft
                failure when not forced
        """
        connectivity = await self.check_connectivity()
        self._handle(connectivity)
        results = [connectivity]

        checks: list[Callable[[], CheckResult]] = [
            self.check_macos_version,
            self.check_cpu_load,
            self.check_free_memory,
            self.check_disk_space,
        ]
        if self.require_brew:
            checks.append(self.check_homebrew)

        for check in checks:
            # Local probes shell out or stat the disk; keep them off the event loop.
            result = await asyncio.to_thread(check)
            results.append(result)
            self._handle(result)

        logger.info("preflight_passed", checks=[r.name for r in results])
        return results

    def _handle(self, result: CheckResult) -> None:
        if result.passed:
            logger.info("preflight_check_passed", check=result.name, detail=result.message)
            return

        if not result.fatal and self.force:
            logger.warning("preflight_check_overridden", check=result.name, detail=result.message)
            return

        logger.error("preflight_check_failed", check=result.name, detail=result.message)
        raise PreconditionError(result.message, check=result.name)

    async def check_connectivity(self) -> CheckResult:
        """Probe the configured endpoints until one answers."""
        client = self._client or httpx.AsyncClient(
            timeout=self.settings.connectivity_timeout_seconds,
        )
        try:
            for endpoint in self.settings.connectivity_endpoints:
                url = endpoint if "://" in endpoint else f"https://{endpoint}"
                try:
                    response = await client.head(url)
                except httpx.HTTPError as e:
                    logger.debug("connectivity_probe_failed", endpoint=endpoint, error=str(e))
                    continue
                return CheckResult(
                    name="connectivity",
                    passed=True,
                    message=f"Internet connection verified through {endpoint} "
                    f"(HTTP {response.status_code})",
                )
        finally:
            if self._client is None:
                await client.aclose()

        return CheckResult(
            name="connectivity",
            passed=False,
            message="No internet connection detected through "
            + ", ".join(self.settings.connectivity_endpoints),
        )

    def check_macos_version(self) -> CheckResult:
        required = self.settings.required_macos_version
        current = current_macos_version()
        if current is None:
            return CheckResult(
                name="macos_version",
                passed=True,
                message="Not running on macOS, version check skipped",
                fatal=False,
            )

        if parse_version(current) < parse_version(required):
            return CheckResult(
                name="macos_version",
                passed=False,
                message=f"macOS {required} or later is required, found {current}",
                fatal=False,
            )
        return CheckResult(
            name="macos_version",
            passed=True,
            message=f"macOS version validated: {current}",
            fatal=False,
        )

    def check_cpu_load(self) -> CheckResult:
        load = cpu_load_percent()
        if load is None:
            return CheckResult("cpu_load", True, "CPU load unavailable, check skipped", fatal=False)

        if load > self.settings.max_cpu_percent:
            return CheckResult(
                name="cpu_load",
                passed=False,
                message=f"High CPU usage detected: {load:.0f}%",
                fatal=False,
            )
        return CheckResult("cpu_load", True, f"CPU usage {load:.0f}%", fatal=False)

    def check_free_memory(self) -> CheckResult:
        free_mb = free_memory_mb()
        if free_mb is None:
            return CheckResult("free_memory", True, "vm_stat unavailable, check skipped", fatal=False)

        if free_mb < self.settings.min_free_memory_mb:
            return CheckResult(
                name="free_memory",
                passed=False,
                message=f"Low free RAM detected: {free_mb} MB",
                fatal=False,
            )
        return CheckResult("free_memory", True, f"Free RAM {free_mb} MB", fatal=False)

    def check_disk_space(self) -> CheckResult:
        free = free_disk_bytes(self.disk_path)
        required = int(self.settings.required_disk_gb * BYTES_PER_GB)
        free_gb = free / BYTES_PER_GB

        if free < required:
            return CheckResult(
                name="disk_space",
                passed=False,
                message=f"Insufficient disk space: {free_gb:.1f} GB free, "
                f"{self.settings.required_disk_gb:g} GB required",
            )
        return CheckResult("disk_space", True, f"Available disk space: {free_gb:.1f} GB")

    def check_homebrew(self) -> CheckResult:
        location = shutil.which(self.brew_path)
        if location is None:
            return CheckResult(
                name="homebrew",
                passed=False,
                message=f"{self.brew_path} not found on PATH, install Homebrew from https://brew.sh",
            )
        return CheckResult("homebrew", True, f"Homebrew found at {location}")
