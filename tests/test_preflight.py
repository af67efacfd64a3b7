"""Tests for the preflight checks."""

import subprocess
import threading

import httpx
import pytest

from macsetup import preflight
from macsetup.config import PreflightConfig
from macsetup.errors import PreconditionError
from macsetup.preflight import (
    BYTES_PER_GB,
    VM_STAT_TIMEOUT_SECONDS,
    PreflightChecker,
    free_memory_mb,
    parse_version,
    parse_vm_stat,
)

VM_STAT_OUTPUT = """\
Mach Virtual Memory Statistics: (page size of 16384 bytes)
Pages free:                               65536.
Pages active:                            350012.
Pages inactive:                          340112.
"""


def ok_transport() -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(200))


def offline_transport() -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("network unreachable", request=request)

    return httpx.MockTransport(handler)


@pytest.fixture
def settings():
    return PreflightConfig(
        required_macos_version="13.0",
        required_disk_gb=10,
        max_cpu_percent=80,
        min_free_memory_mb=1024,
    )


@pytest.fixture
def healthy_machine(monkeypatch):
    """Patch system probes so every local check passes."""
    monkeypatch.setattr(preflight, "current_macos_version", lambda: "14.5")
    monkeypatch.setattr(preflight, "cpu_load_percent", lambda: 12.0)
    monkeypatch.setattr(preflight, "free_memory_mb", lambda: 8192)
    monkeypatch.setattr(preflight, "free_disk_bytes", lambda path="/": 200 * BYTES_PER_GB)
    monkeypatch.setattr(preflight.shutil, "which", lambda name: "/opt/homebrew/bin/brew")


class TestHelpers:
    """Tests for parsing helpers."""

    @pytest.mark.parametrize(
        ("version", "expected"),
        [
            ("13", (13, 0, 0)),
            ("13.4", (13, 4, 0)),
            ("14.5.1", (14, 5, 1)),
            ("15.0b2", (15, 0, 0)),
        ],
    )
    def test_parse_version(self, version, expected):
        assert parse_version(version) == expected

    def test_parse_version_orders_numerically(self):
        assert parse_version("10.15") < parse_version("11.0")
        assert parse_version("13.10") > parse_version("13.9")

    def test_parse_vm_stat(self):
        assert parse_vm_stat(VM_STAT_OUTPUT) == 65536 * 16384 // (1024 * 1024)

    def test_parse_vm_stat_default_page_size(self):
        assert parse_vm_stat("Pages free: 256.\n") == 1

    def test_parse_vm_stat_unrecognized(self):
        assert parse_vm_stat("nothing useful") is None

    def test_free_memory_runs_vm_stat_with_timeout(self, monkeypatch):
        seen = {}

        def fake_run(cmd, **kwargs):
            seen.update(kwargs)
            return subprocess.CompletedProcess(cmd, 0, stdout=VM_STAT_OUTPUT, stderr="")

        monkeypatch.setattr(preflight.subprocess, "run", fake_run)

        assert free_memory_mb() == 1024
        assert seen["timeout"] == VM_STAT_TIMEOUT_SECONDS

    def test_free_memory_hung_vm_stat(self, monkeypatch):
        def hung(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

        monkeypatch.setattr(preflight.subprocess, "run", hung)

        assert free_memory_mb() is None


class TestConnectivity:
    """Tests for the connectivity probe."""

    @pytest.mark.asyncio
    async def test_first_endpoint_answers(self, settings):
        async with httpx.AsyncClient(transport=ok_transport()) as client:
            result = await PreflightChecker(settings, client=client).check_connectivity()

        assert result.passed is True
        assert "google.com" in result.message

    @pytest.mark.asyncio
    async def test_falls_through_to_next_endpoint(self, settings):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.host)
            if request.url.host == "google.com":
                raise httpx.ConnectTimeout("timed out", request=request)
            return httpx.Response(301)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await PreflightChecker(settings, client=client).check_connectivity()

        assert result.passed is True
        assert seen == ["google.com", "cloudflare.com"]

    @pytest.mark.asyncio
    async def test_offline(self, settings):
        async with httpx.AsyncClient(transport=offline_transport()) as client:
            result = await PreflightChecker(settings, client=client).check_connectivity()

        assert result.passed is False
        assert result.fatal is True

    @pytest.mark.asyncio
    async def test_offline_aborts_run_even_when_forced(self, settings, healthy_machine):
        async with httpx.AsyncClient(transport=offline_transport()) as client:
            checker = PreflightChecker(settings, client=client, force=True)
            with pytest.raises(PreconditionError) as exc_info:
                await checker.run()

        assert exc_info.value.check == "connectivity"


class TestRun:
    """Tests for the full preflight sequence."""

    @pytest.mark.asyncio
    async def test_all_checks_pass(self, settings, healthy_machine):
        async with httpx.AsyncClient(transport=ok_transport()) as client:
            results = await PreflightChecker(settings, client=client).run()

        assert [r.name for r in results] == [
            "connectivity",
            "macos_version",
            "cpu_load",
            "free_memory",
            "disk_space",
            "homebrew",
        ]
        assert all(r.passed for r in results)

    @pytest.mark.asyncio
    async def test_homebrew_not_required_for_dry_run(self, settings, healthy_machine, monkeypatch):
        monkeypatch.setattr(preflight.shutil, "which", lambda name: None)

        async with httpx.AsyncClient(transport=ok_transport()) as client:
            results = await PreflightChecker(settings, client=client, require_brew=False).run()

        assert "homebrew" not in [r.name for r in results]

    @pytest.mark.asyncio
    async def test_missing_homebrew_aborts(self, settings, healthy_machine, monkeypatch):
        monkeypatch.setattr(preflight.shutil, "which", lambda name: None)

        async with httpx.AsyncClient(transport=ok_transport()) as client:
            with pytest.raises(PreconditionError, match="brew.sh") as exc_info:
                await PreflightChecker(settings, client=client).run()

        assert exc_info.value.check == "homebrew"

    @pytest.mark.asyncio
    async def test_old_macos_aborts_without_force(self, settings, healthy_machine, monkeypatch):
        monkeypatch.setattr(preflight, "current_macos_version", lambda: "12.7")

        async with httpx.AsyncClient(transport=ok_transport()) as client:
            with pytest.raises(PreconditionError, match="13.0 or later") as exc_info:
                await PreflightChecker(settings, client=client).run()

        assert exc_info.value.check == "macos_version"

    @pytest.mark.asyncio
    async def test_soft_failures_overridden_by_force(self, settings, healthy_machine, monkeypatch):
        monkeypatch.setattr(preflight, "current_macos_version", lambda: "12.7")
        monkeypatch.setattr(preflight, "cpu_load_percent", lambda: 95.0)
        monkeypatch.setattr(preflight, "free_memory_mb", lambda: 256)

        async with httpx.AsyncClient(transport=ok_transport()) as client:
            results = await PreflightChecker(settings, client=client, force=True).run()

        failed = {r.name for r in results if not r.passed}
        assert failed == {"macos_version", "cpu_load", "free_memory"}

    @pytest.mark.asyncio
    async def test_low_disk_is_fatal_even_when_forced(self, settings, healthy_machine, monkeypatch):
        monkeypatch.setattr(preflight, "free_disk_bytes", lambda path="/": 2 * BYTES_PER_GB)

        async with httpx.AsyncClient(transport=ok_transport()) as client:
            checker = PreflightChecker(settings, client=client, force=True)
            with pytest.raises(PreconditionError, match="Insufficient disk space") as exc_info:
                await checker.run()

        assert exc_info.value.check == "disk_space"

    def test_probes_unavailable_are_skipped(self, settings, monkeypatch):
        monkeypatch.setattr(preflight, "current_macos_version", lambda: None)
        monkeypatch.setattr(preflight, "cpu_load_percent", lambda: None)
        monkeypatch.setattr(preflight, "free_memory_mb", lambda: None)
        checker = PreflightChecker(settings)

        assert checker.check_macos_version().passed is True
        assert checker.check_cpu_load().passed is True
        assert checker.check_free_memory().passed is True

    @pytest.mark.asyncio
    async def test_local_checks_run_off_the_event_loop(self, settings, healthy_machine, monkeypatch):
        threads = []

        def free_memory():
            threads.append(threading.current_thread())
            return 8192

        monkeypatch.setattr(preflight, "free_memory_mb", free_memory)

        async with httpx.AsyncClient(transport=ok_transport()) as client:
            await PreflightChecker(settings, client=client).run()

        assert threads
        assert threads[0] is not threading.main_thread()
