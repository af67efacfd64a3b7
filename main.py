#!/usr/bin/env python3
"""Main Entry Point and CLI Integration.

This module provides the main async entry point and CLI interface for the
macOS application installer. It loads configuration, runs the preflight
checks, installs the configured applications through the TaskOrchestrator,
rolls back failures, and prints a summary.
"""

import argparse
import asyncio
import signal
import sys

from macsetup.config import MacSetupConfig, load_config
from macsetup.errors import ConfigError, PreconditionError
from macsetup.installers import BrewInstaller, DryRunInstaller
from macsetup.log_config import bind_context, configure_logging, get_logger
from macsetup.orchestrator import CancellationToken, RetryConfig, RunLedger, TaskOrchestrator
from macsetup.preflight import PreflightChecker

logger = get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


def format_summary(ledger: RunLedger) -> str:
    """Render the run summary as plain text for the terminal."""
    summary = ledger.get_summary()
    lines = [
        f"Total tasks: {summary['total_tasks']}",
        f"Succeeded:   {len(summary['succeeded'])}",
        f"Failed:      {len(summary['failed'])}",
    ]
    if summary["cancelled"]:
        lines.append(f"Cancelled:   {len(summary['cancelled'])}")

    for title, key in (("Failed", "failed"), ("Cancelled", "cancelled")):
        if summary[key]:
            lines.append("")
            lines.append(f"{title}:")
            lines.extend(f"  - {task_id}" for task_id in summary[key])

    if summary["timings"]:
        lines.append("")
        lines.append("Timings:")
        for task_id, seconds in summary["timings"].items():
            outcome = ledger.get(task_id)
            status = outcome.status.value if outcome else "unknown"
            lines.append(f"  {task_id}: {seconds:.1f}s ({status})")

    return "\n".join(lines)


def install_signal_handlers(token: CancellationToken) -> None:
    """Route SIGINT/SIGTERM to the cancellation token."""
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, token.cancel, f"signal {signum.name}")


async def run_installation(
    config: MacSetupConfig,
    args: argparse.Namespace,
    token: CancellationToken,
) -> int:
    """Install every configured application and return the exit code."""
    tasks = config.load_tasks()
    if not tasks:
        logger.warning("no_tasks_configured")
        return EXIT_SUCCESS

    dry_run = config.dry_run or args.dry_run
    if dry_run:
        installer: BrewInstaller | DryRunInstaller = DryRunInstaller()
    else:
        installer = BrewInstaller(brew_path=args.brew, use_sudo=config.installer.use_sudo)

    preflight = PreflightChecker(
        config.preflight,
        force=args.force,
        require_brew=not dry_run,
        brew_path=args.brew,
    )

    orchestrator = TaskOrchestrator(
        installer=installer,
        max_parallel_jobs=config.installer.max_parallel_jobs,
        retry_config=RetryConfig.from_installer_config(config.installer),
        cancel_token=token,
        preconditions=[preflight.run],
    )

    ledger = await orchestrator.run(tasks)

    summary = ledger.get_summary()
    logger.info("run_summary", dry_run=dry_run, **summary)
    print(format_summary(ledger))

    if args.report:
        ledger.export_json(args.report)
        logger.info("report_written", path=args.report)

    if token.cancelled:
        logger.warning("installation_interrupted", reason=token.reason)
        return EXIT_FAILURE

    if not args.no_cleanup:
        await installer.cleanup()

    if not ledger.all_succeeded:
        logger.warning("installation_had_failures", failed=summary["failed"])
        return EXIT_FAILURE

    logger.info("installation_completed")
    return EXIT_SUCCESS


async def main_async(args: argparse.Namespace) -> int:
    """Main async entry point.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 when every task succeeded, 1 otherwise)
    """
    configure_logging(args.log_level or "INFO", json_logs=not args.pretty, hold_records=True)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error("configuration_error", error=str(e))
        return EXIT_FAILURE

    verbose = config.verbose and not args.quiet
    configure_logging(
        args.log_level or config.logging_level,
        json_logs=not args.pretty,
        log_file=config.log_file,
        verbose=verbose,
    )
    bind_context(config_file=str(args.config or "config.yaml"))

    for warning in config.validate_config():
        logger.warning("configuration_warning", message=warning)

    token = CancellationToken()
    install_signal_handlers(token)

    try:
        return await run_installation(config, args, token)
    except ConfigError as e:
        logger.error("configuration_error", error=str(e))
        return EXIT_FAILURE
    except PreconditionError as e:
        logger.error("precondition_failed", check=e.check, error=e.message)
        return EXIT_FAILURE


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Install macOS applications through Homebrew with retries and rollback",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Basic usage
  python main.py --config config.yaml

  # Preview what would be installed
  python main.py --config config.yaml --dry-run

  # Continue despite soft preflight failures (old macOS, busy CPU, low RAM)
  python main.py --config config.yaml --force

  # Write a JSON report of every task outcome
  python main.py --config config.yaml --report report.json
        """,
    )

    parser.add_argument(
        "-c",
        "--config",
        type=str,
        default=None,
        help="Path to configuration YAML file (default: config.yaml or config.yml)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log intended installs without running brew",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Continue when soft preflight checks fail",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        help="Write a JSON report of all task outcomes to this path",
    )
    parser.add_argument(
        "--no-cleanup",
        action="store_true",
        help="Skip 'brew cleanup' after a successful run",
    )
    parser.add_argument(
        "--brew",
        type=str,
        default="brew",
        help="Name or path of the brew executable (default: brew)",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Only show warnings and errors on the console",
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable debug output (DEBUG level)",
    )
    parser.add_argument(
        "--pretty",
        action="store_true",
        help="Render console logs for humans instead of JSON",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Set logging level (default: from configuration)",
    )

    args = parser.parse_args(argv)

    if args.debug:
        args.log_level = "DEBUG"

    return args


def main() -> None:
    """Main entry point for the installer.

    This function parses arguments, runs the async main function,
    and exits with the appropriate code.
    """
    args = parse_args()

    try:
        exit_code = asyncio.run(main_async(args))
    except KeyboardInterrupt:
        exit_code = EXIT_FAILURE
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
