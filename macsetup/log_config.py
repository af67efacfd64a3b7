"""Centralized structured logging configuration using structlog.

Every log call is rendered twice: once for the console (JSON or a colored
development renderer) and once as a newline-delimited JSON record appended to
the run's log file. The log file is truncated when logging is configured, so
each run starts with a fresh file.

Example:
    >>> from macsetup.log_config import configure_logging, get_logger
    >>> configure_logging(level="INFO", log_file="install_log.jsonl")
    >>> logger = get_logger(__name__)
    >>> logger.info("task_succeeded", task_id="wget", attempts=1)
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any

import structlog

PENDING_RECORDS_CAPACITY = 1000

# Handlers installed by configure_logging, removed again on reconfiguration
_installed_handlers: list[logging.Handler] = []

# Records held back until a later configure_logging call opens the log file
_pending_records: logging.handlers.MemoryHandler | None = None


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


def _json_formatter(pre_chain: list[Any]) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
    )


def configure_logging(
    level: str = "INFO",
    json_logs: bool = True,
    log_file: str | Path | None = None,
    verbose: bool = True,
    hold_records: bool = False,
) -> None:
    """Configure structlog for the installer.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: If True, render console output as JSON; otherwise use
            the colored ConsoleRenderer
        log_file: Optional path of the newline-delimited JSON log file.
            The file is truncated before the first record is written.
        verbose: If False, only warnings and errors reach the console.
            The log file still receives every record at ``level``.

    Raises:
        ValueError: If an invalid log level is provided
    """
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        msg = f"Invalid log level: {level}"
        raise ValueError(msg)

    pre_chain = _shared_processors()

    if json_logs:
        console_formatter = _json_formatter(pre_chain)
    else:
        console_formatter = structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(
                    colors=True,
                    exception_formatter=structlog.dev.plain_traceback,
                ),
            ],
        )

    global _pending_records

    root = logging.getLogger()
    for handler in _installed_handlers:
        root.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    held: list[logging.LogRecord] = []
    if _pending_records is not None:
        root.removeHandler(_pending_records)
        held = list(_pending_records.buffer)
        _pending_records.close()
        _pending_records = None

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level if verbose else max(numeric_level, logging.WARNING))
    console_handler.setFormatter(console_formatter)
    _installed_handlers.append(console_handler)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(_json_formatter(pre_chain))
        for record in held:
            if record.levelno >= file_handler.level:
                file_handler.handle(record)
        _installed_handlers.append(file_handler)

    for handler in _installed_handlers:
        root.addHandler(handler)
    root.setLevel(logging.DEBUG if hold_records else numeric_level)

    if hold_records:
        _pending_records = logging.handlers.MemoryHandler(
            capacity=PENDING_RECORDS_CAPACITY,
            flushLevel=logging.CRITICAL + 1,
            flushOnClose=False,
        )
        root.addHandler(_pending_records)

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a configured structlog logger.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        A structlog BoundLogger instance
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables to every subsequent log record in this context.

    Each asyncio task runs in a copy of its parent's context, so values bound
    inside a task do not leak into sibling tasks.

    Example:
        >>> bind_context(task_id="iterm2")
        >>> logger.info("task_attempt_started")  # includes task_id
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific context variables from the logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all context variables from the logging context."""
    structlog.contextvars.clear_contextvars()
