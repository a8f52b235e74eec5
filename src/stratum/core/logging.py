"""
Structured logging setup using structlog.

The engine only emits events (migration_started, migration_applied, ...);
formatting and routing are configured here, once, by the entry point.

Every event carries a ``component`` field. Services bind it explicitly
(``component="lock_coordinator"``); anything else logging under the
``stratum.`` namespace gets the last part of its logger name.
"""
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

LOGGER_PREFIX = "stratum"

# aiosqlite logs every statement at DEBUG
_NOISY_LOGGERS = ("aiosqlite",)


def add_component(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Default ``component`` from the logger name, e.g. ``stratum.cli`` -> ``cli``."""
    if "component" not in event_dict:
        name = event_dict.get("logger") or ""
        if name.startswith(f"{LOGGER_PREFIX}."):
            event_dict["component"] = name.rsplit(".", 1)[-1]
    return event_dict


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> structlog.stdlib.BoundLogger:
    """Configure structured logging for Stratum.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON formatted logs
        log_file: Optional file path; parent directories are created

    Returns:
        Configured logger instance
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    # stderr keeps stdout free for command output (history, status tables)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    handlers: list[logging.Handler] = [console_handler]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        handlers.append(file_handler)

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=handlers,
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.INFO))

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_component,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        processors = shared_processors + [structlog.processors.format_exc_info, renderer]
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        )
        processors = shared_processors + [renderer]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return get_logger()


def get_logger(name: str = LOGGER_PREFIX) -> structlog.stdlib.BoundLogger:
    """Logger under the ``stratum`` namespace; bare names are prefixed."""
    if name != LOGGER_PREFIX and not name.startswith(f"{LOGGER_PREFIX}."):
        name = f"{LOGGER_PREFIX}.{name}"
    return structlog.get_logger(name)
