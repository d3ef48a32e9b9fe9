# src/notesync/core/logging.py
"""Structured logging configuration for notesync.

structlog and stdlib logging are configured together: stdlib records are
routed through structlog's processor chain via ProcessorFormatter, so
SQLAlchemy, httpx and our own modules all render in the same console or
JSON format. Unattended runs under a scheduler should use JSON output.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

# Library loggers that log every connection or statement at DEBUG.
# Pinned to WARNING even when notesync runs with --verbose.
_NOISY_LOGGERS: tuple[str, ...] = (
    "httpx",
    "httpcore",
    "urllib3",
    "urllib3.connectionpool",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "dynaconf",
)


def _remove_internal_fields(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Drop ProcessorFormatter bookkeeping keys from the rendered event.

    ProcessorFormatter always adds _record and _from_structlog, so a
    missing key here means the formatter contract changed.
    """
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
) -> None:
    """Configure structlog and stdlib logging.

    Args:
        json_output: Render JSON lines instead of colored console output.
        level: Root log level (DEBUG, INFO, WARNING, ERROR).
    """
    log_level = getattr(logging, level.upper())

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        final_processors: list[Any] = [
            _remove_internal_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        final_processors = [
            _remove_internal_fields,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    structlog.configure(
        processors=[*shared_processors, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Tests reconfigure logging; cached loggers would keep the old chain
        cache_logger_on_first_use=False,
    )

    # Logs go to stderr so `notesync status` output on stdout stays parseable
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        ProcessorFormatter(
            processors=final_processors,
            foreign_pre_chain=shared_processors,
        )
    )

    root = logging.getLogger()
    root.handlers = []
    root.addHandler(handler)
    root.setLevel(log_level)

    noisy_level = max(log_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(noisy_level)


@contextmanager
def run_log_context(**fields: Any) -> Iterator[None]:
    """Bind fields to every log line emitted from this thread until exit.

    The coordinator binds run_type, run_id and holder for the duration of a
    run, so interleaved output from overlapping scheduled runs can be told
    apart. Worker threads and processes do not inherit the binding.
    """
    tokens = structlog.contextvars.bind_contextvars(**fields)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger for a module.

    Args:
        name: Logger name (typically __name__).
    """
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
