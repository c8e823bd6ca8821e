# src/gridpush/core/logging.py
"""Structured logging for gridpush.

structlog renders every record, including those from stdlib loggers such as
httpx and SQLAlchemy, through one ProcessorFormatter on a single handler.
Output goes to stderr so command output on stdout stays clean.

While a dispatch loop runs, ``session_context()`` binds the session id into
structlog's contextvars, so limiter waits and client retries logged deep in
the stack still carry the session they belong to.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TextIO

import structlog
from structlog.stdlib import ProcessorFormatter

_LEVELS: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Per-request chatter from the HTTP and database layers.
_NOISY_LOGGERS: tuple[str, ...] = (
    "httpx",
    "httpcore",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
)


def _drop_formatter_bookkeeping(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    # ProcessorFormatter always adds both keys.
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def _resolve_level(level: str) -> int:
    try:
        return _LEVELS[level.upper()]
    except KeyError:
        raise ValueError(f"Unknown log level: {level!r}") from None


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
    stream: TextIO | None = None,
) -> None:
    """Route structlog and stdlib logging through one handler.

    Safe to call repeatedly: the CLI configures once from flags and again
    after settings are loaded.

    Args:
        json_output: One JSON object per line instead of console rendering.
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (case-insensitive).
        stream: Destination (default: the current sys.stderr).

    Raises:
        ValueError: If the level name is unknown.
    """
    log_level = _resolve_level(level)
    target = stream if stream is not None else sys.stderr

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer: Any
    if json_output:
        renderer = structlog.processors.JSONRenderer()
        final_processors: list[Any] = [_drop_formatter_bookkeeping, structlog.processors.format_exc_info, renderer]
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=target.isatty())
        final_processors = [_drop_formatter_bookkeeping, renderer]

    structlog.configure(
        processors=[*shared_processors, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Cached loggers would keep the first configuration.
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(target)
    handler.setFormatter(ProcessorFormatter(processors=final_processors, foreign_pre_chain=shared_processors))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    quiet_level = max(log_level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)


@contextmanager
def session_context(session_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``session_id``."""
    with structlog.contextvars.bound_contextvars(session_id=session_id):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Bound structlog logger for a module."""
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
