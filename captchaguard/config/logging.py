"""Structured logging configuration using structlog."""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable

import structlog

# Third-party loggers that are chatty at DEBUG and carry no challenge context.
_QUIET_LOGGERS = ("redis", "PIL", "asyncio")


def setup_logging(
    log_level: str = "INFO",
    json_output: bool = False,
    quiet_loggers: Iterable[str] = _QUIET_LOGGERS,
) -> None:
    """Configure structlog on top of stdlib logging for the captcha engine.

    Context bound with ``structlog.contextvars.bind_contextvars`` (for
    instance a request id set by the host application) is merged into every
    event emitted by the engine.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer: structlog.types.Processor
    if json_output or not sys.stderr.isatty():
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*processors, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in quiet_loggers:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
