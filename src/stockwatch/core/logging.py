"""
Structured logging for every stockwatch worker.

Each stage logs dot-separated event names with key/value fields, so run
counts and per-symbol failures can be queried in the log store::

    logger = get_logger(__name__)
    logger.info("orchestrator.run_complete", processed=2, failed=1)

Rendering:
    json_format=True    one JSON object per line, ECS-style field names
                        (``@timestamp``, ``log.level``, ``service.name``)
    json_format=False   colored key/value lines for a terminal
    json_format=None    JSON unless stdout is a TTY

Fields that look like credentials (``token``, ``api_key``, ``secret``, ...)
are masked before rendering, whatever stage logged them.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

REDACTED = "**********"
SENSITIVE_FIELDS = frozenset({"token", "api_key", "apikey", "secret", "password", "authorization"})

_service = "stockwatch"


def _stamp_service(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service.name", _service)
    return event_dict


def _mask_credentials(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    for key in event_dict.keys() & SENSITIVE_FIELDS:
        event_dict[key] = REDACTED
    return event_dict


def _ecs_names(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    for plain, ecs in (("timestamp", "@timestamp"), ("level", "log.level")):
        if plain in event_dict:
            event_dict[ecs] = event_dict.pop(plain)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "stockwatch",
) -> None:
    """Configure structlog for the process.

    Args:
        level: Minimum level (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines, console lines, or None to decide from the TTY
        service: Value of the ``service.name`` field
    """
    global _service
    _service = service
    numeric_level = logging.getLevelName(level.upper())

    if json_format is None:
        json_format = not sys.stdout.isatty()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        structlog.dev.set_exc_info,
        _stamp_service,
        _mask_credentials,
    ]
    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            _ecs_names,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Logger for a module, with its name bound as the ``logger`` field."""
    logger = structlog.get_logger()
    return logger.bind(logger=name) if name else logger


def clear_context() -> None:
    """Drop every field bound through ``LogContext``."""
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind fields to every log line emitted inside the block.

    Nested blocks restore the outer values on exit.

    Example:
        async with LogContext(run_id=result.run_id):
            logger.info("orchestrator.price_written", ticker=ticker)
    """

    def __init__(self, **fields: Any):
        self._fields = fields
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._fields)
        return self

    def __exit__(self, *exc_info: object) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, *exc_info: object) -> None:
        self.__exit__(*exc_info)


__all__ = [
    "REDACTED",
    "configure_logging",
    "get_logger",
    "clear_context",
    "LogContext",
]
