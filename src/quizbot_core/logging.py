"""Structured logging for the bot process.

Every event passes through three bot-specific processors before rendering:

  - :func:`merge_community_context` copies the identifiers bound by
    :func:`community_log_context` onto the event. Explicit event fields win.
  - :func:`add_component` replaces the dotted logger name with a short
    ``component`` such as ``polls.lifecycle``.
  - :func:`add_error_category` stamps the taxonomy ``category`` of the
    exception being logged by ``log_exception``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Literal, Protocol, cast

import structlog
from structlog.typing import EventDict

from quizbot_core.errors import categorize

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

_PACKAGE_PREFIX = "quizbot_core."

_community_context: ContextVar[Mapping[str, object]] = ContextVar(
    "quizbot_community_context", default={}
)


class StructuredLogger(Protocol):
    """Logger protocol for structured event logging with keyword fields."""

    def info(self, event: str, **kwargs: object) -> None:
        """Log an informational event."""

    def warning(self, event: str, **kwargs: object) -> None:
        """Log a warning event."""

    def error(self, event: str, **kwargs: object) -> None:
        """Log an error event."""

    def exception(self, event: str, **kwargs: object) -> None:
        """Log an exception event."""


def get_logger(name: str) -> StructuredLogger:
    """Return a structlog logger bound to ``name``."""
    return cast(StructuredLogger, structlog.stdlib.get_logger(name))


@contextmanager
def community_log_context(
    *,
    community_id: str,
    channel_id: str | None = None,
    **extra: object,
) -> Iterator[None]:
    """Attach community identifiers to every event logged inside the block.

    Blocks nest. An inner block adds to, and may override, the outer fields.
    """
    fields: dict[str, object] = {
        **_community_context.get(),
        "community_id": community_id,
        **extra,
    }
    if channel_id is not None:
        fields["channel_id"] = channel_id
    token = _community_context.set(fields)
    try:
        yield
    finally:
        _community_context.reset(token)


def merge_community_context(_: object, __: str, event_dict: EventDict) -> EventDict:
    for key, value in _community_context.get().items():
        event_dict.setdefault(key, value)
    return event_dict


def add_component(_: object, __: str, event_dict: EventDict) -> EventDict:
    """Turn ``logger="quizbot_core.polls.lifecycle"`` into ``component``."""
    name = event_dict.pop("logger", None)
    if isinstance(name, str):
        event_dict["component"] = name.removeprefix(_PACKAGE_PREFIX)
    return event_dict


def add_error_category(_: object, __: str, event_dict: EventDict) -> EventDict:
    exc_info = event_dict.get("exc_info")
    if exc_info is True:
        error = sys.exc_info()[1]
    elif isinstance(exc_info, BaseException):
        error = exc_info
    elif isinstance(exc_info, tuple):
        error = exc_info[1]
    else:
        return event_dict
    if isinstance(error, BaseException):
        event_dict.setdefault("category", str(categorize(error)))
    return event_dict


def _select_renderer() -> structlog.types.Processor:
    if sys.stderr.isatty():
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def _log(
    logger: StructuredLogger,
    level: Literal["info", "warning", "error", "exception"],
    event: str,
    **fields: object,
) -> None:
    getattr(logger, level)(event, **fields)


def log_info(logger: StructuredLogger, event: str, **fields: object) -> None:
    """Log an informational event."""
    _log(logger, "info", event, **fields)


def log_warning(logger: StructuredLogger, event: str, **fields: object) -> None:
    """Log a warning event."""
    _log(logger, "warning", event, **fields)


def log_error(logger: StructuredLogger, event: str, **fields: object) -> None:
    """Log an error event."""
    _log(logger, "error", event, **fields)


def log_exception(logger: StructuredLogger, event: str, **fields: object) -> None:
    """Log an error event with the active exception and its category."""
    _log(logger, "exception", event, **fields)


def configure_structlog(*, log_level: LogLevel) -> structlog.stdlib.BoundLogger:
    """Route structlog and stdlib records through one stderr handler.

    Records from libraries (httpx, APScheduler, aiosqlite) get the same
    community fields and timestamp as the bot's own events.
    """
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    bot_processors: list[structlog.types.Processor] = [
        merge_community_context,
        structlog.stdlib.add_logger_name,
        add_component,
        structlog.stdlib.add_log_level,
        timestamper,
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=bot_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _select_renderer(),
        ],
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    logging.basicConfig(
        format="%(message)s",
        handlers=[handler],
        level=logging.getLevelNamesMapping()[log_level],
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *bot_processors,
            add_error_category,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return structlog.stdlib.get_logger()
