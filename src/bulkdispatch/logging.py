"""
Structured logging setup for the dispatch engine.
"""

import logging
import typing as t
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

PACKAGE_LOGGER = "bulkdispatch"

# Request bodies and auth headers never end up in log lines.
_DROP_LOG_FIELDS = frozenset({"headers", "json", "payload", "requests", "response"})


def drop_sensitive_fields(
    logger: t.Any, method_name: str, event_dict: structlog.typing.EventDict
) -> structlog.typing.EventDict:
    """
    Structlog processor removing wire payload fields from an event.
    """
    for key in _DROP_LOG_FIELDS.intersection(event_dict):
        del event_dict[key]
    return event_dict


def setup_logging(*, level: int = logging.WARNING, colors: bool = True) -> None:
    """
    Configure structlog and the package logger level.

    Parameters
    ----------
    level : int, optional
        Level applied to the ``bulkdispatch`` standard library logger.
    colors : bool, optional
        Colorize console output.
    """
    logging.getLogger(name=PACKAGE_LOGGER).setLevel(level=level)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            drop_sensitive_fields,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def logging_context(**required_context: t.Any) -> Iterator[None]:
    """
    Bind context variables for the duration of the block.

    Keys already bound by an enclosing block keep their outer value, so a
    worker index bound once stays on every nested batch log line.
    """
    current = structlog.contextvars.get_contextvars()
    to_bind = {key: value for key, value in required_context.items() if key not in current}

    if not to_bind:
        yield
        return
    with structlog.contextvars.bound_contextvars(**to_bind):
        yield
