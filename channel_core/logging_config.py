from __future__ import annotations

import logging
import sys
import uuid
from typing import Any, Callable, MutableMapping, Optional, cast

import structlog

from channel_core.config import LOG_LEVEL

# Type alias for structlog processor
Processor = Callable[[Any, str, MutableMapping[str, Any]], Any]

CORRELATION_KEY = "correlation_id"


def setup_logging() -> None:
    """
    Configure stdlib logging and structlog for the whole process.

    LOG_LEVEL=INFO renders JSON lines for log shipping; any other level renders
    the coloured console format.
    """
    logging.basicConfig(
        format="[%(asctime)s] %(levelname)s in %(name)s:%(lineno)d: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        level=LOG_LEVEL,
    )

    for noisy_logger in [
        "urllib3",
        "requests",
        "sqlalchemy.engine",
        "alembic",
        "uvicorn.access",
    ]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    renderer: Processor = cast(
        Processor,
        (
            structlog.processors.JSONRenderer()
            if LOG_LEVEL == "INFO"
            else structlog.dev.ConsoleRenderer(colors=True)
        ),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(LOG_LEVEL)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Bind a correlation id into the structlog context for the current task.

    Args:
        correlation_id: Existing id to reuse (e.g. an HTTP request id). A new
            UUID is generated when omitted.

    Returns:
        str: The bound correlation id
    """
    value = correlation_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(**{CORRELATION_KEY: value})
    return value


def current_correlation_id() -> Optional[str]:
    """Return the correlation id bound to the current context, if any."""
    return cast(Optional[str], structlog.contextvars.get_contextvars().get(CORRELATION_KEY))


def clear_correlation_id() -> None:
    """Drop the correlation id from the current context."""
    structlog.contextvars.unbind_contextvars(CORRELATION_KEY)
