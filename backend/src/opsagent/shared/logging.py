"""Structured logging configuration."""

import logging
import sys
from typing import Any, cast

import structlog

from opsagent.config import get_settings

# Chatty client libraries; vendor payloads must not leak into logs at INFO
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "openai", "redis")


def setup_logging() -> None:
    """Configure structlog on top of stdlib logging.

    Development gets coloured console output, every other environment gets
    one JSON object per line.
    """
    settings = get_settings()
    log_level = logging.DEBUG if settings.app_debug else logging.INFO

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: list[Any]
    if settings.is_development:
        renderer = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderer = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    for logger_name in _QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def bind_turn_context(*, conversation_id: str, agent: str, user_id: str) -> None:
    """Attach the current chat turn's identifiers to every log line."""
    structlog.contextvars.bind_contextvars(
        conversation_id=conversation_id,
        agent=agent,
        user_id=user_id,
    )


def clear_turn_context() -> None:
    structlog.contextvars.unbind_contextvars("conversation_id", "agent", "user_id")


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
