"""
Centralized logging configuration for gitopsplane processes.

API server, reclaimer and workers all log through structlog: JSON lines in
production, coloured console output in development.
"""

import logging
import sys
from datetime import UTC, datetime
from typing import Any

import structlog
from structlog.types import EventDict, Processor

# Libraries that log every statement or connection at INFO/DEBUG
NOISY_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "aiosqlite",
    "asyncpg",
    "httpx",
    "httpcore",
    "asyncio",
)


def _app_context(app_name: str) -> Processor:
    def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("app", app_name)
        return event_dict

    return add_app_context


def reorder_keys(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Put level and timestamp first so JSON lines scan well."""
    head: EventDict = {}
    for key in ("level", "timestamp"):
        if key in event_dict:
            head[key] = event_dict.pop(key)
    head.update(event_dict)
    return head


def utc_timestamper(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add a millisecond-precision ISO8601 UTC timestamp."""
    event_dict["timestamp"] = (
        datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    )
    return event_dict


def configure_logging(
    json_logs: bool = True,
    log_level: str = "INFO",
    app_name: str = "gitopsplane",
) -> None:
    """Configure structlog and route stdlib logging through the same renderer."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        utc_timestamper,
        structlog.processors.StackInfoRenderer(),
        _app_context(app_name),
    ]

    renderer: list[Processor]
    if json_logs:
        renderer = [
            reorder_keys,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderer],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
