"""Structured logging configuration using structlog.

JSON lines outside development, colored console output in development.
Every entry carries whatever context is bound for the current task:

    request_id  bound by RequestIDMiddleware for each API request
    worker_id   bound once per reconciliation worker task
    record_id   bound while a worker advances one payment record

Usage:
    from rent_settlement.logging_config import setup_logging, get_logger
    setup_logging(log_level="DEBUG", json_logs=False)
    logger = get_logger(__name__)
    logger.info("reconciliation.confirmed", record_id=record.id, amount=1000)
"""

from __future__ import annotations

import enum
import logging
import sys
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from contextlib import AbstractContextManager

# Libraries that log every statement or request at INFO.
_NOISY_LOGGERS = (
    "uvicorn.access",
    "sqlalchemy.engine",
    "aiosqlite",
    "asyncpg",
    "httpx",
    "httpcore",
)


def _render_domain_values(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Flatten ids, enum members and datetimes so JSON output stays readable."""
    for key, value in event_dict.items():
        if isinstance(value, uuid.UUID):
            event_dict[key] = str(value)
        elif isinstance(value, enum.Enum):
            event_dict[key] = value.value
        elif isinstance(value, datetime):
            event_dict[key] = value.isoformat()
    return event_dict


def setup_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog and route stdlib logging through the same renderer.

    Args:
        log_level: Standard Python log level string (DEBUG, INFO, WARNING, etc.)
        json_logs: If True, output JSON lines. If False, colored console.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _render_domain_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        shared_processors.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# --- Task-scoped context ---


def bind_request(request_id: str) -> None:
    """Start a fresh context for one API request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)


def bind_worker(worker_id: str) -> None:
    structlog.contextvars.bind_contextvars(worker_id=worker_id)


def record_context(record_id: uuid.UUID) -> AbstractContextManager[None]:
    """Bind record_id for the duration of one reconciliation step."""
    return structlog.contextvars.bound_contextvars(record_id=str(record_id))
