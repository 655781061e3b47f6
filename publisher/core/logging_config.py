"""
Structured logging configuration using structlog.

JSON lines in production, colored console output elsewhere. The queue binds
the item being dispatched with structlog.contextvars, so every event logged
during a dispatch carries it:

    2026-01-01T12:00:00Z [info     ] publishing   queue_item_id=3f2a platform=etsy product_id=prod_1

Usage:
    from publisher.core.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("item published", queue_item_id="abc", platform="etsy")

Modules that log through the standard library (the circuit breaker, the
store, APScheduler, SQLAlchemy) are rendered by the same processor chain, so
the output stays one format.
"""

import logging
import sys
from typing import Any

import structlog

from publisher.core.config import settings

IS_PRODUCTION = settings.ENVIRONMENT == "production"
IS_TEST = "pytest" in sys.modules

NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "apscheduler", "sqlalchemy.engine")


def _add_environment(logger: Any, method_name: str, event_dict: dict) -> dict:
    event_dict.setdefault("env", settings.ENVIRONMENT)
    return event_dict


def _renderer() -> Any:
    if IS_PRODUCTION:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=not IS_TEST)


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: str | None = None) -> None:
    """Configure structlog and route standard-library logging through it."""
    log_level = _level(level or settings.LOG_LEVEL)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if IS_PRODUCTION:
        shared_processors.append(_add_environment)

    tail: list[Any] = [structlog.processors.format_exc_info] if IS_PRODUCTION else []
    renderer = _renderer()

    structlog.configure(
        processors=shared_processors
        + [structlog.processors.StackInfoRenderer(), structlog.dev.set_exc_info]
        + tail
        + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[structlog.stdlib.add_logger_name] + shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta] + tail + [renderer],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Configure on import
configure_logging()
