"""
Error taxonomy for publishing plus Sentry integration.

Connectors raise PublishError with a machine-readable kind so the retry
classifier is a tag switch instead of string matching:

    raise PublishError("Etsy returned 503", kind=ErrorKind.TRANSIENT, status_code=503)
    raise PublishError("Title too long", kind=ErrorKind.PERMANENT)

The circuit breaker raises CircuitOpenError when it short-circuits a call.
Callers must special-case it (the queue defers the item instead of charging
it a retry).

Error tracking:
    # Capture an exception
    capture_exception(exc, context={"queue_item_id": "abc"})

    # Capture a message (non-exception event)
    capture_message("Circuit opened for etsy", level="warning")
"""

import logging
from enum import Enum
from typing import Optional, Any, Dict
from datetime import datetime, timezone

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = structlog.get_logger(__name__)

__all__ = [
    "ErrorKind",
    "PublishError",
    "PlatformNotConnectedError",
    "ConnectorNotFoundError",
    "UnknownPlatformError",
    "CircuitOpenError",
    "init_sentry",
    "capture_exception",
    "capture_message",
    "is_sentry_enabled",
]


class ErrorKind(str, Enum):
    """Machine-readable classification set by the connector layer."""

    TRANSIENT = "transient"  # network blips, 5xx - retry
    PERMANENT = "permanent"  # validation, auth, quota gone - do not retry
    RATE_LIMITED = "rate_limited"  # vendor said 429 - retry after backoff


class PublishError(Exception):
    """Structured failure raised by a platform connector."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.TRANSIENT,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.code = code

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, kind={self.kind.value}, status_code={self.status_code})"


class PlatformNotConnectedError(PublishError):
    def __init__(self, platform: str, status: Optional[str] = None):
        detail = f" (status: {status})" if status else ""
        super().__init__(f"Platform {platform} not connected{detail}", kind=ErrorKind.PERMANENT)
        self.platform = platform


class ConnectorNotFoundError(PublishError):
    def __init__(self, platform: str):
        super().__init__(f"No connector registered for platform {platform}", kind=ErrorKind.PERMANENT)
        self.platform = platform


class UnknownPlatformError(ValueError):
    """Raised when queueing work for a platform the system does not know."""

    def __init__(self, platform: str):
        super().__init__(f"Unknown platform: {platform}")
        self.platform = platform


class CircuitOpenError(Exception):
    """Raised instead of calling a dependency whose circuit is open."""

    def __init__(self, name: str, retry_after: float = 0.0):
        super().__init__(f"Circuit breaker is open for {name}")
        self.name = name
        self.retry_after = retry_after


_sentry_initialized: bool = False

# Context keys promoted from structlog contextvars to searchable Sentry tags
TAGGED_CONTEXT_KEYS = ("queue_item_id", "platform")


def init_sentry(
    dsn: str,
    environment: str = "production",
    traces_sample_rate: float = 0.1,
    release: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry when a DSN is configured.

    Returns True if events will be sent. An empty DSN leaves error tracking
    off and capture_* only logs.
    """
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            release=release,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                # Breadcrumbs from INFO, events only from explicit captures
                LoggingIntegration(level=logging.INFO, event_level=None),
            ],
            ignore_errors=[KeyboardInterrupt, SystemExit],
            before_send=_before_send,
        )
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

    _sentry_initialized = True
    logger.info("Sentry initialized", environment=environment, traces_sample_rate=traces_sample_rate)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Tag events with the queue item being dispatched, if any."""
    bound = structlog.contextvars.get_contextvars()
    for key in TAGGED_CONTEXT_KEYS:
        if bound.get(key):
            event.setdefault("tags", {})[key] = str(bound[key])
    return event


def is_sentry_enabled() -> bool:
    return _sentry_initialized


def _fill_scope(
    scope: Any,
    extras: Dict[str, Any],
    level: str,
    tags: Optional[Dict[str, str]],
    fingerprint: Optional[list[str]] = None,
) -> None:
    for key, value in extras.items():
        if value is not None:
            scope.set_extra(key, value)
    for key, value in (tags or {}).items():
        scope.set_tag(key, value)
    if fingerprint:
        scope.fingerprint = fingerprint
    scope.level = level


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[list[str]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Log an exception and, when Sentry is on, report it.

    Args:
        exc: Exception to capture
        context: Extra fields, e.g. {"queue_item_id": "abc", "platform": "etsy"}
        level: Severity level (debug, info, warning, error, fatal)
        fingerprint: Custom grouping, e.g. ["publish", "etsy", "KeyError"]
        tags: Additional Sentry tags

    Returns:
        Sentry event ID, or None when not sent
    """
    extras = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }
    logger.error("Exception captured", exc_info=exc, **extras)

    if not _sentry_initialized:
        return None
    try:
        with sentry_sdk.new_scope() as scope:
            _fill_scope(scope, extras, level, tags, fingerprint)
            return sentry_sdk.capture_exception(exc)
    except Exception as e:
        logger.warning("Failed to send exception to Sentry", error=str(e))
        return None


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Log a non-exception event and, when Sentry is on, report it.

    Used when a platform's circuit opens and when an item exhausts its
    retry budget.
    """
    extras = {"timestamp": datetime.now(timezone.utc).isoformat(), **(context or {})}
    getattr(logger, level, logger.info)(message, **extras)

    if not _sentry_initialized:
        return None
    try:
        with sentry_sdk.new_scope() as scope:
            _fill_scope(scope, extras, level, tags)
            return sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.warning("Failed to send message to Sentry", error=str(e))
        return None
