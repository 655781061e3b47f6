"""Retry with exponential backoff and jitter for calls to external platforms.

The executor only retries failures the classifier calls transient. Permanent
failures (validation, auth, exhausted quota, platform not connected) are
re-raised on the first attempt so no vendor quota is wasted on them.

Usage:
    executor = RetryExecutor(RetryOptions(max_attempts=3, base_delay=1.0))
    result = await executor.run(lambda: connector.publish(item))

    # One-off with overrides
    result = await with_retry(lambda: client.get("/shops"), max_attempts=5)
"""

import asyncio
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from publisher.core.config import settings
from publisher.core.errors import CircuitOpenError, PublishError
from publisher.core.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Socket-level error codes that indicate a dropped or stalled connection
TRANSIENT_ERROR_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "ECONNREFUSED", "EPIPE"})


def _is_retryable_status(status: Any) -> bool:
    return isinstance(status, int) and (status == 429 or status >= 500)


def default_is_retryable(error: BaseException) -> bool:
    """
    Classify an error as transient (retry) or permanent (fail fast).

    Structured PublishError carries its own kind. For everything else:
    network resets/timeouts, HTTP 429 and HTTP >= 500 are retryable.
    """
    if isinstance(error, CircuitOpenError):
        return False
    if isinstance(error, PublishError):
        return error.retryable
    if isinstance(error, httpx.HTTPStatusError):
        return _is_retryable_status(error.response.status_code)
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    if getattr(error, "code", None) in TRANSIENT_ERROR_CODES:
        return True
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    return _is_retryable_status(status)


RetryCallback = Callable[[BaseException, int, float], Any]


@dataclass(frozen=True)
class RetryOptions:
    max_attempts: int = settings.RETRY_MAX_ATTEMPTS
    base_delay: float = settings.RETRY_BASE_DELAY_SECONDS
    max_delay: float = settings.RETRY_MAX_DELAY_SECONDS
    jitter: float = settings.RETRY_JITTER_SECONDS  # upper bound of the random addend, seconds
    is_retryable: Callable[[BaseException], bool] = default_is_retryable
    on_retry: Optional[RetryCallback] = None


def compute_backoff(attempt: int, base_delay: float, max_delay: float, jitter: float = 0.0) -> float:
    """Delay after the given 1-based failed attempt: base * 2^(attempt-1) + jitter, capped."""
    return min(base_delay * (2 ** (attempt - 1)) + jitter, max_delay)


class RetryExecutor:
    """Stateless retry wrapper. Safe to share between platforms."""

    def __init__(
        self,
        options: Optional[RetryOptions] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.options = options or RetryOptions()
        self._sleep = sleep
        self._rng = rng

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        options: Optional[RetryOptions] = None,
    ) -> T:
        opts = options or self.options
        attempt = 1

        while True:
            try:
                return await operation()
            except Exception as error:
                if attempt >= opts.max_attempts or not opts.is_retryable(error):
                    raise

                delay = compute_backoff(
                    attempt,
                    opts.base_delay,
                    opts.max_delay,
                    jitter=opts.jitter * self._rng(),
                )
                logger.warning(
                    "retrying after failure",
                    attempt=attempt,
                    max_attempts=opts.max_attempts,
                    delay_seconds=round(delay, 3),
                    error=str(error),
                    error_type=type(error).__name__,
                )
                if opts.on_retry:
                    opts.on_retry(error, attempt, delay)

                await self._sleep(delay)
                attempt += 1


async def with_retry(operation: Callable[[], Awaitable[T]], **overrides: Any) -> T:
    """Run `operation` with default options, overriding any RetryOptions field by keyword."""
    options = replace(RetryOptions(), **overrides)
    return await RetryExecutor(options).run(operation)


__all__ = [
    "RetryExecutor",
    "RetryOptions",
    "default_is_retryable",
    "compute_backoff",
    "with_retry",
    "TRANSIENT_ERROR_CODES",
]
