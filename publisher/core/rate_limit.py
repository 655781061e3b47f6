"""
Per-platform rate limiting for outbound publishing calls.

Fixed one-minute windows keyed by (platform, endpoint). When a window's budget
is spent, callers wait out the rest of the window rather than being spaced
evenly, so traffic is bursty at window boundaries. That is acceptable for job
dispatch.

Windows live in memory as a fast path and are written through to the store
on every change, so counts survive restarts; a cache miss reloads from the
store.

Usage:
    limiter = RateLimiter(store=QueueStore(engine))

    # Block until the platform has budget, then consume one request
    await limiter.check_and_consume("etsy", "listings")

    # Non-blocking: consume if possible, otherwise report when to come back
    info = limiter.try_consume("etsy")
    if not info.can_make_request:
        defer(info.retry_after_seconds)

    # Read-only status for dashboards (never consumes)
    limiter.get_status("etsy")
"""

from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from publisher.core.config import settings
from publisher.core.logging_config import get_logger
from publisher.core.typing import Clock, system_clock

logger = get_logger(__name__)

WINDOW_SECONDS = 60.0
DEFAULT_ENDPOINT = "default"


class RateLimitStore(Protocol):
    def get_window(self, platform: str, endpoint: str) -> Any: ...

    def upsert_window(
        self,
        platform: str,
        endpoint: str,
        request_count: int,
        limit_per_minute: int,
        window_start: datetime,
        last_request_at: Optional[datetime] = None,
    ) -> None: ...


@dataclass
class RateLimitWindow:
    request_count: int
    limit_per_minute: int
    window_start: datetime


@dataclass
class RateLimitInfo:
    platform: str
    endpoint: str
    request_count: int
    limit_per_minute: int
    window_start: datetime
    can_make_request: bool
    retry_after_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "endpoint": self.endpoint,
            "request_count": self.request_count,
            "limit_per_minute": self.limit_per_minute,
            "window_start": self.window_start.isoformat(),
            "can_make_request": self.can_make_request,
            "retry_after_seconds": self.retry_after_seconds,
        }


class RateLimiter:
    """
    Fixed-window limiter. The scheduler is the only mutator during a tick, the
    lock only guards against API threads reading while a window is replaced.
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        clock: Clock = system_clock,
        limits: Optional[Mapping[str, int]] = None,
        window_seconds: float = WINDOW_SECONDS,
    ):
        self.store = store
        self.clock = clock
        self.limits: Dict[str, int] = dict(limits if limits is not None else settings.PLATFORM_RATE_LIMITS)
        self.window_seconds = window_seconds
        self._windows: Dict[Tuple[str, str], RateLimitWindow] = {}
        self._lock = Lock()

    def limit_for(self, platform: str) -> int:
        return self.limits.get(platform, self.limits.get("default", 60))

    def clear(self) -> None:
        """Drop the in-memory cache. Persisted windows are reloaded on next use."""
        with self._lock:
            self._windows.clear()

    def _load(self, platform: str, endpoint: str, limit: int) -> Optional[RateLimitWindow]:
        """Must be called while holding self._lock."""
        key = (platform, endpoint)
        window = self._windows.get(key)
        if window is None and self.store is not None:
            try:
                row = self.store.get_window(platform, endpoint)
            except Exception as e:
                logger.warning("failed to load rate limit window", platform=platform, endpoint=endpoint, error=str(e))
                row = None
            if row is not None:
                window = RateLimitWindow(
                    request_count=row.request_count or 0,
                    limit_per_minute=limit,
                    window_start=row.window_start,
                )
                self._windows[key] = window
        if window is not None:
            window.limit_per_minute = limit
        return window

    def _persist(self, platform: str, endpoint: str, window: RateLimitWindow, last_request_at: Optional[datetime]):
        if self.store is None:
            return
        try:
            self.store.upsert_window(
                platform,
                endpoint,
                request_count=window.request_count,
                limit_per_minute=window.limit_per_minute,
                window_start=window.window_start,
                last_request_at=last_request_at,
            )
        except Exception as e:
            logger.warning("failed to persist rate limit window", platform=platform, endpoint=endpoint, error=str(e))

    def _age(self, window: RateLimitWindow, now: datetime) -> float:
        return (now - window.window_start).total_seconds()

    def _info(self, platform: str, endpoint: str, window: RateLimitWindow, now: datetime, admitted: bool) -> RateLimitInfo:
        retry_after = None
        if not admitted:
            retry_after = max(0.0, self.window_seconds - self._age(window, now))
        return RateLimitInfo(
            platform=platform,
            endpoint=endpoint,
            request_count=window.request_count,
            limit_per_minute=window.limit_per_minute,
            window_start=window.window_start,
            can_make_request=admitted,
            retry_after_seconds=retry_after,
        )

    def get_status(self, platform: str, endpoint: str = DEFAULT_ENDPOINT, limit: Optional[int] = None) -> RateLimitInfo:
        """Current throttling state. Never consumes budget and never writes."""
        limit = limit or self.limit_for(platform)
        now = self.clock.now()
        with self._lock:
            window = self._load(platform, endpoint, limit)
            if window is None or self._age(window, now) >= self.window_seconds:
                # Expired or never used: the next request opens a fresh window
                window = RateLimitWindow(request_count=0, limit_per_minute=limit, window_start=now)
            return self._info(platform, endpoint, window, now, admitted=window.request_count < limit)

    def try_consume(self, platform: str, endpoint: str = DEFAULT_ENDPOINT, limit: Optional[int] = None) -> RateLimitInfo:
        """
        Consume one request if the current window has budget.

        The returned info has can_make_request=True when the request was
        admitted, otherwise retry_after_seconds says when the window rolls over.
        """
        limit = limit or self.limit_for(platform)
        now = self.clock.now()
        with self._lock:
            window = self._load(platform, endpoint, limit)
            # Inclusive at 60s: a caller that slept exactly retry_after gets a fresh window
            if window is None or self._age(window, now) >= self.window_seconds:
                window = RateLimitWindow(request_count=0, limit_per_minute=limit, window_start=now)
                self._windows[(platform, endpoint)] = window

            if window.request_count >= limit:
                return self._info(platform, endpoint, window, now, admitted=False)

            window.request_count += 1
            info = self._info(platform, endpoint, window, now, admitted=True)
            snapshot = RateLimitWindow(window.request_count, window.limit_per_minute, window.window_start)
        self._persist(platform, endpoint, snapshot, last_request_at=now)
        return info

    async def check_and_consume(
        self, platform: str, endpoint: str = DEFAULT_ENDPOINT, limit: Optional[int] = None
    ) -> RateLimitInfo:
        """
        Wait until the window has budget, then consume one request.

        The wait is a clock sleep and can be cancelled; a cancelled caller has
        consumed nothing.
        """
        while True:
            info = self.try_consume(platform, endpoint, limit)
            if info.can_make_request:
                return info

            wait = info.retry_after_seconds or 0.0
            logger.info(
                "rate limit reached, waiting for next window",
                platform=platform,
                endpoint=endpoint,
                limit_per_minute=info.limit_per_minute,
                wait_seconds=round(wait, 3),
            )
            await self.clock.sleep(wait)


__all__ = [
    "RateLimiter",
    "RateLimitInfo",
    "RateLimitWindow",
    "WINDOW_SECONDS",
    "DEFAULT_ENDPOINT",
]
