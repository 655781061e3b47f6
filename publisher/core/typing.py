"""
Type and time helpers shared across the publisher.

SQLModel fields are declared with Python types (e.g., `priority: int`) but at
the class level they're actually InstrumentedAttribute descriptors with
SQLAlchemy column methods like .desc(), .in_(), .is_(), etc. `col()` bridges
that gap for type checkers.

All "now" reads in the resilience core go through a Clock so tests can move
time forward without sleeping.
"""

import asyncio
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional, Protocol, TypeVar

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")


def col(attr: T) -> "InstrumentedAttribute[T]":
    """
    Type helper for SQLAlchemy column operations in queries.

    At runtime this is a no-op - it just returns the input unchanged.

    Usage:
        select(PublishingQueueItem).order_by(col(PublishingQueueItem.priority).desc())
    """
    return attr  # type: ignore[return-value]


def utc_now() -> datetime:
    """
    Get current UTC time (timezone-aware).

    Use as default_factory in SQLModel fields.
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock. sleep() is a plain asyncio sleep, so it can be cancelled."""

    def now(self) -> datetime:
        return utc_now()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


system_clock = SystemClock()


__all__ = [
    "col",
    "utc_now",
    "ensure_utc",
    "Clock",
    "SystemClock",
    "system_clock",
]
