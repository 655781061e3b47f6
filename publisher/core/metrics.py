"""Simple in-memory metrics for the publishing processor.

These metrics are process-local and reset on restart.
For durable numbers, use the queue stats (counts by status).
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Optional


@dataclass
class TickMetrics:
    """Metrics for a single processing tick."""

    started_at: datetime
    completed_at: Optional[datetime] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    deferred: int = 0
    duration_seconds: float = 0.0


@dataclass
class MetricsStore:
    """Thread-safe store for processor metrics."""

    _lock: Lock = field(default_factory=Lock)
    _last_tick: Optional[TickMetrics] = None
    _total_ticks: int = 0
    _totals: Counter = field(default_factory=Counter)  # processed/succeeded/failed/deferred
    _events: Counter = field(default_factory=Counter)  # "retry.etsy", "breaker.open.etsy", ...

    def record_start(self) -> None:
        """Record the start of a tick."""
        with self._lock:
            self._last_tick = TickMetrics(started_at=datetime.now(timezone.utc))

    def record_complete(self, processed: int, succeeded: int, failed: int, deferred: int = 0) -> None:
        """Record the completion of a tick."""
        with self._lock:
            now = datetime.now(timezone.utc)
            tick = self._last_tick or TickMetrics(started_at=now)
            tick.completed_at = now
            tick.processed = processed
            tick.succeeded = succeeded
            tick.failed = failed
            tick.deferred = deferred
            tick.duration_seconds = (now - tick.started_at).total_seconds()
            self._last_tick = tick

            self._total_ticks += 1
            self._totals.update(processed=processed, succeeded=succeeded, failed=failed, deferred=deferred)

    def increment(self, name: str, value: int = 1) -> None:
        """Count a named event (retries, breaker transitions, throttled dispatches)."""
        with self._lock:
            self._events[name] += value

    def get_count(self, name: str) -> int:
        with self._lock:
            return self._events.get(name, 0)

    def get_all_metrics(self) -> dict:
        with self._lock:
            last = None
            if self._last_tick:
                tick = self._last_tick
                last = {
                    "started_at": tick.started_at.isoformat(),
                    "completed_at": tick.completed_at.isoformat() if tick.completed_at else None,
                    "processed": tick.processed,
                    "succeeded": tick.succeeded,
                    "failed": tick.failed,
                    "deferred": tick.deferred,
                    "duration_seconds": round(tick.duration_seconds, 1),
                    "success_rate": round(tick.succeeded / tick.processed * 100, 1) if tick.processed > 0 else 0,
                }
            return {
                "last_tick": last,
                "total_ticks": self._total_ticks,
                "totals": dict(self._totals),
                "events": dict(self._events),
            }

    def reset(self) -> None:
        with self._lock:
            self._last_tick = None
            self._total_ticks = 0
            self._totals.clear()
            self._events.clear()


# Global metrics store
publisher_metrics = MetricsStore()
