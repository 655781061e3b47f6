"""
Publishing Queue Service

Schedules, dispatches and recovers multi-platform "publish this product" jobs.

Every dispatch runs through the resilience stack in this order:

    rate limiter (per platform)
      -> circuit breaker (per platform)
        -> retry executor (in-call retries with jittered backoff)
          -> connector.publish(item)

and every outcome is persisted before the tick moves on:

    published               success
    pending (unchanged)     our rate limiter had no budget - no retry penalty
    pending (+cooldown)     platform breaker is open - no retry penalty
    pending (+backoff)      transient failure, retry budget left
    failed                  retry budget exhausted, or permanent failure

Ticks are sequential and guarded by `is_processing`, so the breaker and
limiter maps are only mutated by one dispatch at a time.

Usage:
    queue = PublishingQueueService(store=QueueStore(engine), connectors=connectors)

    await queue.add_batch_to_queue("prod_1", ["etsy", "printify"], priority=8)
    result = await queue.process_pending_items()

    # Background processing (needs a running event loop)
    queue.start_processing(interval_seconds=30)
    ...
    await queue.shutdown()
"""

import asyncio
from contextlib import suppress
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from publisher.core.circuit_breaker import CircuitBreakerRegistry
from publisher.core.config import settings
from publisher.core.errors import (
    CircuitOpenError,
    ErrorKind,
    PlatformNotConnectedError,
    PublishError,
    UnknownPlatformError,
    capture_exception,
    capture_message,
)
from publisher.core.logging_config import get_logger
from publisher.core.metrics import MetricsStore, publisher_metrics
from publisher.core.rate_limit import DEFAULT_ENDPOINT, RateLimiter, RateLimitInfo
from publisher.core.retry import RetryExecutor, RetryOptions, default_is_retryable
from publisher.core.typing import Clock, system_clock
from publisher.models.platform_connection import ConnectionStatus
from publisher.models.publishing_queue import PublishingQueueItem, PublishingStatus
from publisher.services.connectors import ConnectorRegistry, FailureReason, PublishConnector, PublishResult
from publisher.services.queue_store import QueueStore

logger = get_logger(__name__)

PROCESS_JOB_ID = "publishing_queue_process"
RECOVERY_JOB_ID = "publishing_queue_recover_stale"

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


@dataclass
class QueueRetryPolicy:
    """Backoff between dispatch attempts of one queue item."""

    max_retries: int = settings.QUEUE_MAX_RETRIES
    initial_delay: float = settings.QUEUE_RETRY_INITIAL_DELAY_SECONDS
    max_delay: float = settings.QUEUE_RETRY_MAX_DELAY_SECONDS
    backoff_multiplier: float = settings.QUEUE_RETRY_BACKOFF_MULTIPLIER

    def delay_for(self, retry_count: int) -> float:
        """Seconds to wait after the `retry_count`-th failure (1-based)."""
        exponent = max(0, retry_count - 1)
        return min(self.initial_delay * (self.backoff_multiplier**exponent), self.max_delay)


@dataclass
class TickResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    deferred: int = 0  # returned to pending without a retry penalty

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def counts_against_breaker(error: BaseException) -> bool:
    """Item-specific permanent errors say nothing about the platform's health."""
    return not (isinstance(error, PublishError) and error.kind == ErrorKind.PERMANENT)


class PublishingQueueService:
    def __init__(
        self,
        store: QueueStore,
        connectors: ConnectorRegistry,
        rate_limiter: Optional[RateLimiter] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        retry_executor: Optional[RetryExecutor] = None,
        clock: Clock = system_clock,
        retry_policy: Optional[QueueRetryPolicy] = None,
        batch_size: int = settings.QUEUE_BATCH_SIZE,
        platforms: Optional[Iterable[str]] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        metrics: MetricsStore = publisher_metrics,
    ):
        self.store = store
        self.connectors = connectors
        self.clock = clock
        self.metrics = metrics
        self.rate_limiter = rate_limiter or RateLimiter(store=store, clock=clock)
        self.breakers = breakers or CircuitBreakerRegistry(
            clock=clock,
            store=store if settings.BREAKER_PERSIST else None,
            on_state_change=self._on_breaker_state_change,
        )
        self.retry_executor = retry_executor or RetryExecutor(
            RetryOptions(on_retry=self._on_retry),
            sleep=clock.sleep,
        )
        self.retry_policy = retry_policy or QueueRetryPolicy()
        self.batch_size = batch_size
        self._platforms = set(platforms) if platforms is not None else None

        self.is_processing = False
        self._current_tick: Optional[asyncio.Task] = None
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._running = False

    # -- observers ------------------------------------------------------------

    def _on_retry(self, error: BaseException, attempt: int, delay: float) -> None:
        self.metrics.increment("retry.attempts")

    def _on_breaker_state_change(self, name: str, old_state: str, new_state: str) -> None:
        self.metrics.increment(f"breaker.{new_state}.{name}")
        if new_state == "open":
            capture_message(
                f"Circuit opened for platform {name}",
                level="warning",
                context={"platform": name, "from_state": old_state},
            )

    # -- enqueueing -------------------------------------------------------------

    @property
    def known_platforms(self) -> set[str]:
        if self._platforms is not None:
            return set(self._platforms)
        limits = {name for name in self.rate_limiter.limits if name != "default"}
        return limits | set(self.connectors.platforms())

    def _validate(self, platform: str, priority: int) -> None:
        if platform not in self.known_platforms:
            raise UnknownPlatformError(platform)
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValueError(f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}")

    def _build_item(
        self,
        product_id: str,
        platform: str,
        priority: int,
        scheduled_for: Optional[datetime],
        safeguards_passed: bool,
        trademark_cleared: bool,
        quality_score: Optional[float],
        max_retries: Optional[int],
    ) -> PublishingQueueItem:
        now = self.clock.now()
        return PublishingQueueItem(
            product_id=product_id,
            platform=platform,
            priority=priority,
            scheduled_for=scheduled_for,
            safeguards_passed=safeguards_passed,
            trademark_cleared=trademark_cleared,
            quality_score=quality_score,
            max_retries=max_retries if max_retries is not None else self.retry_policy.max_retries,
            status=PublishingStatus.PENDING,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )

    async def add_to_queue(
        self,
        product_id: str,
        platform: str,
        priority: int = DEFAULT_PRIORITY,
        scheduled_for: Optional[datetime] = None,
        safeguards_passed: bool = False,
        trademark_cleared: bool = False,
        quality_score: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> PublishingQueueItem:
        """
        Queue one product for one platform.

        Raises:
            UnknownPlatformError: platform is not a recognized key
            ValueError: priority outside 1-10
        """
        self._validate(platform, priority)
        item = self._build_item(
            product_id, platform, priority, scheduled_for,
            safeguards_passed, trademark_cleared, quality_score, max_retries,
        )
        [item] = self.store.insert([item])
        logger.info("queued product", queue_item_id=item.id, product_id=product_id, platform=platform, priority=priority)
        return item

    async def add_batch_to_queue(
        self,
        product_id: str,
        platforms: List[str],
        priority: int = DEFAULT_PRIORITY,
        scheduled_for: Optional[datetime] = None,
        safeguards_passed: bool = False,
        trademark_cleared: bool = False,
        quality_score: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> List[PublishingQueueItem]:
        """Queue one product for several platforms. Nothing is inserted if any platform is invalid."""
        if not platforms:
            raise ValueError("At least one platform is required")
        for platform in platforms:
            self._validate(platform, priority)

        items = [
            self._build_item(
                product_id, platform, priority, scheduled_for,
                safeguards_passed, trademark_cleared, quality_score, max_retries,
            )
            for platform in platforms
        ]
        items = self.store.insert(items)
        logger.info("queued product for platforms", product_id=product_id, platforms=platforms, priority=priority)
        return items

    # -- reads ------------------------------------------------------------------

    async def get_next_items(self, limit: int = 10) -> List[PublishingQueueItem]:
        """Due items ordered priority DESC, created_at ASC."""
        return self.store.select_due(self.clock.now(), limit)

    async def get_queue_by_status(self, status: PublishingStatus, limit: int = 50) -> List[PublishingQueueItem]:
        return self.store.list_by_status(status, limit)

    async def get_product_queue(self, product_id: str) -> List[PublishingQueueItem]:
        return self.store.list_for_product(product_id)

    async def get_item(self, item_id: str) -> Optional[PublishingQueueItem]:
        return self.store.get_item(item_id)

    async def get_stats(self) -> Dict[str, int]:
        stats = self.store.count_by_status()
        stats["total"] = sum(stats.values())
        return stats

    async def check_rate_limit(self, platform: str, endpoint: str = DEFAULT_ENDPOINT) -> RateLimitInfo:
        """Read-only throttling status. Does not consume budget."""
        return self.rate_limiter.get_status(platform, endpoint)

    def get_circuit_breaker_stats(self) -> Dict[str, Dict[str, Any]]:
        return self.breakers.get_all_stats()

    def reset_circuit_breaker(self, name: str) -> bool:
        return self.breakers.reset(name)

    # -- state transitions ------------------------------------------------------

    async def update_status(
        self,
        item_id: str,
        status: PublishingStatus,
        error_message: Optional[str] = None,
        external_id: Optional[str] = None,
        external_url: Optional[str] = None,
        published_at: Optional[datetime] = None,
    ) -> Optional[PublishingQueueItem]:
        """Operator override of an item's status. Only provided fields are written."""
        fields: Dict[str, Any] = {"status": status}
        if error_message is not None:
            fields["error_message"] = error_message
        if external_id is not None:
            fields["external_id"] = external_id
        if external_url is not None:
            fields["external_url"] = external_url
        if status == PublishingStatus.PUBLISHED:
            fields["published_at"] = published_at or self.clock.now()
        elif published_at is not None:
            fields["published_at"] = published_at
        if status != PublishingStatus.PROCESSING:
            fields["started_at"] = None
        return self.store.update_item(item_id, **fields)

    async def increment_retry(self, item: PublishingQueueItem, error_message: str) -> Optional[PublishingQueueItem]:
        """
        Record a failed dispatch.

        Under the item's retry budget the item goes back to PENDING with an
        exponential backoff on scheduled_for; otherwise it FAILS terminally.
        """
        current = self.store.get_item(item.id)
        if current is None:
            logger.warning("queue item vanished before retry", queue_item_id=item.id)
            return None

        retry_count = current.retry_count + 1
        if retry_count < current.max_retries:
            delay = self.retry_policy.delay_for(retry_count)
            next_attempt = self.clock.now() + timedelta(seconds=delay)
            updated = self.store.update_item(
                item.id,
                status=PublishingStatus.PENDING,
                retry_count=retry_count,
                error_message=error_message,
                scheduled_for=next_attempt,
                started_at=None,
            )
            logger.info(
                "publish failed, retry scheduled",
                queue_item_id=item.id,
                retry=retry_count,
                max_retries=current.max_retries,
                delay_seconds=delay,
                next_attempt=next_attempt.isoformat(),
                error=error_message[:100],
            )
            return updated

        updated = self.store.update_item(
            item.id,
            status=PublishingStatus.FAILED,
            retry_count=retry_count,
            error_message=error_message,
            started_at=None,
        )
        capture_message(
            "Publish failed after exhausting retries",
            level="warning",
            context={
                "queue_item_id": item.id,
                "platform": current.platform,
                "retry_count": retry_count,
                "error": error_message[:100],
            },
        )
        return updated

    async def fail_permanently(self, item: PublishingQueueItem, error_message: str) -> Optional[PublishingQueueItem]:
        """
        Fail an item whose error retrying cannot fix.

        The retry budget is marked spent so the item is not picked up again
        automatically; an operator can still retry_item() it.
        """
        current = self.store.get_item(item.id)
        if current is None:
            return None
        retry_count = max(current.retry_count + 1, current.max_retries)
        updated = self.store.update_item(
            item.id,
            status=PublishingStatus.FAILED,
            retry_count=retry_count,
            error_message=error_message,
            started_at=None,
        )
        logger.warning("publish failed permanently", queue_item_id=item.id, error=error_message[:100])
        return updated

    def _defer(self, item: PublishingQueueItem, scheduled_for: Optional[datetime]) -> None:
        """Back to PENDING without touching retry_count."""
        self.store.update_item(
            item.id,
            status=PublishingStatus.PENDING,
            scheduled_for=scheduled_for,
            started_at=None,
        )

    async def cancel_item(self, item_id: str) -> bool:
        """Reject a pending or failed item. Processing/published/rejected items cannot be cancelled."""
        item = self.store.get_item(item_id)
        if not item or item.status not in (PublishingStatus.PENDING, PublishingStatus.FAILED):
            return False

        self.store.update_item(item_id, status=PublishingStatus.REJECTED)
        logger.info("cancelled queue item", queue_item_id=item_id)
        return True

    async def retry_item(self, item_id: str) -> bool:
        """Send a failed item back to the queue immediately, whatever made it fail."""
        item = self.store.get_item(item_id)
        if not item or item.status != PublishingStatus.FAILED:
            return False

        self.store.update_item(
            item_id,
            status=PublishingStatus.PENDING,
            scheduled_for=self.clock.now(),
            error_message=None,
        )
        logger.info("retrying queue item", queue_item_id=item_id)
        return True

    async def recover_stale_items(self, grace_minutes: Optional[int] = None) -> int:
        """
        Requeue items stuck in PROCESSING longer than the grace period.

        A crash mid-dispatch leaves its item in PROCESSING; this runs at
        startup and periodically. Recovered items keep their retry_count.
        """
        grace = grace_minutes if grace_minutes is not None else settings.QUEUE_STALE_PROCESSING_MINUTES
        cutoff = self.clock.now() - timedelta(minutes=grace)
        count = self.store.requeue_stale(cutoff, f"Dispatch interrupted; requeued after {grace} minutes in processing")
        if count:
            logger.warning("requeued stale processing items", count=count, grace_minutes=grace)
        return count

    # -- dispatch -----------------------------------------------------------------

    def _require_connected(self, platform: str) -> None:
        connection = self.store.get_connection(platform)
        if connection is None or connection.status != ConnectionStatus.CONNECTED:
            raise PlatformNotConnectedError(platform, connection.status.value if connection else None)

    def _throttled(self, item: PublishingQueueItem, info: RateLimitInfo) -> PublishResult:
        retry_after = info.retry_after_seconds or 0
        self.metrics.increment(f"throttled.{item.platform}")
        logger.info(
            "rate limit reached, deferring",
            queue_item_id=item.id,
            platform=item.platform,
            retry_after_seconds=round(retry_after, 1),
        )
        return PublishResult(
            success=False,
            error=f"Rate limit exceeded. Retry after {retry_after:.1f}s",
            reason=FailureReason.THROTTLED,
            retry_after=info.retry_after_seconds,
        )

    async def _publish(self, item: PublishingQueueItem, connector: PublishConnector) -> PublishResult:
        async def attempt() -> PublishResult:
            result = await connector.publish(item)
            if not result.success:
                kind = ErrorKind.PERMANENT if result.reason == FailureReason.PERMANENT else ErrorKind.TRANSIENT
                raise PublishError(result.error or "Unknown error", kind=kind)
            if not result.external_id:
                raise PublishError("Connector reported success without an external id", kind=ErrorKind.PERMANENT)
            return result

        breaker = self.breakers.get(item.platform, is_failure=counts_against_breaker)
        return await breaker.execute(lambda: self.retry_executor.run(attempt))

    async def process_item(self, item: PublishingQueueItem) -> PublishResult:
        """
        Dispatch one item and report the outcome. Never raises for publish failures.

        A rate-limit denial comes back as FailureReason.THROTTLED without
        calling the platform; an open breaker as CIRCUIT_OPEN.
        """
        status = self.rate_limiter.get_status(item.platform)
        if not status.can_make_request:
            return self._throttled(item, status)

        try:
            self._require_connected(item.platform)
            connector = self.connectors.get(item.platform)
            consumed = self.rate_limiter.try_consume(item.platform)
            if not consumed.can_make_request:
                return self._throttled(item, consumed)
            logger.info("publishing", queue_item_id=item.id, product_id=item.product_id, platform=item.platform)
            return await self._publish(item, connector)
        except CircuitOpenError as e:
            return PublishResult(
                success=False,
                error=str(e),
                reason=FailureReason.CIRCUIT_OPEN,
                retry_after=e.retry_after,
            )
        except PublishError as e:
            reason = FailureReason.TRANSIENT if e.retryable else FailureReason.PERMANENT
            return PublishResult(success=False, error=e.message, reason=reason)
        except Exception as e:
            capture_exception(
                e,
                context={"queue_item_id": item.id, "platform": item.platform, "product_id": item.product_id},
                fingerprint=["publish", item.platform, type(e).__name__],
            )
            reason = FailureReason.TRANSIENT if default_is_retryable(e) else FailureReason.PERMANENT
            return PublishResult(success=False, error=f"{type(e).__name__}: {e}", reason=reason)

    async def _dispatch(self, item: PublishingQueueItem, tick: TickResult) -> None:
        claimed = self.store.claim_item(item.id, self.clock.now())
        if claimed is None:
            logger.info("item changed since selection, skipping", queue_item_id=item.id)
            return

        try:
            result = await self.process_item(claimed)
        except asyncio.CancelledError:
            # Shutdown mid-dispatch: leave the item for the next processor
            self._defer(claimed, claimed.scheduled_for)
            logger.warning("dispatch cancelled, item returned to pending", queue_item_id=item.id)
            raise

        if result.success:
            self.store.update_item(
                item.id,
                status=PublishingStatus.PUBLISHED,
                external_id=result.external_id,
                external_url=result.external_url,
                published_at=self.clock.now(),
                error_message=None,
                started_at=None,
            )
            logger.info("published", queue_item_id=item.id, external_id=result.external_id)
            tick.processed += 1
            tick.succeeded += 1
        elif result.reason == FailureReason.THROTTLED:
            self._defer(claimed, claimed.scheduled_for)
            tick.deferred += 1
        elif result.reason == FailureReason.CIRCUIT_OPEN:
            cooldown = timedelta(seconds=result.retry_after or 0)
            self._defer(claimed, self.clock.now() + cooldown)
            logger.info("circuit open, deferring", queue_item_id=item.id, retry_after_seconds=result.retry_after)
            tick.deferred += 1
        elif result.reason == FailureReason.PERMANENT:
            await self.fail_permanently(claimed, result.error or "Unknown error")
            tick.processed += 1
            tick.failed += 1
        else:
            await self.increment_retry(claimed, result.error or "Unknown error")
            tick.processed += 1
            tick.failed += 1

    async def process_pending_items(self) -> TickResult:
        """
        One scheduling tick: dispatch up to `batch_size` due items, one at a time.

        Overlapping calls return an empty result instead of double-processing.
        """
        if self.is_processing:
            logger.info("queue tick already in progress, skipping")
            return TickResult()

        self.is_processing = True
        self._current_tick = asyncio.current_task()
        self.metrics.record_start()
        tick = TickResult()

        try:
            items = await self.get_next_items(self.batch_size)
            for item in items:
                with structlog.contextvars.bound_contextvars(
                    queue_item_id=item.id,
                    platform=item.platform,
                    product_id=item.product_id,
                ):
                    await self._dispatch(item, tick)
        finally:
            self.is_processing = False
            self._current_tick = None
            self.metrics.record_complete(tick.processed, tick.succeeded, tick.failed, tick.deferred)

        if tick.processed or tick.deferred:
            logger.info("queue tick complete", **tick.to_dict())
        return tick

    # -- background processing ----------------------------------------------------

    async def _run_tick(self) -> None:
        try:
            await self.process_pending_items()
        except Exception as e:
            capture_exception(e, context={"job": PROCESS_JOB_ID})

    async def _run_recovery(self) -> None:
        try:
            await self.recover_stale_items()
        except Exception as e:
            capture_exception(e, context={"job": RECOVERY_JOB_ID})

    @property
    def is_running(self) -> bool:
        return self._running

    def start_processing(self, interval_seconds: Optional[float] = None) -> None:
        """
        Run process_pending_items every `interval_seconds`, starting now.

        Must be called from a running event loop. Also schedules the stale
        item sweep.
        """
        if self._running:
            logger.info("queue processor already running")
            return

        interval = interval_seconds or settings.QUEUE_INTERVAL_SECONDS
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            self._run_tick,
            IntervalTrigger(seconds=interval),
            id=PROCESS_JOB_ID,
            next_run_time=datetime.now(timezone.utc),  # first tick immediately
            max_instances=1,
            coalesce=True,
            misfire_grace_time=int(interval),
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._run_recovery,
            IntervalTrigger(minutes=max(1, settings.QUEUE_STALE_PROCESSING_MINUTES)),
            id=RECOVERY_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()

        self._running = True
        logger.info("queue processor started", interval_seconds=interval)

    def stop_processing(self) -> None:
        """Stop scheduling ticks and cancel a tick that is mid-flight."""
        if not self._running:
            return

        if self._scheduler is not None:
            for job_id in (PROCESS_JOB_ID, RECOVERY_JOB_ID):
                with suppress(JobLookupError):
                    self._scheduler.remove_job(job_id)
            if self._owns_scheduler and self._scheduler.running:
                self._scheduler.shutdown(wait=False)
                self._scheduler = None

        if self._current_tick is not None and not self._current_tick.done():
            self._current_tick.cancel()

        self._running = False
        logger.info("queue processor stopped")

    async def shutdown(self) -> None:
        """stop_processing() and wait for a cancelled tick to put its item back."""
        tick = self._current_tick
        self.stop_processing()
        if tick is not None and tick is not asyncio.current_task():
            with suppress(asyncio.CancelledError):
                await tick


__all__ = [
    "PublishingQueueService",
    "QueueRetryPolicy",
    "TickResult",
    "counts_against_breaker",
    "PROCESS_JOB_ID",
    "RECOVERY_JOB_ID",
]
