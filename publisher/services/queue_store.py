"""
Queue Store

Relational persistence for the publishing core: queue rows, rate-limit
windows, platform connection status and circuit breaker state.

Every method opens its own short-lived Session, commits before returning, and
hands back detached model instances, so a crash can at most lose the write
that was in flight.

Usage:
    from publisher.db import engine
    from publisher.services.queue_store import QueueStore

    store = QueueStore(engine)
    items = store.select_due(now=utc_now(), limit=10)
    claimed = store.claim_item(items[0].id, now=utc_now())
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from publisher.core.typing import col, ensure_utc, utc_now
from publisher.models.api_rate_limit import ApiRateLimit
from publisher.models.circuit_breaker_state import CircuitBreakerState
from publisher.models.platform_connection import ConnectionStatus, PlatformConnection
from publisher.models.publishing_queue import PublishingQueueItem, PublishingStatus

logger = logging.getLogger(__name__)

# Truncate long vendor errors before storing them
MAX_ERROR_LENGTH = 1000

_ITEM_TIMESTAMPS = ("scheduled_for", "started_at", "published_at", "created_at", "updated_at")


def _is_due(now: datetime):
    """PENDING, or FAILED with retry budget left, and unscheduled or scheduled at or before `now`."""
    return and_(
        or_(
            col(PublishingQueueItem.status) == PublishingStatus.PENDING,
            and_(
                col(PublishingQueueItem.status) == PublishingStatus.FAILED,
                col(PublishingQueueItem.retry_count) < col(PublishingQueueItem.max_retries),
            ),
        ),
        or_(
            col(PublishingQueueItem.scheduled_for).is_(None),
            col(PublishingQueueItem.scheduled_for) <= now,
        ),
    )


def truncate_error(error: Optional[str]) -> Optional[str]:
    if error is None:
        return None
    return error[:MAX_ERROR_LENGTH] if len(error) > MAX_ERROR_LENGTH else error


def _aware(item: Optional[PublishingQueueItem]) -> Optional[PublishingQueueItem]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if item is not None:
        for name in _ITEM_TIMESTAMPS:
            value = getattr(item, name)
            if value is not None and value.tzinfo is None:
                setattr(item, name, ensure_utc(value))
    return item


class QueueStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    # -- queue rows -------------------------------------------------------

    def insert(self, items: List[PublishingQueueItem]) -> List[PublishingQueueItem]:
        with Session(self.engine) as session:
            for item in items:
                session.add(item)
            session.commit()
            for item in items:
                session.refresh(item)
        return [_aware(item) for item in items]

    def get_item(self, item_id: str) -> Optional[PublishingQueueItem]:
        with Session(self.engine) as session:
            return _aware(session.get(PublishingQueueItem, item_id))

    def select_due(self, now: datetime, limit: int = 10) -> List[PublishingQueueItem]:
        """
        Items eligible for dispatch, highest priority first, oldest first within a priority.

        Eligible means PENDING, or FAILED with retry budget left, and either
        unscheduled or scheduled at or before `now`.
        """
        stmt = (
            select(PublishingQueueItem)
            .where(_is_due(now))
            .order_by(
                col(PublishingQueueItem.priority).desc(),
                col(PublishingQueueItem.created_at).asc(),
            )
            .limit(limit)
        )
        with Session(self.engine) as session:
            return [_aware(item) for item in session.exec(stmt).all()]

    def claim_item(self, item_id: str, now: datetime) -> Optional[PublishingQueueItem]:
        """
        Mark one due row PROCESSING in a single conditional UPDATE.

        Returns None when the row is gone or no longer due, e.g. an operator
        cancelled or rescheduled it after it was selected.
        """
        stmt = (
            update(PublishingQueueItem)
            .where(col(PublishingQueueItem.id) == item_id, _is_due(now))
            .values(status=PublishingStatus.PROCESSING, started_at=now, updated_at=utc_now())
        )
        with Session(self.engine) as session:
            claimed = session.execute(stmt).rowcount
            session.commit()
            if not claimed:
                logger.info(f"Queue item id={item_id} no longer due, not claimed")
                return None
            return _aware(session.get(PublishingQueueItem, item_id))

    def list_by_status(self, status: PublishingStatus, limit: int = 50) -> List[PublishingQueueItem]:
        stmt = (
            select(PublishingQueueItem)
            .where(col(PublishingQueueItem.status) == status)
            .order_by(
                col(PublishingQueueItem.priority).desc(),
                col(PublishingQueueItem.created_at).asc(),
            )
            .limit(limit)
        )
        with Session(self.engine) as session:
            return [_aware(item) for item in session.exec(stmt).all()]

    def list_for_product(self, product_id: str) -> List[PublishingQueueItem]:
        stmt = (
            select(PublishingQueueItem)
            .where(col(PublishingQueueItem.product_id) == product_id)
            .order_by(col(PublishingQueueItem.created_at).desc())
        )
        with Session(self.engine) as session:
            return [_aware(item) for item in session.exec(stmt).all()]

    def update_item(self, item_id: str, **fields: Any) -> Optional[PublishingQueueItem]:
        """Apply `fields` to one row and commit. Returns None if the row does not exist."""
        with Session(self.engine) as session:
            item = session.get(PublishingQueueItem, item_id)
            if not item:
                logger.warning(f"Queue item id={item_id} not found for update")
                return None

            if "error_message" in fields:
                fields["error_message"] = truncate_error(fields["error_message"])
            for key, value in fields.items():
                setattr(item, key, value)
            item.updated_at = utc_now()

            session.add(item)
            session.commit()
            session.refresh(item)
            return _aware(item)

    def count_by_status(self) -> Dict[str, int]:
        stats: Dict[str, int] = {status.value: 0 for status in PublishingStatus}
        stmt = select(PublishingQueueItem.status, func.count()).group_by(PublishingQueueItem.status)
        with Session(self.engine) as session:
            for status, count in session.exec(stmt).all():
                key = status.value if isinstance(status, PublishingStatus) else str(status)
                stats[key] = count
        return stats

    def requeue_stale(self, cutoff: datetime, message: str) -> int:
        """Move PROCESSING rows started before `cutoff` (or never stamped) back to PENDING."""
        stmt = select(PublishingQueueItem).where(
            col(PublishingQueueItem.status) == PublishingStatus.PROCESSING,
            or_(
                col(PublishingQueueItem.started_at).is_(None),
                col(PublishingQueueItem.started_at) < cutoff,
            ),
        )
        with Session(self.engine) as session:
            stale_items = list(session.exec(stmt).all())
            for item in stale_items:
                item.status = PublishingStatus.PENDING
                item.started_at = None
                item.error_message = message
                item.updated_at = utc_now()
                session.add(item)
            if stale_items:
                session.commit()
                logger.warning(f"Requeued {len(stale_items)} stale processing items")
            return len(stale_items)

    # -- rate-limit windows -------------------------------------------------

    def get_window(self, platform: str, endpoint: str) -> Optional[ApiRateLimit]:
        stmt = select(ApiRateLimit).where(
            col(ApiRateLimit.platform) == platform,
            col(ApiRateLimit.endpoint) == endpoint,
        )
        with Session(self.engine) as session:
            window = session.exec(stmt).first()
            if window:
                window.window_start = ensure_utc(window.window_start)
                window.last_request_at = ensure_utc(window.last_request_at)
            return window

    def upsert_window(
        self,
        platform: str,
        endpoint: str,
        request_count: int,
        limit_per_minute: int,
        window_start: datetime,
        last_request_at: Optional[datetime] = None,
    ) -> None:
        stmt = select(ApiRateLimit).where(
            col(ApiRateLimit.platform) == platform,
            col(ApiRateLimit.endpoint) == endpoint,
        )
        with Session(self.engine) as session:
            window = session.exec(stmt).first()
            if window is None:
                window = ApiRateLimit(platform=platform, endpoint=endpoint)
            window.request_count = request_count
            window.limit_per_minute = limit_per_minute
            window.window_start = window_start
            if last_request_at is not None:
                window.last_request_at = last_request_at
            session.add(window)
            session.commit()

    # -- platform connections -------------------------------------------------

    def get_connection(self, platform: str) -> Optional[PlatformConnection]:
        stmt = select(PlatformConnection).where(col(PlatformConnection.platform) == platform)
        with Session(self.engine) as session:
            return session.exec(stmt).first()

    def upsert_connection(
        self,
        platform: str,
        status: ConnectionStatus,
        error_message: Optional[str] = None,
    ) -> PlatformConnection:
        stmt = select(PlatformConnection).where(col(PlatformConnection.platform) == platform)
        with Session(self.engine) as session:
            connection = session.exec(stmt).first()
            if connection is None:
                connection = PlatformConnection(platform=platform)
            connection.status = status
            connection.error_message = error_message
            connection.updated_at = utc_now()
            session.add(connection)
            session.commit()
            session.refresh(connection)
            return connection

    # -- circuit breaker state ----------------------------------------------

    def load_breaker_state(self, name: str) -> Optional[Dict[str, Any]]:
        stmt = select(CircuitBreakerState).where(col(CircuitBreakerState.name) == name)
        with Session(self.engine) as session:
            db_state = session.exec(stmt).first()
            if db_state:
                return {
                    "state": db_state.state,
                    "failure_count": db_state.failure_count,
                    "last_failure_at": ensure_utc(db_state.last_failure_at),
                }
        return None

    def save_breaker_state(
        self,
        name: str,
        state: str,
        failure_count: int,
        last_failure_at: Optional[datetime],
    ) -> None:
        stmt = select(CircuitBreakerState).where(col(CircuitBreakerState.name) == name)
        with Session(self.engine) as session:
            db_state = session.exec(stmt).first()
            if db_state is None:
                db_state = CircuitBreakerState(name=name)
            db_state.state = state
            db_state.failure_count = failure_count
            db_state.last_failure_at = last_failure_at
            db_state.updated_at = utc_now()
            session.add(db_state)
            session.commit()


__all__ = ["QueueStore", "truncate_error", "MAX_ERROR_LENGTH"]
