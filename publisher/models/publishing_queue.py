"""
Publishing Queue Model

Durable publish jobs: one row per (product, platform) publish request. Rows
survive restarts and are never deleted; cancellation moves them to REJECTED.

State machine:
    pending -> processing -> published
                          -> pending   (retry scheduled with backoff, or deferred)
                          -> failed    (retries exhausted / non-retryable)
    pending | failed -> rejected       (explicit cancellation)
    failed -> pending                  (operator retry)

Usage:
    from publisher.models.publishing_queue import PublishingQueueItem, PublishingStatus

    item = PublishingQueueItem(product_id="prod_1", platform="etsy", priority=8)
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel
from sqlalchemy import Index

from publisher.core.typing import utc_now


class PublishingStatus(str, Enum):
    """Status of a publishing queue item."""

    PENDING = "pending"
    PROCESSING = "processing"
    PUBLISHED = "published"
    FAILED = "failed"
    REJECTED = "rejected"


def new_item_id() -> str:
    return uuid.uuid4().hex


class PublishingQueueItem(SQLModel, table=True):
    """
    One unit of work: publish a specific product to a specific platform.

    Attributes:
        id: Opaque identifier
        product_id: Product to publish
        platform: Platform key ("etsy", "printify", ...)
        status: Current state (see PublishingStatus)
        priority: 1-10, higher is dispatched first
        retry_count: Failed dispatch attempts so far
        max_retries: Retry budget before the item fails terminally
        scheduled_for: Not eligible for dispatch before this time (None = now)
        external_id: Platform-side id, set on success
        external_url: Platform-side URL, set on success
        error_message: Last failure reason
        safeguards_passed / trademark_cleared / quality_score: Pre-publish
            checks recorded by the caller, carried for the connectors
        started_at: When the current dispatch attempt began (stale detection)
        published_at: When the item was published
    """

    __tablename__ = "publishing_queue"

    id: str = Field(default_factory=new_item_id, primary_key=True)
    product_id: str = Field(index=True)
    platform: str
    status: PublishingStatus = Field(default=PublishingStatus.PENDING, index=True)
    priority: int = Field(default=5)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=5)
    scheduled_for: Optional[datetime] = Field(default=None)
    external_id: Optional[str] = None
    external_url: Optional[str] = None
    error_message: Optional[str] = None
    safeguards_passed: bool = Field(default=False)
    trademark_cleared: bool = Field(default=False)
    quality_score: Optional[float] = None
    started_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (
        # Due-item query: status + priority + created_at
        Index("ix_publishing_queue_dispatch", "status", "priority", "created_at"),
        Index("ix_publishing_queue_scheduled_for", "scheduled_for"),
        # Stale processing detection
        Index("ix_publishing_queue_stale", "status", "started_at"),
    )


__all__ = ["PublishingQueueItem", "PublishingStatus", "new_item_id"]
