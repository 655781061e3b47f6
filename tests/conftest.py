"""
Test fixtures for publisher tests.

Provides an in-memory database, a controllable clock, fake platform
connectors and a wired-up queue service.
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from sqlmodel import SQLModel, create_engine
from sqlalchemy.pool import StaticPool

import publisher.models  # noqa: F401  (registers tables on the metadata)
from publisher.core.metrics import MetricsStore
from publisher.core.retry import RetryExecutor, RetryOptions
from publisher.models.platform_connection import ConnectionStatus
from publisher.models.publishing_queue import PublishingQueueItem
from publisher.services.connectors import ConnectorRegistry, PublishResult
from publisher.services.publishing_queue import PublishingQueueService
from publisher.services.queue_store import QueueStore

# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"

START_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock whose sleep() advances time instantly and records the requested delay."""

    def __init__(self, start: datetime = START_TIME):
        self.current = start
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(max(0.0, seconds))
        await asyncio.sleep(0)


class FakeConnector:
    """
    Scriptable connector.

    Each publish() pops the next scripted outcome: a PublishResult is
    returned, an exception is raised. With nothing scripted it succeeds.
    """

    def __init__(self, outcomes: Optional[List[Any]] = None):
        self.outcomes = list(outcomes or [])
        self.calls: List[str] = []

    async def publish(self, item: PublishingQueueItem) -> PublishResult:
        self.calls.append(item.id)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return PublishResult(
            success=True,
            external_id=f"ext-{item.id[:8]}",
            external_url=f"https://{item.platform}.example.com/listing/{item.id[:8]}",
        )


class FailingConnector(FakeConnector):
    """Always reports a transient platform failure."""

    def __init__(self, error: str = "Service unavailable (503)"):
        super().__init__()
        self.error = error

    async def publish(self, item: PublishingQueueItem) -> PublishResult:
        self.calls.append(item.id)
        return PublishResult(success=False, error=self.error)


@pytest.fixture(name="test_engine")
def test_engine_fixture():
    """Create a fresh in-memory database engine for each test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def store(test_engine) -> QueueStore:
    return QueueStore(test_engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def etsy_connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def printify_connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def connectors(etsy_connector, printify_connector) -> ConnectorRegistry:
    registry = ConnectorRegistry()
    registry.register("etsy", etsy_connector)
    registry.register("printify", printify_connector)
    return registry


@pytest.fixture
def connected_platforms(store) -> List[str]:
    platforms = ["etsy", "printify"]
    for platform in platforms:
        store.upsert_connection(platform, ConnectionStatus.CONNECTED)
    return platforms


@pytest.fixture
def metrics() -> MetricsStore:
    return MetricsStore()


@pytest.fixture
def queue(store, clock, connectors, connected_platforms, metrics) -> PublishingQueueService:
    """Queue service with a single attempt per dispatch (no in-call retries)."""
    return PublishingQueueService(
        store=store,
        connectors=connectors,
        clock=clock,
        metrics=metrics,
        retry_executor=RetryExecutor(RetryOptions(max_attempts=1), sleep=clock.sleep),
    )
