"""
Tests for circuit breaker functionality.

Tests cover:
1. State transitions (CLOSED -> OPEN -> HALF_OPEN -> CLOSED)
2. execute() short-circuiting while open
3. Failure filtering, observers and persisted state
4. CircuitBreakerRegistry (get, stats, reset)
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from publisher.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from publisher.core.errors import CircuitOpenError, ErrorKind, PublishError
from publisher.services.publishing_queue import counts_against_breaker


async def _fail(breaker: CircuitBreaker, times: int = 1) -> None:
    for _ in range(times):
        with pytest.raises(PublishError):
            await breaker.execute(AsyncMock(side_effect=PublishError("503")))


class TestCircuitState:
    """Tests for CircuitState enum."""

    def test_circuit_states_exist(self):
        assert CircuitState.CLOSED.value == "closed"
        assert CircuitState.OPEN.value == "open"
        assert CircuitState.HALF_OPEN.value == "half_open"
        assert len(CircuitState) == 3


class TestCircuitBreakerInitialization:
    def test_default_initialization(self, clock):
        cb = CircuitBreaker(name="etsy", clock=clock)

        assert cb.failure_threshold == 5
        assert cb.success_threshold == 2
        assert cb.timeout == 30.0
        assert cb.state == CircuitState.CLOSED
        assert cb.retry_after() == 0.0


class TestStateTransitions:
    """Tests for circuit breaker state transitions."""

    @pytest.mark.asyncio
    async def test_opens_at_failure_threshold(self, clock):
        cb = CircuitBreaker(name="etsy", failure_threshold=3, clock=clock)

        await _fail(cb, 2)
        assert cb.state == CircuitState.CLOSED

        await _fail(cb)
        assert cb.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_calling(self, clock):
        cb = CircuitBreaker(name="etsy", failure_threshold=1, timeout=30.0, clock=clock)
        await _fail(cb)

        operation = AsyncMock(return_value="ok")
        clock.advance(10)
        with pytest.raises(CircuitOpenError) as exc_info:
            await cb.execute(operation)

        operation.assert_not_awaited()
        assert exc_info.value.name == "etsy"
        assert exc_info.value.retry_after == pytest.approx(20.0)

    @pytest.mark.asyncio
    async def test_still_open_at_exact_timeout(self, clock):
        """The timeout must be strictly exceeded before a trial call."""
        cb = CircuitBreaker(name="etsy", failure_threshold=1, timeout=30.0, clock=clock)
        await _fail(cb)

        clock.advance(30)
        with pytest.raises(CircuitOpenError):
            await cb.execute(AsyncMock(return_value="ok"))

    @pytest.mark.asyncio
    async def test_recovers_through_half_open(self, clock):
        cb = CircuitBreaker(name="etsy", failure_threshold=1, success_threshold=2, timeout=30.0, clock=clock)
        await _fail(cb)

        clock.advance(30.5)
        assert await cb.execute(AsyncMock(return_value="first")) == "first"
        assert cb.state == CircuitState.HALF_OPEN

        assert await cb.execute(AsyncMock(return_value="second")) == "second"
        assert cb.state == CircuitState.CLOSED
        stats = cb.get_stats()
        assert stats["failure_count"] == 0
        assert stats["success_count"] == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, clock):
        cb = CircuitBreaker(name="etsy", failure_threshold=1, success_threshold=2, timeout=30.0, clock=clock)
        await _fail(cb)

        clock.advance(31)
        await cb.execute(AsyncMock(return_value="ok"))
        assert cb.state == CircuitState.HALF_OPEN

        await _fail(cb)
        assert cb.state == CircuitState.OPEN
        assert cb.get_stats()["success_count"] == 0
        assert cb.retry_after() == pytest.approx(30.0)

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, clock):
        cb = CircuitBreaker(name="etsy", failure_threshold=3, clock=clock)
        await _fail(cb, 2)

        await cb.execute(AsyncMock(return_value="ok"))
        assert cb.get_stats()["failure_count"] == 0

        await _fail(cb, 2)
        assert cb.state == CircuitState.CLOSED


class TestFailureFiltering:
    @pytest.mark.asyncio
    async def test_permanent_errors_do_not_count(self, clock):
        cb = CircuitBreaker(name="etsy", failure_threshold=1, clock=clock, is_failure=counts_against_breaker)

        with pytest.raises(PublishError):
            await cb.execute(AsyncMock(side_effect=PublishError("bad sku", kind=ErrorKind.PERMANENT)))

        assert cb.state == CircuitState.CLOSED
        assert cb.get_stats()["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_transient_errors_count(self, clock):
        cb = CircuitBreaker(name="etsy", failure_threshold=1, clock=clock, is_failure=counts_against_breaker)

        await _fail(cb)

        assert cb.state == CircuitState.OPEN


class TestObserverAndPersistence:
    @pytest.mark.asyncio
    async def test_state_change_notifies_observer(self, clock):
        observer = MagicMock()
        cb = CircuitBreaker(name="etsy", failure_threshold=1, clock=clock, on_state_change=observer)

        await _fail(cb)

        observer.assert_called_once_with("etsy", "closed", "open")

    @pytest.mark.asyncio
    async def test_observer_errors_are_contained(self, clock):
        observer = MagicMock(side_effect=RuntimeError("pager down"))
        cb = CircuitBreaker(name="etsy", failure_threshold=1, clock=clock, on_state_change=observer)

        await _fail(cb)

        assert cb.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_state_restored_from_store(self, store, clock):
        cb = CircuitBreaker(name="etsy", failure_threshold=2, clock=clock, store=store)
        await _fail(cb, 2)

        restored = CircuitBreaker(name="etsy", failure_threshold=2, clock=clock, store=store)

        assert restored.state == CircuitState.OPEN
        assert restored.get_stats()["failure_count"] == 2
        assert restored.retry_after() == pytest.approx(30.0)

    def test_store_failures_are_logged_not_raised(self, clock):
        broken_store = MagicMock()
        broken_store.load_breaker_state.side_effect = RuntimeError("db down")
        broken_store.save_breaker_state.side_effect = RuntimeError("db down")

        cb = CircuitBreaker(name="etsy", failure_threshold=1, clock=clock, store=broken_store)
        cb.record_failure()

        assert cb.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_reset_forces_closed(self, store, clock):
        cb = CircuitBreaker(name="etsy", failure_threshold=1, clock=clock, store=store)
        await _fail(cb)

        cb.reset()

        assert cb.state == CircuitState.CLOSED
        assert cb.get_stats()["last_failure_time"] is None
        assert store.load_breaker_state("etsy")["state"] == "closed"


class TestCircuitBreakerRegistry:
    def test_get_returns_same_instance(self, clock):
        registry = CircuitBreakerRegistry(clock=clock)

        assert registry.get("etsy") is registry.get("etsy")
        assert registry.get("etsy") is not registry.get("printify")

    def test_defaults_applied(self, clock):
        registry = CircuitBreakerRegistry(clock=clock, failure_threshold=2, timeout=5.0)

        cb = registry.get("etsy")

        assert cb.failure_threshold == 2
        assert cb.timeout == 5.0

    @pytest.mark.asyncio
    async def test_stats_and_reset(self, clock):
        registry = CircuitBreakerRegistry(clock=clock, failure_threshold=1)
        await _fail(registry.get("etsy"))
        registry.get("printify")

        assert registry.get_all_states() == {"etsy": "open", "printify": "closed"}
        assert registry.get_all_stats()["etsy"]["state"] == "open"

        assert registry.reset("etsy") is True
        assert registry.get("etsy").state == CircuitState.CLOSED
        assert registry.reset("unknown") is False

    @pytest.mark.asyncio
    async def test_reset_all(self, clock):
        registry = CircuitBreakerRegistry(clock=clock, failure_threshold=1)
        await _fail(registry.get("etsy"))
        await _fail(registry.get("printify"))

        registry.reset_all()

        assert set(registry.get_all_states().values()) == {"closed"}
