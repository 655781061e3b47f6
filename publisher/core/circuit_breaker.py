from datetime import datetime
from enum import Enum
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, TypeVar
import logging

from publisher.core.config import settings
from publisher.core.errors import CircuitOpenError
from publisher.core.typing import Clock, system_clock

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Type alias for notification callback - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]  # (name, old_state, new_state)


class BreakerStateStore(Protocol):
    def load_breaker_state(self, name: str) -> Optional[Dict[str, Any]]: ...

    def save_breaker_state(
        self, name: str, state: str, failure_count: int, last_failure_at: Optional[datetime]
    ) -> None: ...


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if recovered


@dataclass
class CircuitBreaker:
    name: str
    failure_threshold: int = settings.BREAKER_FAILURE_THRESHOLD
    success_threshold: int = settings.BREAKER_SUCCESS_THRESHOLD
    timeout: float = settings.BREAKER_TIMEOUT_SECONDS  # seconds open before a trial call
    clock: Clock = field(default=system_clock, repr=False)
    store: Optional[BreakerStateStore] = field(default=None, repr=False)
    on_state_change: Optional[StateChangeCallback] = field(default=None, repr=False)
    # Exceptions for which this returns False pass through without counting
    is_failure: Optional[Callable[[BaseException], bool]] = field(default=None, repr=False)

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _last_failure_time: datetime | None = field(default=None, init=False)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    def __post_init__(self):
        """Restore state from the store if one is attached."""
        if self.store is None:
            return
        try:
            saved = self.store.load_breaker_state(self.name)
        except Exception as e:
            logger.warning(f"Failed to load circuit breaker state for {self.name}: {e}")
            return
        if saved:
            try:
                self._state = CircuitState(saved.get("state", "closed"))
            except ValueError:
                self._state = CircuitState.CLOSED
            self._failure_count = saved.get("failure_count", 0)
            self._last_failure_time = saved.get("last_failure_at")
            logger.info(f"Circuit {self.name}: restored state={self._state.value}, failures={self._failure_count}")

    def _persist(self) -> None:
        """Persist current state. Persistence failures never break the breaker."""
        if self.store is None:
            return
        try:
            self.store.save_breaker_state(
                self.name,
                self._state.value,
                self._failure_count,
                self._last_failure_time,
            )
        except Exception as e:
            logger.warning(f"Failed to persist circuit breaker state for {self.name}: {e}")

    def _transition(self, new_state: CircuitState) -> None:
        """Must be called while holding self._lock."""
        old_state = self._state
        self._state = new_state
        logger.info(f"Circuit {self.name}: {old_state.name} -> {new_state.name}")
        if self.on_state_change:
            try:
                self.on_state_change(self.name, old_state.value, new_state.value)
            except Exception as e:
                logger.error(f"Circuit breaker notification failed: {e}")

    @property
    def state(self) -> CircuitState:
        return self._state

    def _seconds_since_failure(self) -> float:
        if self._last_failure_time is None:
            return float("inf")
        return (self.clock.now() - self._last_failure_time).total_seconds()

    def retry_after(self) -> float:
        """Seconds until an open circuit will admit a trial call (0 when not open)."""
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.timeout - self._seconds_since_failure())

    def allow_request(self) -> bool:
        """Admit or reject a call, moving OPEN -> HALF_OPEN once the timeout has elapsed."""
        state_changed = False
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._seconds_since_failure() > self.timeout:
                    self._transition(CircuitState.HALF_OPEN)
                    self._success_count = 0
                    state_changed = True
                    result = True
                else:
                    result = False
            else:
                result = True
        # Persist outside lock to avoid holding lock during DB operation
        if state_changed:
            self._persist()
        return result

    def record_success(self) -> None:
        state_changed = False
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._transition(CircuitState.CLOSED)
                    self._failure_count = 0
                    self._success_count = 0
                    state_changed = True
            elif self._failure_count:
                self._failure_count = 0
                state_changed = True
        if state_changed:
            self._persist()

    def record_failure(self) -> None:
        state_changed = False
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self.clock.now()

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit {self.name}: failure during recovery")
                self._transition(CircuitState.OPEN)
                self._success_count = 0
                state_changed = True
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                logger.warning(f"Circuit {self.name}: threshold reached ({self._failure_count} failures)")
                self._transition(CircuitState.OPEN)
                state_changed = True
        if state_changed:
            self._persist()

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run `operation` through the breaker.

        Raises CircuitOpenError without calling `operation` while the circuit
        is open and its timeout has not elapsed.
        """
        if not self.allow_request():
            raise CircuitOpenError(self.name, retry_after=self.retry_after())

        try:
            result = await operation()
        except Exception as error:
            if self.is_failure is None or self.is_failure(error):
                self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        """Force the circuit closed (operational override)."""
        with self._lock:
            old_state = self._state
            if old_state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)
                logger.info(f"Circuit {self.name}: manually reset from {old_state.value}")
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
        self._persist()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "last_failure_time": self._last_failure_time.isoformat() if self._last_failure_time else None,
                "retry_after": round(self.retry_after(), 3),
            }


class CircuitBreakerRegistry:
    """Owns one breaker per dependency name, created on first use with shared defaults."""

    def __init__(
        self,
        clock: Clock = system_clock,
        store: Optional[BreakerStateStore] = None,
        on_state_change: Optional[StateChangeCallback] = None,
        **defaults: Any,
    ):
        self.clock = clock
        self.store = store
        self.on_state_change = on_state_change
        self.defaults = defaults
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    def get(self, name: str, **kwargs: Any) -> CircuitBreaker:
        with self._lock:
            if name not in self._breakers:
                options = {**self.defaults, **kwargs}
                self._breakers[name] = CircuitBreaker(
                    name=name,
                    clock=self.clock,
                    store=self.store,
                    on_state_change=self.on_state_change,
                    **options,
                )
            return self._breakers[name]

    def get_all_states(self) -> Dict[str, str]:
        return {name: cb.state.value for name, cb in self._breakers.items()}

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: cb.get_stats() for name, cb in self._breakers.items()}

    def reset(self, name: str) -> bool:
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
