from .publishing_queue import PublishingQueueItem, PublishingStatus
from .api_rate_limit import ApiRateLimit
from .platform_connection import PlatformConnection, ConnectionStatus
from .circuit_breaker_state import CircuitBreakerState

__all__ = [
    "PublishingQueueItem",
    "PublishingStatus",
    "ApiRateLimit",
    "PlatformConnection",
    "ConnectionStatus",
    "CircuitBreakerState",
]
