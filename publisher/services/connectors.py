"""
Connector contract for platform publishing.

Concrete connectors (Etsy, Printify, Amazon, ...) live outside the core.
The queue only needs `publish(item) -> PublishResult` and errors it can
classify: raise PublishError with a kind, or let httpx errors propagate.

Usage:
    class EtsyConnector:
        async def publish(self, item: PublishingQueueItem) -> PublishResult:
            response = await self.client.post("/listings", json=to_listing(item))
            if response.is_error:
                raise error_from_response(response)
            data = response.json()
            return PublishResult(success=True, external_id=str(data["listing_id"]), external_url=data["url"])

    connectors = ConnectorRegistry()
    connectors.register("etsy", EtsyConnector(client))
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

import httpx

from publisher.core.errors import ConnectorNotFoundError, ErrorKind, PublishError
from publisher.models.publishing_queue import PublishingQueueItem


class FailureReason(str, Enum):
    """Why a dispatch did not publish. Drives the queue's state transition."""

    THROTTLED = "throttled"  # our own rate limiter has no budget left this window
    CIRCUIT_OPEN = "circuit_open"  # the platform's breaker is rejecting calls
    TRANSIENT = "transient"  # worth another attempt later
    PERMANENT = "permanent"  # retrying cannot help


@dataclass
class PublishResult:
    success: bool
    external_id: Optional[str] = None
    external_url: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[FailureReason] = None
    retry_after: Optional[float] = None  # seconds, for THROTTLED / CIRCUIT_OPEN

    @property
    def rate_limited(self) -> bool:
        return self.reason == FailureReason.THROTTLED

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reason"] = self.reason.value if self.reason else None
        return data


class PublishConnector(Protocol):
    async def publish(self, item: PublishingQueueItem) -> PublishResult: ...


def error_from_response(response: httpx.Response, message: Optional[str] = None) -> PublishError:
    """Map a failed vendor response onto the error taxonomy by status code."""
    status = response.status_code
    if status == 429:
        kind = ErrorKind.RATE_LIMITED
    elif status >= 500:
        kind = ErrorKind.TRANSIENT
    else:
        kind = ErrorKind.PERMANENT
    detail = message or f"{response.request.method} {response.request.url} returned {status}"
    return PublishError(detail, kind=kind, status_code=status)


class ConnectorRegistry:
    def __init__(self):
        self._connectors: Dict[str, PublishConnector] = {}

    def register(self, platform: str, connector: PublishConnector) -> None:
        self._connectors[platform] = connector

    def unregister(self, platform: str) -> None:
        self._connectors.pop(platform, None)

    def get(self, platform: str) -> PublishConnector:
        connector = self._connectors.get(platform)
        if connector is None:
            raise ConnectorNotFoundError(platform)
        return connector

    def platforms(self) -> List[str]:
        return sorted(self._connectors)

    def __contains__(self, platform: object) -> bool:
        return platform in self._connectors


__all__ = ["FailureReason", "PublishResult", "PublishConnector", "ConnectorRegistry", "error_from_response"]
