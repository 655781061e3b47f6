"""
Persisted circuit breaker state, one row per platform.

Restored when a breaker is constructed, so a deploy does not reopen traffic
to a platform that was failing a minute ago.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from publisher.core.typing import utc_now


class CircuitBreakerState(SQLModel, table=True):
    __tablename__ = "circuit_breaker_states"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)  # breaker name, the platform key
    state: str = Field(default="closed")  # CircuitState value
    failure_count: int = Field(default=0)
    last_failure_at: Optional[datetime] = None  # open -> half_open timeout counts from here
    updated_at: datetime = Field(default_factory=utc_now)
