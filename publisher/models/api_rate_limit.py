"""
Rate-limit window persistence model.

One row per (platform, endpoint). The limiter keeps windows in memory and
writes every change through, so counts survive restarts.
"""

from typing import Optional
from datetime import datetime

from sqlmodel import Field, SQLModel
from sqlalchemy import UniqueConstraint

from publisher.core.typing import utc_now


class ApiRateLimit(SQLModel, table=True):
    """Fixed one-minute request window for a platform endpoint."""

    __tablename__ = "api_rate_limits"

    id: Optional[int] = Field(default=None, primary_key=True)
    platform: str = Field(index=True)
    endpoint: str = Field(default="default")
    request_count: int = Field(default=0)
    limit_per_minute: int = Field(default=60)
    window_start: datetime = Field(default_factory=utc_now)
    last_request_at: Optional[datetime] = None

    __table_args__ = (UniqueConstraint("platform", "endpoint", name="uq_api_rate_limits_platform_endpoint"),)
