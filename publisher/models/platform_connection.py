"""
Platform connection model.

Only the part the publishing core reads: whether a platform account is
connected. Credentials and OAuth tokens live with the connectors.
"""

from enum import Enum
from typing import Optional
from datetime import datetime

from sqlmodel import Field, SQLModel

from publisher.core.typing import utc_now


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    PENDING = "pending"


class PlatformConnection(SQLModel, table=True):
    __tablename__ = "platform_connections"

    id: Optional[int] = Field(default=None, primary_key=True)
    platform: str = Field(unique=True, index=True)
    status: ConnectionStatus = Field(default=ConnectionStatus.DISCONNECTED)
    error_message: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
