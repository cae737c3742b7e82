"""Connection and tenant schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class TokenConnectRequest(BaseModel):
    """POST /v1/connections/token - store a bot token for a channel."""

    channel_id: str = Field(min_length=1)
    token: str = Field(min_length=1)
    label: str | None = None


class TelegramConnectRequest(BaseModel):
    """POST /v1/connections/telegram - BotFather token."""

    token: str = Field(min_length=1)


class ConnectionOut(BaseModel):
    """Connection as shown on the dashboard. Credentials never leave the store."""

    id: str
    channel_id: str
    label: str | None = None
    status: str
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_connection(cls, connection) -> "ConnectionOut":
        meta = dict(connection.meta or {})
        # The webhook secret is a credential
        meta.pop("webhookSecret", None)
        return cls(
            id=connection.id,
            channel_id=connection.channel_id,
            label=connection.label,
            status=connection.status,
            error_message=connection.error_message,
            metadata=meta,
            created_at=connection.created_at,
            updated_at=connection.updated_at,
        )


class DisconnectResponse(BaseModel):
    success: bool = True
    cleanup_ok: bool = True
    cleanup_error: str | None = None


class TenantOut(BaseModel):
    """GET /v1/tenant/me response."""

    model_config = {"from_attributes": True}

    id: str
    name: str | None = None
    email: str | None = None
    plan: str
    created_at: datetime
