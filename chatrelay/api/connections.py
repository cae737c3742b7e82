"""Dashboard connection management endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.auth.middleware import RelayDep, TenantDep
from chatrelay.database import get_db
from chatrelay.errors import DeliveryError
from chatrelay.relay.connections import connect_telegram, connect_with_token, disconnect
from chatrelay.schemas.connection import (
    ConnectionOut,
    DisconnectResponse,
    TelegramConnectRequest,
    TokenConnectRequest,
)
from chatrelay.storage.repositories import list_tenant_connections

router = APIRouter()

# Channels with their own handshake; they cannot be connected with a bare token
HANDSHAKE_CHANNELS = {"telegram", "slack", "dashboard"}


@router.get("", response_model=list[ConnectionOut])
async def list_connections(
    tenant: TenantDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """All connections for the authenticated tenant, credentials omitted."""
    connections = await list_tenant_connections(db, tenant.id)
    return [ConnectionOut.from_connection(c) for c in connections]


@router.post("/token", response_model=ConnectionOut)
async def connect_token(
    body: TokenConnectRequest,
    tenant: TenantDep,
    relay: RelayDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Store a bot token for a token-authenticated channel."""
    if body.channel_id in HANDSHAKE_CHANNELS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{body.channel_id} cannot be connected with a token",
        )
    connection = await connect_with_token(
        db, relay.vault, tenant.id, body.channel_id, body.token, label=body.label
    )
    return ConnectionOut.from_connection(connection)


@router.post("/telegram", response_model=ConnectionOut)
async def connect_telegram_bot(
    body: TelegramConnectRequest,
    tenant: TenantDep,
    relay: RelayDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Validate a BotFather token and point the bot's webhook at this service."""
    app_url = relay.settings.public_app_url
    if not app_url:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="PUBLIC_APP_URL not configured",
        )
    try:
        connection = await connect_telegram(
            db,
            relay.vault,
            relay.telegram,
            tenant.id,
            body.token,
            webhook_url=f"{app_url.rstrip('/')}/webhooks/telegram",
        )
    except DeliveryError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc
    return ConnectionOut.from_connection(connection)


@router.delete("/{connection_id}", response_model=DisconnectResponse)
async def delete_connection(
    connection_id: str,
    tenant: TenantDep,
    relay: RelayDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Remove a connection. External cleanup failures are reported, not raised."""
    cleanup = await disconnect(db, relay.vault, relay.telegram, tenant.id, connection_id)
    return DisconnectResponse(cleanup_ok=cleanup.ok, cleanup_error=cleanup.error)
