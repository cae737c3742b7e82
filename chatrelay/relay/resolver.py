"""Map platform identifiers to the owning tenant and its decrypted credentials."""

import logging
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.adapters.telegram import secrets_match
from chatrelay.errors import ConnectionNotFound, CredentialError, CredentialsUnusable
from chatrelay.models import Connection
from chatrelay.security.vault import Vault
from chatrelay.storage.repositories import list_active_connections, mark_connection_error

logger = logging.getLogger(__name__)


@dataclass
class ResolvedConnection:
    connection: Connection
    tenant_id: str
    credentials: dict[str, Any]


async def _resolve(
    db: AsyncSession,
    vault: Vault,
    channel_id: str,
    matches: Callable[[dict], bool],
    describe: str,
) -> ResolvedConnection:
    connections = await list_active_connections(db, channel_id)
    logger.debug("Scanning %d active %s connections", len(connections), channel_id)

    connection = next((c for c in connections if matches(c.meta or {})), None)
    if connection is None or not connection.credentials_enc:
        raise ConnectionNotFound(f"No {channel_id} connection for {describe}")

    try:
        credentials = vault.decrypt_json(connection.credentials_enc)
    except CredentialError as exc:
        # Corrupt blob or rotated key; flag the connection so the dashboard shows it
        logger.error(
            "Credentials unusable for %s connection %s (tenant %s): %s",
            channel_id,
            connection.id,
            connection.tenant_id,
            exc.message,
        )
        await mark_connection_error(db, connection.id, "Stored credentials could not be decrypted")
        await db.commit()
        raise CredentialsUnusable(
            f"Credentials unusable for {channel_id} connection", connection_id=connection.id
        ) from exc

    if not isinstance(credentials, dict):
        await mark_connection_error(db, connection.id, "Stored credentials have an unexpected shape")
        await db.commit()
        raise CredentialsUnusable(
            f"Credentials malformed for {channel_id} connection", connection_id=connection.id
        )

    return ResolvedConnection(
        connection=connection, tenant_id=connection.tenant_id, credentials=credentials
    )


async def resolve_slack(db: AsyncSession, vault: Vault, team_id: str) -> ResolvedConnection:
    """Find the Slack connection whose metadata carries this team ID."""
    return await _resolve(
        db, vault, "slack", lambda meta: meta.get("teamId") == team_id, f"team {team_id}"
    )


async def resolve_telegram(
    db: AsyncSession, vault: Vault, webhook_secret: str
) -> ResolvedConnection:
    """Find the Telegram connection whose stored webhook secret equals the header value."""

    def matches(meta: dict) -> bool:
        stored = meta.get("webhookSecret")
        return isinstance(stored, str) and secrets_match(webhook_secret, stored)

    return await _resolve(db, vault, "telegram", matches, "secret token")
