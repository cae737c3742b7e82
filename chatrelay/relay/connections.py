"""Connection handshakes and teardown (token and webhook registration, not OAuth)."""

import logging
import secrets
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.adapters.telegram import TelegramClient
from chatrelay.errors import CredentialError, DeliveryError
from chatrelay.models import Connection
from chatrelay.security.vault import Vault
from chatrelay.storage.repositories import (
    delete_connection,
    get_connection,
    get_tenant_connection,
    upsert_connection,
)

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    """Outcome of a best-effort external cleanup. Logged, never raised."""

    ok: bool
    error: str | None = None


async def teardown_telegram_webhook(
    vault: Vault, telegram: TelegramClient, connection: Connection
) -> CleanupResult:
    if not connection.credentials_enc:
        return CleanupResult(ok=True)
    try:
        creds = vault.decrypt_json(connection.credentials_enc)
        await telegram.delete_webhook(creds["token"])
    except (CredentialError, DeliveryError, KeyError, TypeError) as exc:
        logger.warning("Telegram webhook teardown failed for %s: %s", connection.id, exc)
        return CleanupResult(ok=False, error=str(exc))
    return CleanupResult(ok=True)


async def connect_with_token(
    db: AsyncSession,
    vault: Vault,
    tenant_id: str,
    channel_id: str,
    token: str,
    label: str | None = None,
) -> Connection:
    """Store a bot token for a token-authenticated channel."""
    connection = await upsert_connection(
        db,
        tenant_id=tenant_id,
        channel_id=channel_id,
        credentials_enc=vault.encrypt_json({"token": token}),
        metadata={},
        label=label,
    )
    logger.info("Connected %s for tenant %s", channel_id, tenant_id)
    return connection


async def connect_telegram(
    db: AsyncSession,
    vault: Vault,
    telegram: TelegramClient,
    tenant_id: str,
    token: str,
    webhook_url: str,
) -> Connection:
    """
    Validate a BotFather token, register our webhook with a fresh secret, store it.

    Raises DeliveryError if Telegram rejects the token or the webhook.
    """
    bot = await telegram.get_me(token)
    webhook_secret = secrets.token_hex(32)

    existing = await get_tenant_connection(db, tenant_id, "telegram")
    if existing is not None:
        # Old bot may differ from the new one; drop its webhook first
        await teardown_telegram_webhook(vault, telegram, existing)

    await telegram.set_webhook(token, webhook_url, webhook_secret)

    username = bot.get("username")
    connection = await upsert_connection(
        db,
        tenant_id=tenant_id,
        channel_id="telegram",
        credentials_enc=vault.encrypt_json({"token": token}),
        metadata={
            "botId": bot.get("id"),
            "botUsername": username,
            "webhookSecret": webhook_secret,
        },
        label=f"@{username}" if username else None,
    )
    logger.info("Connected Telegram bot @%s for tenant %s", username, tenant_id)
    return connection


async def disconnect(
    db: AsyncSession,
    vault: Vault,
    telegram: TelegramClient,
    tenant_id: str,
    connection_id: str,
) -> CleanupResult:
    """Delete a connection. Always succeeds; external cleanup is best-effort."""
    connection = await get_connection(db, connection_id, tenant_id)
    if connection is None:
        return CleanupResult(ok=True)

    cleanup = CleanupResult(ok=True)
    if connection.channel_id == "telegram":
        cleanup = await teardown_telegram_webhook(vault, telegram, connection)

    await delete_connection(db, connection_id, tenant_id)
    logger.info("Disconnected %s connection %s for tenant %s", connection.channel_id, connection_id, tenant_id)
    return cleanup
