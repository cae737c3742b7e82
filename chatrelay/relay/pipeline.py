"""
Inbound message pipeline: resolve -> gate -> dispatch -> reply -> record.

Runs after the platform already has its 200, so nothing here raises to the
caller. Each stage maps its failure to one outcome: drop silently, post one
explanatory message, or post one generic apology.
"""

import enum
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.adapters.delivery import ReplyDeliverer
from chatrelay.adapters.messages import (
    IncomingMessage,
    ReplyTarget,
    SlackReplyTarget,
    TelegramReplyTarget,
)
from chatrelay.errors import (
    ConfigurationError,
    ConnectionNotFound,
    CredentialsUnusable,
    DispatchError,
)
from chatrelay.relay.dispatcher import AgentDispatcher
from chatrelay.relay.quota import QuotaGate
from chatrelay.relay.resolver import ResolvedConnection, resolve_slack, resolve_telegram
from chatrelay.security.vault import Vault
from chatrelay.storage.repositories import get_agent_config, get_tenant, record_usage

logger = logging.getLogger(__name__)

APOLOGY = "Sorry, something went wrong processing your message. Please try again."


class Outcome(str, enum.Enum):
    """Terminal state of one background sequence."""

    DROPPED = "dropped"
    OVER_QUOTA = "over_quota"
    FAILED = "failed"
    UNDELIVERED = "undelivered"
    UNRECORDED = "unrecorded"
    REPLIED = "replied"


def _preview(text: str) -> str:
    return text[:50]


def build_target(message: IncomingMessage, credentials: dict) -> ReplyTarget:
    """Reply target for the platform the message came from."""
    if message.platform == "slack":
        return SlackReplyTarget(
            bot_token=credentials["access_token"],
            channel_id=message.conversation_id,
            thread_ts=message.thread_id,
        )
    if message.platform == "telegram":
        return TelegramReplyTarget(
            bot_token=credentials["token"],
            chat_id=message.conversation_id,
            message_id=int(message.message_id) if message.message_id else None,
        )
    raise ValueError(f"Unsupported platform: {message.platform}")


class RelayPipeline:
    """Background processing for a single normalized inbound message."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: Vault,
        quota: QuotaGate,
        dispatcher: AgentDispatcher,
        deliverer: ReplyDeliverer,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.quota = quota
        self.dispatcher = dispatcher
        self.deliverer = deliverer

    async def _resolve(
        self, db: AsyncSession, message: IncomingMessage, match_value: str
    ) -> ResolvedConnection:
        if message.platform == "slack":
            return await resolve_slack(db, self.vault, match_value)
        if message.platform == "telegram":
            return await resolve_telegram(db, self.vault, match_value)
        raise ConnectionNotFound(f"Unsupported platform: {message.platform}")

    async def handle(self, message: IncomingMessage, match_value: str) -> Outcome:
        """
        Process one message end to end.

        match_value is the Slack team ID or the Telegram webhook secret.
        """
        platform = message.platform
        logger.info(
            "[%s] Processing message in %s: %s",
            platform,
            message.conversation_id,
            _preview(message.text),
        )
        async with self.session_factory() as db:
            try:
                resolved = await self._resolve(db, message, match_value)
            except CredentialsUnusable as exc:
                logger.error("[%s] Dropping message: %s", platform, exc.message)
                return Outcome.DROPPED
            except ConnectionNotFound as exc:
                logger.warning("[%s] Dropping message: %s", platform, exc.message)
                return Outcome.DROPPED
            except SQLAlchemyError:
                logger.exception("[%s] Database error during resolve, dropping message", platform)
                return Outcome.DROPPED

            tenant_id = resolved.tenant_id
            try:
                target = build_target(message, resolved.credentials)
            except (KeyError, ValueError, TypeError):
                logger.error(
                    "[%s] Credentials for connection %s lack a bot token",
                    platform,
                    resolved.connection.id,
                )
                return Outcome.DROPPED
            logger.info("[%s] Found connection for tenant %s", platform, tenant_id)

            try:
                tenant = await get_tenant(db, tenant_id)
                status = await self.quota.check(db, tenant_id, tenant.plan) if tenant else None
            except SQLAlchemyError:
                logger.exception("[%s] Database error during quota check", platform)
                await self.deliverer.try_deliver(target, APOLOGY)
                return Outcome.FAILED
            if status is not None and not status.allowed:
                logger.info(
                    "[%s] Tenant %s exceeded quota (%d/%s)",
                    platform,
                    tenant_id,
                    status.used,
                    status.limit,
                )
                await self.deliverer.try_deliver(target, status.rejection_message())
                return Outcome.OVER_QUOTA

            try:
                agent = await get_agent_config(db, tenant_id)
                # Hand the connection back to the pool for the length of the agent call
                await db.commit()
            except SQLAlchemyError:
                logger.exception("[%s] Database error loading agent config", platform)
                await self.deliverer.try_deliver(target, APOLOGY)
                return Outcome.FAILED
            logger.info(
                "[%s] Agent config: %s", platform, agent.slug if agent else "(default)"
            )

            try:
                reply = await self.dispatcher.invoke(tenant_id, message.text, target, agent)
            except ConfigurationError as exc:
                logger.error("[%s] %s", platform, exc.message)
                await self.deliverer.try_deliver(target, APOLOGY)
                return Outcome.FAILED
            except DispatchError as exc:
                logger.error(
                    "[%s] Dispatch failed for tenant %s: %s", platform, tenant_id, exc.message
                )
                await self.deliverer.try_deliver(target, APOLOGY)
                return Outcome.FAILED

            if not await self.deliverer.try_deliver(target, reply.reply_text):
                return Outcome.UNDELIVERED

            try:
                await record_usage(
                    db,
                    tenant_id=tenant_id,
                    model=reply.usage.model,
                    input_tokens=reply.usage.input_tokens,
                    output_tokens=reply.usage.output_tokens,
                    channel_id=platform,
                    agent_slug=agent.slug if agent else None,
                )
                await db.commit()
            except SQLAlchemyError:
                logger.exception(
                    "[%s] Database error recording usage for tenant %s", platform, tenant_id
                )
                return Outcome.UNRECORDED
            logger.info("[%s] Reply sent for tenant %s", platform, tenant_id)
            return Outcome.REPLIED

