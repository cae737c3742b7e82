"""Wiring for the relay's long-lived collaborators."""

from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.adapters.delivery import ReplyDeliverer
from chatrelay.adapters.slack import SlackClient
from chatrelay.adapters.telegram import TelegramClient
from chatrelay.config import Settings
from chatrelay.database import async_session_maker
from chatrelay.relay.background import BackgroundRunner
from chatrelay.relay.dispatcher import AgentDispatcher, SessionLocks
from chatrelay.relay.pipeline import RelayPipeline
from chatrelay.relay.quota import PlanLimits, QuotaGate
from chatrelay.security.vault import Vault


@dataclass
class Relay:
    settings: Settings
    http: httpx.AsyncClient
    vault: Vault
    slack: SlackClient
    telegram: TelegramClient
    deliverer: ReplyDeliverer
    quota: QuotaGate
    dispatcher: AgentDispatcher
    pipeline: RelayPipeline
    background: BackgroundRunner

    async def aclose(self) -> None:
        await self.background.drain(self.settings.shutdown_drain_seconds)
        await self.http.aclose()


def build_relay(
    settings: Settings,
    http: httpx.AsyncClient | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    plan_limits: PlanLimits | None = None,
) -> Relay:
    """
    Build the relay. Raises ConfigurationError on a missing or malformed
    ENCRYPTION_KEY, which stops the application from starting.
    """
    vault = Vault.from_key(settings.encryption_key)
    http = http or httpx.AsyncClient(timeout=30.0)
    session_factory = session_factory or async_session_maker

    slack = SlackClient(http, settings.slack_api_base)
    telegram = TelegramClient(http, settings.telegram_api_base)
    deliverer = ReplyDeliverer(slack, telegram)
    quota = QuotaGate(plan_limits or PlanLimits.from_settings(settings))
    dispatcher = AgentDispatcher(
        http,
        worker_url=settings.worker_url,
        worker_api_secret=settings.worker_api_secret,
        timeout_seconds=settings.agent_timeout_seconds,
        default_model=settings.default_agent_model,
        session_locks=SessionLocks() if settings.serialize_sessions else None,
    )
    pipeline = RelayPipeline(session_factory, vault, quota, dispatcher, deliverer)
    return Relay(
        settings=settings,
        http=http,
        vault=vault,
        slack=slack,
        telegram=telegram,
        deliverer=deliverer,
        quota=quota,
        dispatcher=dispatcher,
        pipeline=pipeline,
        background=BackgroundRunner(),
    )
