"""Synchronous dashboard chat: the caller's HTTP response is the reply surface."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.adapters.messages import DashboardReplyTarget, session_key
from chatrelay.errors import QuotaExceeded
from chatrelay.models import Tenant
from chatrelay.relay.dispatcher import AgentDispatcher, AgentReply
from chatrelay.relay.quota import QuotaGate
from chatrelay.storage.repositories import (
    add_dashboard_message,
    clear_dashboard_messages,
    get_agent_config,
    record_usage,
)

logger = logging.getLogger(__name__)


async def send_dashboard_message(
    db: AsyncSession,
    quota: QuotaGate,
    dispatcher: AgentDispatcher,
    tenant: Tenant,
    text: str,
) -> AgentReply:
    """
    Run one dashboard turn.

    The user's message is committed before the agent call so it stays in
    history even when the call fails.

    Raises:
        QuotaExceeded: monthly allowance used up
        ConfigurationError: agent runtime not configured
        DispatchError: agent runtime failed
    """
    status = await quota.check(db, tenant.id, tenant.plan)
    if not status.allowed:
        raise QuotaExceeded(status.rejection_message(), status.used, status.limit, status.plan)

    agent = await get_agent_config(db, tenant.id)
    await add_dashboard_message(db, tenant.id, "user", text)
    await db.commit()

    reply = await dispatcher.invoke(tenant.id, text, DashboardReplyTarget(), agent)

    await add_dashboard_message(
        db,
        tenant.id,
        "assistant",
        reply.reply_text,
        model=reply.usage.model,
        input_tokens=reply.usage.input_tokens,
        output_tokens=reply.usage.output_tokens,
    )
    await record_usage(
        db,
        tenant_id=tenant.id,
        model=reply.usage.model,
        input_tokens=reply.usage.input_tokens,
        output_tokens=reply.usage.output_tokens,
        channel_id="dashboard",
        agent_slug=agent.slug if agent else None,
    )
    return reply


async def clear_dashboard_chat(
    db: AsyncSession, dispatcher: AgentDispatcher, tenant_id: str
) -> int:
    """Delete stored history and ask the runtime to forget the session."""
    removed = await clear_dashboard_messages(db, tenant_id)
    cleared = await dispatcher.clear_session(tenant_id, session_key(tenant_id, "dashboard"))
    if not cleared:
        logger.info("Runtime session for tenant %s was not cleared", tenant_id)
    return removed
