"""Dashboard endpoints: chat, usage summary and the current tenant."""

import logging
import math
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.auth.middleware import RelayDep, TenantDep
from chatrelay.database import get_db
from chatrelay.errors import ConfigurationError, DispatchError, QuotaExceeded
from chatrelay.relay.dashboard import clear_dashboard_chat, send_dashboard_message
from chatrelay.schemas.chat import ChatHistoryItem, ChatSendRequest, ChatSendResponse, UsageSummary
from chatrelay.schemas.connection import TenantOut
from chatrelay.storage.repositories import list_dashboard_messages

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/chat/send", response_model=ChatSendResponse)
async def chat_send(
    body: ChatSendRequest,
    tenant: TenantDep,
    relay: RelayDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Send a message to the tenant's agent and wait for the reply."""
    try:
        reply = await send_dashboard_message(
            db, relay.quota, relay.dispatcher, tenant, body.message
        )
    except QuotaExceeded as exc:
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={
                "error": "quota_exceeded",
                "message": exc.message,
                "used": exc.used,
                "limit": None if math.isinf(exc.limit) else int(exc.limit),
            },
        )
    except ConfigurationError as exc:
        logger.error("Dashboard chat for tenant %s: %s", tenant.id, exc.message)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Worker not configured",
        ) from exc
    except DispatchError as exc:
        logger.error("Dashboard chat failed for tenant %s: %s", tenant.id, exc.message)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to get agent response. Please try again.",
        ) from exc
    return ChatSendResponse(content=reply.reply_text, model=reply.usage.model)


@router.get("/chat/history", response_model=list[ChatHistoryItem])
async def chat_history(
    tenant: TenantDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Last 100 dashboard messages, oldest first."""
    return await list_dashboard_messages(db, tenant.id, limit=100)


@router.post("/chat/clear")
async def chat_clear(
    tenant: TenantDep,
    relay: RelayDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Delete the dashboard history and reset the agent session."""
    removed = await clear_dashboard_chat(db, relay.dispatcher, tenant.id)
    return {"success": True, "deleted": removed}


@router.get("/usage/summary", response_model=UsageSummary)
async def usage_summary(
    tenant: TenantDep,
    relay: RelayDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Current-month usage against the plan limit."""
    return await relay.quota.summary(db, tenant.id, tenant.plan)


@router.get("/tenant/me", response_model=TenantOut)
async def tenant_me(tenant: TenantDep):
    """The authenticated tenant."""
    return tenant
