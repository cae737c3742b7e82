"""Service-to-service callbacks from the agent runtime worker."""

import json
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.auth.middleware import WorkerAuthDep
from chatrelay.database import get_db
from chatrelay.storage.repositories import record_usage

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[WorkerAuthDep])


def _tokens(value) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


@router.post("/usage/report")
async def report_usage(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Record usage for a turn the runtime ran outside the relay's own dispatch."""
    try:
        body = json.loads(await request.body())
    except ValueError:
        body = None
    if not isinstance(body, dict) or not body.get("tenantId") or not body.get("model"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing tenantId or model",
        )

    await record_usage(
        db,
        tenant_id=body["tenantId"],
        model=body["model"],
        input_tokens=_tokens(body.get("inputTokens")),
        output_tokens=_tokens(body.get("outputTokens")),
        channel_id=body.get("channelId"),
        agent_slug=body.get("agentSlug"),
    )
    logger.info("Usage reported for tenant %s (%s)", body["tenantId"], body["model"])
    return {"ok": True}
