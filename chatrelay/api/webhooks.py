"""
Inbound chat platform webhooks.

Both handlers verify, normalize and acknowledge. Tenant resolution and
everything after it runs on the background runner once the platform has
its 200.
"""

import json
import logging

from fastapi import APIRouter, HTTPException, Request, status

from chatrelay.adapters import slack, telegram
from chatrelay.auth.middleware import RelayDep

logger = logging.getLogger(__name__)

router = APIRouter()


def _load_json(raw: bytes) -> dict:
    try:
        payload = json.loads(raw)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON body",
        ) from None
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON body",
        )
    return payload


@router.post("/slack")
async def slack_events(request: Request, relay: RelayDep):
    """Slack Events API endpoint."""
    signing_secret = relay.settings.slack_signing_secret
    if not signing_secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Not configured",
        )

    raw = await request.body()
    timestamp = request.headers.get("X-Slack-Request-Timestamp", "")
    signature = request.headers.get("X-Slack-Signature", "")
    if not slack.verify_signature(signing_secret, signature, timestamp, raw):
        logger.warning("[slack] Rejected request with invalid signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature",
        )

    payload = _load_json(raw)

    # Sent once when the endpoint is configured in the Slack app
    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge")}

    message = slack.parse_event(payload)
    if message is not None:
        logger.info(
            "[slack] Event received in %s: %s", message.conversation_id, message.text[:50]
        )
        relay.background.spawn(
            relay.pipeline.handle(message, message.workspace_id),
            name=f"slack-{message.workspace_id}-{message.message_id}",
        )
    return {"ok": True}


@router.post("/telegram")
async def telegram_updates(request: Request, relay: RelayDep):
    """Telegram Bot API webhook endpoint (one URL for every tenant's bot)."""
    secret_token = request.headers.get(telegram.SECRET_HEADER)
    if not secret_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing secret token",
        )

    payload = _load_json(await request.body())

    message = telegram.parse_update(payload)
    if message is not None:
        relay.background.spawn(
            relay.pipeline.handle(message, secret_token),
            name=f"telegram-{message.conversation_id}-{message.message_id}",
        )
    return {"ok": True}
