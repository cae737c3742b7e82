"""
Slack adapter.

Request signing: https://api.slack.com/authentication/verifying-requests-from-slack
"""

import logging
import re
from typing import Any

import httpx
from slack_sdk.signature import Clock, SignatureVerifier

from chatrelay.adapters.messages import IncomingMessage
from chatrelay.errors import DeliveryError

logger = logging.getLogger(__name__)

_LEADING_MENTION = re.compile(r"^(?:\s*<@[A-Z0-9]+>)+\s*")


class _FixedClock(Clock):
    def __init__(self, now: float):
        self._now = now

    def now(self) -> float:
        return self._now


def verify_signature(
    signing_secret: str,
    signature: str,
    timestamp: str,
    body: bytes | str,
    now: float | None = None,
) -> bool:
    """
    Check X-Slack-Signature against the raw request body.

    Timestamps more than five minutes from now, in either direction, fail.
    """
    try:
        int(timestamp)
    except (TypeError, ValueError):
        return False
    if isinstance(body, bytes):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError:
            return False
    verifier = (
        SignatureVerifier(signing_secret)
        if now is None
        else SignatureVerifier(signing_secret, clock=_FixedClock(now))
    )
    return verifier.is_valid(body=body, timestamp=timestamp, signature=signature)


def sign(signing_secret: str, timestamp: str, body: bytes | str) -> str:
    """Compute the v0 signature Slack would send for this body."""
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    return SignatureVerifier(signing_secret).generate_signature(timestamp=timestamp, body=body)


def strip_mention(text: str) -> str:
    """Remove the leading <@BOTID> token(s) Slack puts on app mentions."""
    return _LEADING_MENTION.sub("", text).strip()


def parse_event(payload: dict[str, Any]) -> IncomingMessage | None:
    """
    Normalize an event_callback envelope.

    Returns None for anything the relay should acknowledge but ignore:
    other envelope types, bot messages, message subtypes (edits, joins),
    missing routing fields, or a mention with no text after it.
    """
    if payload.get("type") != "event_callback":
        return None
    event = payload.get("event")
    if not isinstance(event, dict):
        return None

    event_type = event.get("type")
    is_message = event_type == "message" and not event.get("bot_id") and not event.get("subtype")
    is_mention = event_type == "app_mention" and not event.get("bot_id")
    if not is_message and not is_mention:
        logger.debug("Skipping Slack event %s %s", event_type, event.get("subtype") or "")
        return None

    text = event.get("text")
    channel = event.get("channel")
    team_id = payload.get("team_id")
    if not text or not channel or not team_id:
        logger.info("Slack event missing text/channel/team_id")
        return None

    clean = strip_mention(text)
    if not clean:
        return None

    ts = event.get("ts") or ""
    return IncomingMessage(
        platform="slack",
        conversation_id=channel,
        message_id=ts,
        sender_id=event.get("user") or "",
        text=clean,
        thread_id=event.get("thread_ts") or ts or None,
        workspace_id=team_id,
    )


class SlackClient:
    """Thin wrapper over the Slack Web API calls the relay needs."""

    def __init__(self, http: httpx.AsyncClient, api_base: str = "https://slack.com/api"):
        self._http = http
        self._api_base = api_base.rstrip("/")

    async def post_message(
        self, bot_token: str, channel: str, text: str, thread_ts: str | None = None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"channel": channel, "text": text}
        if thread_ts:
            body["thread_ts"] = thread_ts
        try:
            res = await self._http.post(
                f"{self._api_base}/chat.postMessage",
                json=body,
                headers={"Authorization": f"Bearer {bot_token}"},
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Slack request failed: {exc}") from exc
        if res.status_code >= 400:
            raise DeliveryError(
                f"Slack returned HTTP {res.status_code}", {"body": res.text[:500]}
            )
        try:
            data = res.json()
        except ValueError:
            raise DeliveryError("Slack returned a non-JSON body") from None
        if not isinstance(data, dict):
            raise DeliveryError("Slack returned an unexpected body")
        # Slack reports most failures as 200 + ok:false
        if not data.get("ok"):
            raise DeliveryError(f"Slack: {data.get('error', 'unknown_error')}")
        return data
