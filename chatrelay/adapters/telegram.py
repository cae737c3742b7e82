"""
Telegram Bot API adapter for webhook-based bots.

Telegram does not sign requests; the secret token registered with
setWebhook comes back in X-Telegram-Bot-Api-Secret-Token and is the
credential.
"""

import hmac
import logging
from typing import Any

import httpx

from chatrelay.adapters.messages import IncomingMessage
from chatrelay.errors import DeliveryError

logger = logging.getLogger(__name__)

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


def secrets_match(presented: str, stored: str) -> bool:
    """Byte-for-byte constant-time comparison of webhook secrets."""
    return hmac.compare_digest(presented.encode("utf-8"), stored.encode("utf-8"))


def parse_update(update: dict[str, Any]) -> IncomingMessage | None:
    """Normalize a text message update; None for anything else."""
    message = update.get("message")
    if not isinstance(message, dict):
        return None
    sender = message.get("from") or {}
    if sender.get("is_bot"):
        return None
    text = message.get("text")
    if not isinstance(text, str):
        return None
    text = text.strip()
    if not text:
        return None
    chat = message.get("chat") or {}
    if "id" not in chat or "message_id" not in message:
        return None
    return IncomingMessage(
        platform="telegram",
        conversation_id=str(chat["id"]),
        message_id=str(message["message_id"]),
        sender_id=str(sender.get("id", "")),
        text=text,
    )


class TelegramClient:
    """Calls against the bot-token-scoped Bot API base URL."""

    def __init__(self, http: httpx.AsyncClient, api_base: str = "https://api.telegram.org"):
        self._http = http
        self._api_base = api_base.rstrip("/")

    async def _call(self, token: str, method: str, body: dict[str, Any] | None = None) -> Any:
        try:
            res = await self._http.post(f"{self._api_base}/bot{token}/{method}", json=body or {})
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Telegram {method} request failed: {exc}") from exc
        try:
            data = res.json()
        except ValueError:
            raise DeliveryError(
                f"Telegram {method} returned a non-JSON body", {"status": res.status_code}
            ) from None
        if not isinstance(data, dict):
            raise DeliveryError(f"Telegram API {method}: unexpected response body")
        if not data.get("ok"):
            raise DeliveryError(
                f"Telegram API {method}: {data.get('description') or 'unknown error'}",
                {"status": res.status_code},
            )
        return data.get("result")

    async def get_me(self, token: str) -> dict[str, Any]:
        """Validate a bot token and return bot info."""
        return await self._call(token, "getMe")

    async def set_webhook(self, token: str, url: str, secret_token: str) -> None:
        await self._call(
            token,
            "setWebhook",
            {"url": url, "secret_token": secret_token, "allowed_updates": ["message"]},
        )

    async def delete_webhook(self, token: str) -> None:
        await self._call(token, "deleteWebhook")

    async def send_message(
        self,
        token: str,
        chat_id: int | str,
        text: str,
        reply_to_message_id: int | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_to_message_id:
            body["reply_parameters"] = {"message_id": reply_to_message_id}
        return await self._call(token, "sendMessage", body)
