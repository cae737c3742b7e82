"""
Canonical inbound message, reply targets and session keys.

A ReplyTarget carries exactly what one channel's adapter needs to post a
reply. Delivery and replyConfig serialization switch on ``channel`` once.
"""

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class IncomingMessage:
    """Normalized inbound chat message (tenant-independent)."""

    platform: str
    conversation_id: str
    message_id: str
    sender_id: str
    text: str
    thread_id: str | None = None
    workspace_id: str | None = None


@dataclass(frozen=True)
class SlackReplyTarget:
    bot_token: str
    channel_id: str
    thread_ts: str | None = None
    channel: str = "slack"

    @property
    def conversation_id(self) -> str:
        return self.channel_id

    def reply_config(self) -> dict[str, Any]:
        config: dict[str, Any] = {"botToken": self.bot_token, "channelId": self.channel_id}
        if self.thread_ts:
            config["threadTs"] = self.thread_ts
        return config


@dataclass(frozen=True)
class TelegramReplyTarget:
    bot_token: str
    chat_id: str
    message_id: int | None = None
    channel: str = "telegram"

    @property
    def conversation_id(self) -> str:
        return self.chat_id

    def reply_config(self) -> dict[str, Any]:
        config: dict[str, Any] = {"botToken": self.bot_token, "chatId": self.chat_id}
        if self.message_id is not None:
            config["messageId"] = self.message_id
        return config


@dataclass(frozen=True)
class DashboardReplyTarget:
    """The caller is the display surface; nothing is posted anywhere."""

    channel: str = "dashboard"

    @property
    def conversation_id(self) -> None:
        return None

    def reply_config(self) -> dict[str, Any]:
        return {}


ReplyTarget = Union[SlackReplyTarget, TelegramReplyTarget, DashboardReplyTarget]


def session_key(tenant_id: str, channel: str, conversation_id: str | None = None) -> str:
    """
    Derive the agent runtime session key for a conversation.

    ``{tenant}-{channel}-{conversation}`` for chat platforms; the dashboard
    has one implicit session per tenant, keyed by the tenant alone. Any other
    channel without a conversation id raises ValueError.
    """
    if channel == "dashboard":
        return tenant_id
    if not conversation_id:
        raise ValueError(f"{channel} session key needs a conversation id")
    return f"{tenant_id}-{channel}-{conversation_id}"


def session_key_for(tenant_id: str, target: ReplyTarget) -> str:
    return session_key(tenant_id, target.channel, target.conversation_id)
