"""Outbound reply delivery, dispatched on the reply target's channel."""

import logging

from chatrelay.adapters.messages import (
    DashboardReplyTarget,
    ReplyTarget,
    SlackReplyTarget,
    TelegramReplyTarget,
)
from chatrelay.adapters.slack import SlackClient
from chatrelay.adapters.telegram import TelegramClient
from chatrelay.errors import DeliveryError

logger = logging.getLogger(__name__)


class ReplyDeliverer:
    """Posts text back through whichever platform the target belongs to."""

    def __init__(self, slack: SlackClient, telegram: TelegramClient):
        self.slack = slack
        self.telegram = telegram

    async def deliver(self, target: ReplyTarget, text: str) -> None:
        if not text:
            # Chat platforms reject empty messages
            text = "(no response)"
        if isinstance(target, SlackReplyTarget):
            await self.slack.post_message(
                target.bot_token, target.channel_id, text, target.thread_ts
            )
        elif isinstance(target, TelegramReplyTarget):
            await self.telegram.send_message(
                target.bot_token, target.chat_id, text, target.message_id
            )
        elif isinstance(target, DashboardReplyTarget):
            raise DeliveryError("Dashboard replies are returned to the caller, not posted")
        else:
            raise DeliveryError(f"Unsupported reply target: {type(target).__name__}")
        logger.info("Reply delivered via %s (%d chars)", target.channel, len(text))

    async def try_deliver(self, target: ReplyTarget, text: str) -> bool:
        """Deliver, logging and swallowing DeliveryError. Returns success."""
        try:
            await self.deliver(target, text)
        except DeliveryError as exc:
            logger.error("Delivery via %s failed: %s", target.channel, exc.message)
            return False
        return True
