"""Telegram-to-core message mapping adapter.

This keeps Telethon-specific details out of the relay.
"""

from __future__ import annotations

from typing import Optional

from telethon.tl.custom import Message
from telethon.tl.types import MessageMediaWebPage

from core.models import OutboundMessage


def topic_id_from_message(message: Message) -> Optional[int]:
    """Return the forum topic id of a message, or None outside topics."""

    reply_to = getattr(message, "reply_to", None)
    if not reply_to or not getattr(reply_to, "forum_topic", False):
        return None
    top_id = getattr(reply_to, "reply_to_top_id", None)
    if top_id:
        return top_id
    return getattr(reply_to, "reply_to_msg_id", None)


def _is_plain_text(message: Message) -> bool:
    media = getattr(message, "media", None)
    # Link previews are still plain text from the sender's point of view.
    return media is None or isinstance(media, MessageMediaWebPage)


def build_outbound(message: Message) -> Optional[OutboundMessage]:
    """Build an OutboundMessage from a topic message; None if not in a topic."""

    topic_id = topic_id_from_message(message)
    if topic_id is None:
        return None

    text = (message.raw_text or "") if _is_plain_text(message) else None
    return OutboundMessage(
        chat_id=message.chat_id,
        message_id=message.id,
        topic_id=topic_id,
        text=text,
        sender_id=getattr(message, "sender_id", None),
    )
