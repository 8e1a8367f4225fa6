"""Telegram destination adapter.

Drives a forum supergroup through a Telethon bot session: one forum topic per
source thread, messages posted into topics with ``reply_to=topic_id`` and
acknowledgments as reactions on the sender's message.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from telethon import TelegramClient, errors, events, functions, types, utils

from adapters.telegram_mapper import build_outbound
from core.errors import TopicGone
from core.models import AckKind, OutboundMessage

LOGGER = logging.getLogger(__name__)

# Reactions must come from Telegram's allowed emoji set.
ACK_REACTIONS = {
    AckKind.SUCCESS: "👍",
    AckKind.UNKNOWN: "🤷",
    AckKind.FILTERED: "🙈",
    AckKind.FAILED: "👎",
}

# RPC errors that mean the topic itself is gone, not that this send failed.
_TOPIC_GONE_ERRORS = {"TOPIC_DELETED", "TOPIC_ID_INVALID", "MESSAGE_THREAD_INVALID"}

DEFAULT_TOPIC_ICON_COLOR = 0x7ABA3C
_TOPIC_TITLE_LIMIT = 128


def topic_id_from_updates(result) -> int:
    """Extract the new topic id from a CreateForumTopicRequest result."""

    fallback = None
    for update in getattr(result, "updates", None) or []:
        message = getattr(update, "message", None)
        if isinstance(getattr(message, "action", None), types.MessageActionTopicCreate):
            return message.id
        if isinstance(update, types.UpdateMessageID) and fallback is None:
            fallback = update.id
    if fallback is None:
        raise RuntimeError("Topic creation returned no message id")
    return fallback


class TelegramTopicDestination:
    """Satisfies DestinationPort for a forum-enabled supergroup."""

    def __init__(
        self,
        client: TelegramClient,
        chat_id: int,
        icon_color: int = DEFAULT_TOPIC_ICON_COLOR,
    ) -> None:
        self._client = client
        self._chat_id = chat_id
        self._icon_color = icon_color
        self._entity = None

    @property
    def chat_id(self) -> int:
        return self._chat_id

    async def resolve_chat(self) -> None:
        """Resolve the configured chat once so later calls skip the lookup."""

        real_id, peer_type = utils.resolve_id(self._chat_id)
        self._entity = await self._client.get_input_entity(peer_type(real_id))
        LOGGER.info("Destination chat %s resolved", self._chat_id)

    async def _peer(self):
        if self._entity is None:
            await self.resolve_chat()
        return self._entity

    async def create_topic(self, name: str) -> int:
        result = await self._client(
            functions.channels.CreateForumTopicRequest(
                channel=await self._peer(),
                title=name[:_TOPIC_TITLE_LIMIT],
                icon_color=self._icon_color,
            )
        )
        return topic_id_from_updates(result)

    async def send_message(self, topic_id: int, text: str) -> None:
        try:
            await self._client.send_message(await self._peer(), text, reply_to=topic_id)
        except errors.RPCError as exc:
            raise self._translate(exc, topic_id)

    async def send_photo(self, topic_id: int, url: str, caption: str) -> None:
        await self._send_file(topic_id, url, caption)

    async def send_video(self, topic_id: int, url: str, caption: str) -> None:
        await self._send_file(topic_id, url, caption, supports_streaming=True)

    async def send_voice(
        self, topic_id: int, url: str, duration: Optional[float], caption: str
    ) -> None:
        attributes = [types.DocumentAttributeAudio(duration=int(duration or 0), voice=True)]
        await self._send_file(topic_id, url, caption, voice_note=True, attributes=attributes)

    async def _send_file(self, topic_id: int, url: str, caption: str, **kwargs) -> None:
        try:
            await self._client.send_file(
                await self._peer(),
                url,
                caption=caption or None,
                reply_to=topic_id,
                **kwargs,
            )
        except errors.RPCError as exc:
            raise self._translate(exc, topic_id)

    async def react(self, chat_id: int, message_id: int, ack: AckKind) -> None:
        await self._client(
            functions.messages.SendReactionRequest(
                peer=await self._peer(),
                msg_id=message_id,
                reaction=[types.ReactionEmoji(emoticon=ACK_REACTIONS[ack])],
            )
        )

    @staticmethod
    def _translate(exc: errors.RPCError, topic_id: int) -> Exception:
        if getattr(exc, "message", "") in _TOPIC_GONE_ERRORS:
            return TopicGone(topic_id)
        return exc


def register_topic_handler(
    client: TelegramClient,
    chat_id: int,
    handler: Callable[[OutboundMessage], Awaitable[object]],
) -> None:
    """Forward incoming topic messages from the destination chat to handler."""

    logger = logging.getLogger(__name__)

    # A single handler keeps Telethon integration minimal and defers routing
    # to the relay engine.
    @client.on(events.NewMessage(chats=chat_id, incoming=True))
    async def _on_message(event) -> None:
        try:
            outbound = build_outbound(event.message)
            if outbound is None:
                return
            await handler(outbound)
        except Exception:
            logger.exception("Error while handling destination message")

    logger.info("Telegram topic handler registered for chat %s", chat_id)
