"""Bidirectional relay between source threads and destination topics.

Inbound (source -> destination) order:
1) Drop messages authored by our own account (echo loops)
2) Upsert the sender's profile, then let command-prefixed text bypass
3) Resolve or lazily create the topic, at most one creation per thread
4) Apply prefix filters
5) Dispatch by content kind, with text placeholders as fallback

Outbound (destination -> source) relays plain text only and always emits
exactly one acknowledgment for each message it handles.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from core.config import RelayConfig
from core.directory import ProfileDirectory, TopicDirectory
from core.errors import TopicGone
from core.filters import FilterSet
from core.media import (
    extract_visual,
    extract_voice,
    media_placeholder,
    unknown_placeholder,
    voice_placeholder,
)
from core.models import AckKind, ContentKind, InboundMessage, OutboundMessage
from core.ports import DestinationPort, SourceClientPort

LOGGER = logging.getLogger(__name__)

EMPTY_PLACEHOLDER = "[Empty message]"


def topic_name_for(message: InboundMessage, known_username: Optional[str] = None) -> str:
    """Best available identity signal: username first, then the raw id."""

    username = message.sender_username or known_username
    if username:
        return f"@{username}"
    return f"User {message.sender_id}"


class RelayEngine:
    """Owns the relay state: topic creation guard, mappings, filters."""

    def __init__(
        self,
        destination: DestinationPort,
        source: SourceClientPort,
        topics: TopicDirectory,
        profiles: ProfileDirectory,
        filters: FilterSet,
        config: RelayConfig,
        self_id: Optional[str] = None,
    ) -> None:
        self._destination = destination
        self._source = source
        self._topics = topics
        self._profiles = profiles
        self._filters = filters
        self._config = config
        self._self_id = self_id
        self._creating: dict[str, asyncio.Task] = {}

    def bind_identity(self, user_id: Optional[str]) -> None:
        self._self_id = str(user_id) if user_id is not None else None
        LOGGER.info("Relay identity bound to user %s", self._self_id)

    def is_command(self, text: str) -> bool:
        prefix = self._config.command_prefix
        return bool(prefix) and text.startswith(prefix)

    # Inbound: source -> destination

    async def handle_inbound(self, message: InboundMessage) -> None:
        if self._self_id is not None and message.sender_id == self._self_id:
            LOGGER.debug("Skipping message %s from self", message.message_id)
            return

        self._profiles.record(message.sender_id, message.sender_username, message.timestamp)

        if self.is_command(message.text):
            LOGGER.debug("Command %r bypasses the relay", message.text.split(" ", 1)[0])
            return

        topic_id = await self.resolve_topic(message)

        if self._filters.matches(message.text):
            LOGGER.info("Filtered inbound message %s in %s", message.message_id, message.thread_id)
            return

        try:
            await self._forward(topic_id, message)
        except TopicGone:
            # A concurrent message may already have recreated the mapping.
            if self._topics.topic_for(message.thread_id) == topic_id:
                self._topics.invalidate(message.thread_id)
            LOGGER.warning(
                "Topic %s for thread %s is gone; mapping dropped, message %s not relayed",
                topic_id,
                message.thread_id,
                message.message_id,
            )

    async def resolve_topic(self, message: InboundMessage) -> int:
        """Return the mapped topic, creating it at most once per thread."""

        topic_id = self._topics.topic_for(message.thread_id)
        if topic_id is not None:
            return topic_id

        pending = self._creating.get(message.thread_id)
        if pending is None:
            pending = asyncio.ensure_future(self._create_topic(message))
            self._creating[message.thread_id] = pending
            pending.add_done_callback(lambda _task, key=message.thread_id: self._creating.pop(key, None))
        return await asyncio.shield(pending)

    async def _create_topic(self, message: InboundMessage) -> int:
        name = topic_name_for(message, self._profiles.username_for(message.sender_id))
        topic_id = await self._destination.create_topic(name)
        self._topics.bind(message.thread_id, topic_id)
        LOGGER.info("Created topic %r (ID: %s) for thread %s", name, topic_id, message.thread_id)
        return topic_id

    async def _forward(self, topic_id: int, message: InboundMessage) -> None:
        if message.kind is ContentKind.TEXT:
            await self._destination.send_message(topic_id, message.text or EMPTY_PLACEHOLDER)
        elif message.kind is ContentKind.VOICE:
            await self._forward_voice(topic_id, message)
        elif message.kind in (ContentKind.PHOTO, ContentKind.VIDEO):
            await self._forward_visual(topic_id, message)
        else:
            await self._destination.send_message(topic_id, unknown_placeholder(message))

    async def _forward_voice(self, topic_id: int, message: InboundMessage) -> None:
        asset = extract_voice(message)
        if asset is not None:
            try:
                await self._destination.send_voice(topic_id, asset.url, asset.duration, message.text)
                return
            except TopicGone:
                raise
            except Exception as exc:
                LOGGER.error("Failed to send voice for %s: %s", message.message_id, exc)
        await self._destination.send_message(topic_id, voice_placeholder(message, asset))

    async def _forward_visual(self, topic_id: int, message: InboundMessage) -> None:
        asset = extract_visual(message)
        if asset is not None:
            try:
                if asset.kind is ContentKind.VIDEO:
                    await self._destination.send_video(topic_id, asset.url, message.text)
                else:
                    await self._destination.send_photo(topic_id, asset.url, message.text)
                return
            except TopicGone:
                raise
            except Exception as exc:
                LOGGER.error("Failed to send %s for %s: %s", asset.kind.value, message.message_id, exc)
        await self._destination.send_message(topic_id, media_placeholder(message))

    # Outbound: destination -> source

    async def handle_outbound(self, message: OutboundMessage) -> AckKind:
        try:
            ack = await self._relay_outbound(message)
        except Exception:
            LOGGER.exception("Failed to handle destination message %s", message.message_id)
            ack = AckKind.FAILED
        await self._acknowledge(message, ack)
        return ack

    async def _relay_outbound(self, message: OutboundMessage) -> AckKind:
        if message.text is None:
            LOGGER.info("Non-text message %s in topic %s is not relayed", message.message_id, message.topic_id)
            return AckKind.UNKNOWN

        thread_id = self._topics.thread_for(message.topic_id)
        if thread_id is None:
            LOGGER.warning("No source thread mapped to topic %s", message.topic_id)
            return AckKind.UNKNOWN

        text = message.text.strip()
        if not text:
            return AckKind.FAILED
        if self._filters.matches(text):
            LOGGER.info("Filtered outbound message %s for thread %s", message.message_id, thread_id)
            return AckKind.FILTERED

        try:
            await self._source.send_text(thread_id, text)
        except Exception as exc:
            LOGGER.error("Failed to send text to thread %s: %s", thread_id, exc)
            return AckKind.FAILED
        return AckKind.SUCCESS

    async def _acknowledge(self, message: OutboundMessage, ack: AckKind) -> None:
        try:
            await self._destination.react(message.chat_id, message.message_id, ack)
        except Exception as exc:
            LOGGER.debug("Failed to set %s reaction on %s: %s", ack.value, message.message_id, exc)
