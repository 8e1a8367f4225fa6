"""Inbound event normalization and deduplication.

Raw events follow the realtime payload shape of the source network:

    {"message": {"item_id", "user_id", "thread_id", "timestamp", "item_type",
                 "text", ...},
     "thread": {"thread_id", "users": [{"pk", "username"}, ...]}}

The transport may deliver the same message more than once (for example right
after a reconnect), so every message id passes through a bounded recency
window before anything downstream sees it.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from core.errors import MalformedPayload
from core.models import ContentKind, InboundMessage

LOGGER = logging.getLogger(__name__)

# Source item types mapped onto the canonical content kinds.
_KIND_BY_ITEM_TYPE = {
    "text": ContentKind.TEXT,
    "link": ContentKind.TEXT,
    "voice_media": ContentKind.VOICE,
    "photo": ContentKind.PHOTO,
    "video": ContentKind.VIDEO,
}

_MEDIA_ITEM_TYPES = {"media", "raw_media", "visual_media"}


class DedupWindow:
    """Bounded FIFO set of recently seen message ids."""

    def __init__(self, capacity: int = 1000) -> None:
        if capacity < 1:
            raise ValueError("Dedup capacity must be positive")
        self._capacity = capacity
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, message_id: str) -> bool:
        """Record an id; return False if it was already present."""

        if message_id in self._ids:
            return False
        self._ids[message_id] = None
        while len(self._ids) > self._capacity:
            self._ids.popitem(last=False)
        return True


def _parse_timestamp(value) -> datetime:
    """Source timestamps are microseconds since the epoch."""

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        return datetime.fromtimestamp(int(value) / 1_000_000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)


def _media_kind(message: dict) -> ContentKind:
    media = message.get("media") or (message.get("visual_media") or {}).get("media") or {}
    if media.get("video_versions") or media.get("media_type") == 2:
        return ContentKind.VIDEO
    if media.get("image_versions2") or media.get("media_type") == 1:
        return ContentKind.PHOTO
    return ContentKind.OTHER


def classify(message: dict) -> ContentKind:
    """Map a raw item to its canonical content kind."""

    item_type = str(message.get("item_type") or "text")
    if item_type in _MEDIA_ITEM_TYPES:
        return _media_kind(message)
    return _KIND_BY_ITEM_TYPE.get(item_type, ContentKind.OTHER)


def _participant_username(thread: dict, sender_id: str) -> Optional[str]:
    for user in thread.get("users") or []:
        if str(user.get("pk")) == sender_id and user.get("username"):
            return str(user["username"])
    return None


def extract_ids(raw: dict) -> tuple[str, str]:
    """Return (message_id, sender_id) or raise MalformedPayload."""

    message = raw.get("message") if isinstance(raw, dict) else None
    if not isinstance(message, dict):
        raise MalformedPayload("event has no message")
    message_id = message.get("item_id")
    sender_id = message.get("user_id")
    if not message_id:
        raise MalformedPayload("message has no item_id")
    if not sender_id:
        raise MalformedPayload(f"message {message_id} has no user_id")
    return str(message_id), str(sender_id)


class MessageIngestor:
    """Normalizes raw events and fans them out to handlers once per id."""

    def __init__(
        self,
        capacity: int = 1000,
        user_lookup: Optional[Callable[[str], Awaitable[Optional[str]]]] = None,
    ) -> None:
        self._window = DedupWindow(capacity)
        self._user_lookup = user_lookup
        self._name_cache: dict[str, str] = {}
        self._handlers: List[Callable[[InboundMessage], Awaitable[None]]] = []

    @property
    def window(self) -> DedupWindow:
        return self._window

    def add_handler(self, handler: Callable[[InboundMessage], Awaitable[None]]) -> None:
        self._handlers.append(handler)
        LOGGER.info("Added message handler (total: %s)", len(self._handlers))

    async def handle(self, raw: dict) -> Optional[InboundMessage]:
        """Process one raw event; return the dispatched message, if any."""

        try:
            message_id, sender_id = extract_ids(raw)
        except MalformedPayload as exc:
            LOGGER.warning("Dropping malformed event: %s", exc)
            return None

        if not self._window.add(message_id):
            return None

        message = await self._build(raw, message_id, sender_id)
        LOGGER.info("[DM] %s in %s: %s", message.sender_name, message.thread_id, message.text)

        for handler in self._handlers:
            try:
                await handler(message)
            except Exception:
                LOGGER.exception("Message handler %s failed", getattr(handler, "__qualname__", handler))
        return message

    async def _build(self, raw: dict, message_id: str, sender_id: str) -> InboundMessage:
        item = raw["message"]
        thread = raw.get("thread") or {}
        thread_id = thread.get("thread_id") or item.get("thread_id") or "unknown"
        item_type = str(item.get("item_type") or "text")

        username = await self._sender_username(thread, sender_id)
        return InboundMessage(
            message_id=message_id,
            sender_id=sender_id,
            sender_name=username or f"user_{sender_id}",
            thread_id=str(thread_id),
            text=str(item.get("text") or ""),
            kind=classify(item),
            kind_label=item_type,
            timestamp=_parse_timestamp(item.get("timestamp")),
            raw=item,
            sender_username=username,
        )

    async def _sender_username(self, thread: dict, sender_id: str) -> Optional[str]:
        username = _participant_username(thread, sender_id)
        if username:
            self._name_cache[sender_id] = username
            return username
        if sender_id in self._name_cache:
            return self._name_cache[sender_id]
        if self._user_lookup is not None:
            try:
                username = await self._user_lookup(sender_id)
            except Exception as exc:
                LOGGER.debug("User lookup for %s failed: %s", sender_id, exc)
            if username:
                self._name_cache[sender_id] = username
                return username
        return None
