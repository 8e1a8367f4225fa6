"""Instagram-to-core event mapping adapter.

Turns instagrapi thread/message objects into the realtime event payload
shape the ingestion pipeline understands, so the polling stream and a push
transport look the same to the core.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional


def timestamp_us(value: Any) -> Optional[int]:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1_000_000)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _media_payload(message: Any) -> dict:
    """Rebuild the raw media sub-objects from instagrapi's DirectMedia."""

    media = getattr(message, "media", None)
    if media is None:
        return {}

    item_type = getattr(message, "item_type", None)
    audio_url = getattr(media, "audio_url", None)
    if item_type == "voice_media" or audio_url:
        audio = {"audio_src": str(audio_url) if audio_url else None}
        duration = getattr(media, "duration", None)
        if duration:
            audio["duration"] = duration
        return {"voice_media": {"media": {"audio": audio}}}

    video_url = getattr(media, "video_url", None)
    if video_url:
        return {"media": {"media_type": 2, "video_versions": [{"url": str(video_url)}]}}
    thumbnail = getattr(media, "thumbnail_url", None)
    if thumbnail:
        return {"media": {"media_type": 1, "image_versions2": {"candidates": [{"url": str(thumbnail)}]}}}
    return {}


def _thread_payload(thread: Any) -> dict:
    users = []
    for user in getattr(thread, "users", None) or []:
        users.append({"pk": str(getattr(user, "pk", "")), "username": getattr(user, "username", None)})
    return {
        "thread_id": str(getattr(thread, "id", "")),
        "thread_title": getattr(thread, "thread_title", None) or "Direct Message",
        "users": users,
    }


def build_event(thread: Any, message: Any) -> dict:
    """Build one realtime-shaped event from a thread and one of its messages."""

    item = {
        "item_id": str(getattr(message, "id", "") or ""),
        "user_id": str(getattr(message, "user_id", "") or ""),
        "thread_id": str(getattr(thread, "id", "") or getattr(message, "thread_id", "") or ""),
        "timestamp": timestamp_us(getattr(message, "timestamp", None)),
        "item_type": getattr(message, "item_type", None) or "text",
        "text": getattr(message, "text", None) or "",
    }
    item.update(_media_payload(message))
    return {"message": item, "thread": _thread_payload(thread)}


def new_events(
    threads: Iterable[Any],
    seen_ids: set[str],
    history: Optional[dict[str, list]] = None,
    since: Optional[int] = None,
) -> list[dict]:
    """Return events for messages not in seen_ids, oldest first.

    history maps a thread id to a longer message list that replaces the
    thread's own page. Messages stamped before since (microseconds) are
    treated as already delivered. seen_ids is updated in place so repeated
    polls stay cheap.
    """

    history = history or {}
    events: list[dict] = []
    for thread in threads:
        messages = history.get(str(getattr(thread, "id", ""))) or getattr(thread, "messages", None) or []
        # instagrapi returns newest messages first.
        for message in reversed(messages):
            message_id = str(getattr(message, "id", "") or "")
            if not message_id or message_id in seen_ids:
                continue
            if since is not None:
                stamp = timestamp_us(getattr(message, "timestamp", None))
                if stamp is not None and stamp < since:
                    continue
            seen_ids.add(message_id)
            events.append(build_event(thread, message))
    events.sort(key=lambda event: event["message"]["timestamp"] or 0)
    return events


def ids_of(messages: Iterable[Any]) -> set[str]:
    return {str(getattr(message, "id")) for message in messages if getattr(message, "id", None)}


def message_ids(threads: Iterable[Any]) -> set[str]:
    """All message ids present in a snapshot, used to seed the watermark."""

    ids: set[str] = set()
    for thread in threads:
        ids.update(ids_of(getattr(thread, "messages", None) or []))
    return ids


def newest_timestamp(threads: Iterable[Any]) -> Optional[int]:
    """Newest message timestamp in a snapshot, in microseconds."""

    stamps = [
        timestamp_us(getattr(message, "timestamp", None))
        for thread in threads
        for message in getattr(thread, "messages", None) or []
    ]
    stamps = [stamp for stamp in stamps if stamp is not None]
    return max(stamps) if stamps else None
