"""Asset extraction and placeholder text for non-text inbound messages."""

from __future__ import annotations

from typing import Optional

from core.models import ContentKind, InboundMessage, MediaAsset


def _first_url(media: dict) -> tuple[Optional[str], ContentKind]:
    candidates = (media.get("image_versions2") or {}).get("candidates") or []
    if candidates and candidates[0].get("url"):
        return candidates[0]["url"], ContentKind.PHOTO
    videos = media.get("video_versions") or []
    if videos and videos[0].get("url"):
        return videos[0]["url"], ContentKind.VIDEO
    return None, ContentKind.OTHER


def extract_voice(message: InboundMessage) -> Optional[MediaAsset]:
    raw = message.raw or {}
    audio = ((raw.get("voice_media") or {}).get("media") or {}).get("audio") or {}
    url = audio.get("audio_src")
    if not url:
        return None
    # Durations arrive in milliseconds.
    duration_ms = audio.get("duration")
    duration = duration_ms / 1000 if isinstance(duration_ms, (int, float)) else 0.0
    return MediaAsset(kind=ContentKind.VOICE, url=url, duration=duration)


def extract_visual(message: InboundMessage) -> Optional[MediaAsset]:
    """Return the first photo or video url found in the raw payload."""

    raw = message.raw or {}
    for media in (raw.get("media"), (raw.get("visual_media") or {}).get("media")):
        if not media:
            continue
        url, kind = _first_url(media)
        if url:
            return MediaAsset(kind=kind, url=url)
    return None


def voice_placeholder(message: InboundMessage, asset: Optional[MediaAsset]) -> str:
    if asset is None:
        text = "Voice message received"
    else:
        text = f"Voice message ({int(asset.duration or 0)}s)"
    if message.text:
        text = f"{text}: {message.text}"
    return text


def media_placeholder(message: InboundMessage) -> str:
    return f"[Media: {message.kind_label}] {message.text}".strip()


def unknown_placeholder(message: InboundMessage) -> str:
    text = f"[{message.kind_label or 'Unknown'} Message]"
    if message.text:
        text = f"{text}\n{message.text}"
    return text
