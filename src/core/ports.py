"""Ports (interfaces) used by the core.

Ports define the minimal contracts for the source network, the destination
network, persistence and the identity store so that the core can be reused
with different backends.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from core.models import (
    AckKind,
    DeviceFingerprint,
    LoginOutcome,
    SessionArtifact,
    UserProfile,
)


@dataclass(frozen=True)
class StreamCallbacks:
    """Callbacks the realtime stream invokes; all of them must not block."""

    on_event: Callable[[dict], None]
    on_close: Callable[[], None]
    on_error: Callable[[BaseException], None]


class SourceClientPort(Protocol):
    """Narrow surface of the source network client."""

    async def generate_device(self, account_id: str) -> DeviceFingerprint:
        ...

    async def apply_device(self, device: DeviceFingerprint) -> None:
        ...

    async def restore_session(self, artifact: SessionArtifact) -> None:
        ...

    async def export_session(self) -> SessionArtifact:
        ...

    async def restore_cookies(self, cookies: list[dict]) -> None:
        ...

    async def probe_identity(self) -> str:
        ...

    async def login(self, username: str, password: str) -> LoginOutcome:
        ...

    async def resolve_challenge(self, challenge_kind: str) -> bool:
        ...

    async def two_factor_login(self, identifier: str, code: str) -> LoginOutcome:
        ...

    async def fetch_inbox_snapshot(self) -> Any:
        ...

    async def connect(self, callbacks: StreamCallbacks, snapshot: Any = None) -> None:
        """Return once the stream has proven it can deliver; raise otherwise."""


    async def disconnect(self) -> None:
        ...

    async def set_presence(self, foreground: bool) -> None:
        ...

    async def lookup_username(self, user_id: str) -> Optional[str]:
        ...

    async def send_text(self, thread_id: str, text: str) -> None:
        ...


class DestinationPort(Protocol):
    """Narrow surface of the destination network client."""

    async def send_message(self, topic_id: int, text: str) -> None:
        ...

    async def send_photo(self, topic_id: int, url: str, caption: str) -> None:
        ...

    async def send_video(self, topic_id: int, url: str, caption: str) -> None:
        ...

    async def send_voice(
        self, topic_id: int, url: str, duration: Optional[float], caption: str
    ) -> None:
        ...

    async def create_topic(self, name: str) -> int:
        ...

    async def react(self, chat_id: int, message_id: int, ack: AckKind) -> None:
        ...


class StoragePort(Protocol):
    """Persistence operations required by the relay."""

    def load_chat_mappings(self) -> dict[str, int]:
        ...

    def save_chat_mapping(self, thread_id: str, topic_id: int) -> None:
        ...

    def delete_chat_mapping(self, thread_id: str) -> None:
        ...

    def upsert_user(
        self, user_id: str, username: Optional[str], seen_at: datetime
    ) -> UserProfile:
        ...

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        ...

    def list_users(self) -> list[UserProfile]:
        ...

    def list_filters(self) -> set[str]:
        ...

    def add_filter(self, word: str) -> None:
        ...

    def remove_filter(self, word: str) -> bool:
        ...

    def clear_filters(self) -> int:
        ...


class IdentityStorePort(Protocol):
    """Durable device fingerprint and session artifact access."""

    def load_device(self, account_id: str) -> Optional[DeviceFingerprint]:
        ...

    def save_device(self, account_id: str, device: DeviceFingerprint) -> None:
        ...

    def load_session(self) -> Optional[SessionArtifact]:
        ...

    def save_session(self, artifact: SessionArtifact) -> None:
        ...

    def load_cookies(self) -> Optional[list[dict]]:
        ...

