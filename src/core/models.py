"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Tuple, Union


@dataclass(frozen=True)
class DeviceFingerprint:
    """Stable per-account hardware identity presented to the source network."""

    account_id: str
    device_id: str
    installation_id: str
    phone_id: str
    advertising_id: str
    os_build: str
    settings: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SessionArtifact:
    """Opaque serialized authentication state produced by a successful login."""

    data: dict
    saved_at: Optional[datetime] = None


# Login outcomes reported by the source client for a single attempt.


@dataclass(frozen=True)
class LoginSuccess:
    user_id: Optional[str] = None


@dataclass(frozen=True)
class ChallengeRequired:
    challenge_kind: str


@dataclass(frozen=True)
class TwoFactorRequired:
    identifier: str
    allowed_methods: Tuple[str, ...] = ()


@dataclass(frozen=True)
class InvalidCredentials:
    message: str = ""


@dataclass(frozen=True)
class TransientFailure:
    cause: str


LoginOutcome = Union[
    LoginSuccess,
    ChallengeRequired,
    TwoFactorRequired,
    InvalidCredentials,
    TransientFailure,
]


@dataclass(frozen=True)
class LoginResult:
    """Terminal Authenticated state: which strategy won and who we are."""

    strategy: str
    user_id: Optional[str]


class ConnectionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class ConnectionState:
    """Snapshot of the realtime connection lifecycle."""

    phase: ConnectionPhase
    reason: Optional[str] = None
    attempt: int = 0
    next_retry_at: Optional[float] = None


class ContentKind(str, Enum):
    TEXT = "text"
    VOICE = "voice"
    PHOTO = "photo"
    VIDEO = "video"
    OTHER = "other"


@dataclass(frozen=True)
class InboundMessage:
    """Canonical envelope for a message received from the source network."""

    message_id: str
    sender_id: str
    sender_name: str
    thread_id: str
    text: str
    kind: ContentKind
    kind_label: str
    timestamp: datetime
    raw: Any = None
    # Set only when a real username was resolved for the sender.
    sender_username: Optional[str] = None


@dataclass(frozen=True)
class OutboundMessage:
    """A destination topic message that may be relayed back to the source."""

    chat_id: int
    message_id: int
    topic_id: int
    text: Optional[str]
    sender_id: Optional[int] = None


class AckKind(str, Enum):
    SUCCESS = "success"
    UNKNOWN = "unknown"
    FILTERED = "filtered"
    FAILED = "failed"


@dataclass(frozen=True)
class UserProfile:
    """Advisory cache entry for a source-network user."""

    user_id: str
    username: Optional[str]
    message_count: int
    first_seen: datetime
    last_seen: datetime


@dataclass(frozen=True)
class MediaAsset:
    """A remote asset referenced by an inbound message."""

    kind: ContentKind
    url: str
    duration: Optional[float] = None
