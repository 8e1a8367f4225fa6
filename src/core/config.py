"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class LoginConfig:
    """Credentials and policy for the login state machine."""

    username: str
    password: Optional[str] = None
    force_fresh_login: bool = False
    two_factor_code: Optional[str] = None
    totp_secret: Optional[str] = None
    fresh_login_cooldown: float = 5.0
    # Interactive fallback for the CLI login command only.
    code_provider: Optional[Callable[[], Optional[str]]] = None


@dataclass(frozen=True)
class ReconnectConfig:
    """Exponential backoff settings for the realtime stream."""

    base_delay: float = 2.0
    max_delay: float = 300.0
    max_attempts: int = 10
    jitter: float = 0.2


@dataclass(frozen=True)
class PresenceConfig:
    """Foreground/background cycle mimicking a mobile client, in seconds."""

    enabled: bool = True
    foreground_min: float = 120.0
    foreground_max: float = 480.0
    background_min: float = 900.0
    background_max: float = 2700.0
    heartbeat_interval: float = 300.0
    jitter: float = 0.2


@dataclass(frozen=True)
class RelayConfig:
    """Relay behaviour settings."""

    command_prefix: str = "."
    dedup_capacity: int = 1000
