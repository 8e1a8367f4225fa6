"""Error taxonomy shared by the core and adapters."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""


class AuthFailure(BridgeError):
    """Credentials were rejected or every login strategy was exhausted."""


class ChallengeFailure(BridgeError):
    """The source network imposed a challenge that could not be resolved."""


class TransientNetworkFailure(BridgeError):
    """Timeouts, throttling and server errors; retried with backoff."""


class SessionExpired(TransientNetworkFailure):
    """The stored session is no longer accepted; re-authentication is needed."""


class TransportClosed(BridgeError):
    """The realtime stream dropped."""


class TopicGone(BridgeError):
    """The destination topic was deleted independently of the bridge."""

    def __init__(self, topic_id: int) -> None:
        super().__init__(f"Topic {topic_id} no longer exists")
        self.topic_id = topic_id


class MalformedPayload(BridgeError):
    """An inbound event is missing required fields."""


class PersistenceError(BridgeError):
    """A durable write did not complete."""
