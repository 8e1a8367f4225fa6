"""Thread/topic mapping and user profile directories.

Both directories keep an in-memory view in front of the storage port. The
mapping is 1:1 in both directions; the profile cache is advisory and only
feeds topic naming.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from core.models import UserProfile
from core.ports import StoragePort

LOGGER = logging.getLogger(__name__)


class TopicDirectory:
    """Bidirectional thread_id <-> topic_id mapping backed by storage."""

    def __init__(self, storage: StoragePort) -> None:
        self._storage = storage
        self._topic_by_thread: dict[str, int] = {}
        self._thread_by_topic: dict[int, str] = {}

    def load(self) -> None:
        self._topic_by_thread.clear()
        self._thread_by_topic.clear()
        for thread_id, topic_id in self._storage.load_chat_mappings().items():
            self._topic_by_thread[thread_id] = topic_id
            self._thread_by_topic[topic_id] = thread_id
        LOGGER.info("Loaded %s chat mappings", len(self._topic_by_thread))

    def __len__(self) -> int:
        return len(self._topic_by_thread)

    def topic_for(self, thread_id: str) -> Optional[int]:
        return self._topic_by_thread.get(thread_id)

    def thread_for(self, topic_id: int) -> Optional[str]:
        return self._thread_by_topic.get(topic_id)

    def bind(self, thread_id: str, topic_id: int) -> None:
        """Persist first, then expose the mapping in memory."""

        self._storage.save_chat_mapping(thread_id, topic_id)
        stale = self._topic_by_thread.get(thread_id)
        if stale is not None:
            self._thread_by_topic.pop(stale, None)
        self._topic_by_thread[thread_id] = topic_id
        self._thread_by_topic[topic_id] = thread_id
        LOGGER.debug("Saved chat mapping: %s -> %s", thread_id, topic_id)

    def invalidate(self, thread_id: str) -> Optional[int]:
        topic_id = self._topic_by_thread.pop(thread_id, None)
        if topic_id is not None:
            self._thread_by_topic.pop(topic_id, None)
        self._storage.delete_chat_mapping(thread_id)
        return topic_id


class ProfileDirectory:
    """Advisory per-user profile cache, upserted on every inbound message."""

    def __init__(self, storage: StoragePort) -> None:
        self._storage = storage
        self._profiles: dict[str, UserProfile] = {}

    def record(self, user_id: str, username: Optional[str], seen_at: Optional[datetime] = None) -> UserProfile:
        profile = self._storage.upsert_user(user_id, username, seen_at or datetime.now(timezone.utc))
        self._profiles[user_id] = profile
        return profile

    def get(self, user_id: str) -> Optional[UserProfile]:
        if user_id not in self._profiles:
            profile = self._storage.get_user(user_id)
            if profile is None:
                return None
            self._profiles[user_id] = profile
        return self._profiles[user_id]

    def username_for(self, user_id: str) -> Optional[str]:
        profile = self.get(user_id)
        return profile.username if profile else None
