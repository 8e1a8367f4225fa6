"""SQLite storage adapter.

Implements the core StoragePort using a simple SQLite database.
"""

from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from typing import Optional

from core.errors import PersistenceError
from core.models import UserProfile


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _row_to_profile(row: sqlite3.Row) -> UserProfile:
    return UserProfile(
        user_id=row["source_user_id"],
        username=row["username"],
        message_count=int(row["message_count"]),
        first_seen=_parse_ts(row["first_seen"]),
        last_seen=_parse_ts(row["last_seen"]),
    )


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the StoragePort contract."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - chats: source thread -> destination topic mapping
        - users: advisory profile cache for source users
        - filters: literal prefixes suppressed from the relay
        """

        directory = os.path.dirname(os.path.abspath(self._db_path))
        os.makedirs(directory, exist_ok=True)

        with self._connect() as conn:
            # chats is the durable half of the thread/topic mapping. Both
            # columns are unique so the mapping can never fork.
            # Fields:
            # - source_thread_id: source network thread id (PRIMARY KEY)
            # - dest_topic_id: destination forum topic id
            # - created_at: when the topic was created
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chats (
                    source_thread_id TEXT PRIMARY KEY,
                    dest_topic_id INTEGER NOT NULL UNIQUE,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            # users keeps one row per sender; only used for topic naming.
            # Fields:
            # - source_user_id: source network user id (PRIMARY KEY)
            # - username: last known username, if any
            # - message_count: inbound messages seen from the user
            # - first_seen / last_seen: message timestamps
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    source_user_id TEXT PRIMARY KEY,
                    username TEXT,
                    message_count INTEGER NOT NULL DEFAULT 0,
                    first_seen TIMESTAMP NOT NULL,
                    last_seen TIMESTAMP NOT NULL
                )
                """
            )
            # filters stores lowercase prefixes keyed by the literal word.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS filters (
                    word TEXT PRIMARY KEY,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )

    def load_chat_mappings(self) -> dict[str, int]:
        """Return every thread -> topic mapping."""

        with self._connect() as conn:
            rows = conn.execute("SELECT source_thread_id, dest_topic_id FROM chats").fetchall()
        return {row["source_thread_id"]: int(row["dest_topic_id"]) for row in rows}

    def save_chat_mapping(self, thread_id: str, topic_id: int) -> None:
        """Upsert the topic for a thread."""

        now = datetime.now(timezone.utc)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO chats (source_thread_id, dest_topic_id, created_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(source_thread_id) DO UPDATE SET
                        dest_topic_id = excluded.dest_topic_id,
                        created_at = excluded.created_at
                    """,
                    (thread_id, topic_id, now.isoformat()),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not save mapping {thread_id} -> {topic_id}: {exc}") from exc

    def delete_chat_mapping(self, thread_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM chats WHERE source_thread_id = ?", (thread_id,))

    def upsert_user(self, user_id: str, username: Optional[str], seen_at: datetime) -> UserProfile:
        """Insert or bump a user profile and return the stored row."""

        seen = seen_at.isoformat()
        with self._connect() as conn:
            # COALESCE keeps a known username when the new event has none.
            conn.execute(
                """
                INSERT INTO users (source_user_id, username, message_count, first_seen, last_seen)
                VALUES (?, ?, 1, ?, ?)
                ON CONFLICT(source_user_id) DO UPDATE SET
                    username = COALESCE(excluded.username, users.username),
                    message_count = users.message_count + 1,
                    last_seen = excluded.last_seen
                """,
                (user_id, username, seen, seen),
            )
            row = conn.execute(
                "SELECT * FROM users WHERE source_user_id = ?",
                (user_id,),
            ).fetchone()
        return _row_to_profile(row)

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE source_user_id = ?",
                (user_id,),
            ).fetchone()
        return _row_to_profile(row) if row else None

    def list_users(self) -> list[UserProfile]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY last_seen DESC").fetchall()
        return [_row_to_profile(row) for row in rows]

    def list_filters(self) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT word FROM filters").fetchall()
        return {row["word"] for row in rows}

    def add_filter(self, word: str) -> None:
        now = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO filters (word, created_at) VALUES (?, ?)",
                (word, now.isoformat()),
            )

    def remove_filter(self, word: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM filters WHERE word = ?", (word,))
            return cur.rowcount > 0

    def clear_filters(self) -> int:
        """Delete every filter and return the number removed."""

        with self._connect() as conn:
            cur = conn.execute("DELETE FROM filters")
            return cur.rowcount
