from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from adapters.sqlite_storage import SQLiteStorage
from core.errors import PersistenceError


def _storage(tmp_path) -> SQLiteStorage:
    storage = SQLiteStorage(str(tmp_path / "data" / "bridge.db"))
    storage.init_db()
    return storage


def test_chat_mappings_persist_across_instances(tmp_path) -> None:
    storage = _storage(tmp_path)
    storage.save_chat_mapping("t1", 10)
    storage.save_chat_mapping("t2", 11)

    assert _storage(tmp_path).load_chat_mappings() == {"t1": 10, "t2": 11}


def test_chat_mapping_update_and_delete(tmp_path) -> None:
    storage = _storage(tmp_path)
    storage.save_chat_mapping("t1", 10)
    storage.save_chat_mapping("t1", 12)
    assert storage.load_chat_mappings() == {"t1": 12}

    storage.delete_chat_mapping("t1")
    storage.delete_chat_mapping("missing")
    assert storage.load_chat_mappings() == {}


def test_topic_cannot_map_two_threads(tmp_path) -> None:
    storage = _storage(tmp_path)
    storage.save_chat_mapping("t1", 10)

    with pytest.raises(PersistenceError):
        storage.save_chat_mapping("t2", 10)
    assert storage.load_chat_mappings() == {"t1": 10}


def test_upsert_user_counts_and_keeps_username(tmp_path) -> None:
    storage = _storage(tmp_path)
    first = datetime(2024, 1, 1, tzinfo=timezone.utc)
    later = first + timedelta(hours=3)

    created = storage.upsert_user("42", "alice", first)
    assert created.message_count == 1
    assert created.first_seen == first

    updated = storage.upsert_user("42", None, later)
    assert updated.username == "alice"
    assert updated.message_count == 2
    assert updated.first_seen == first
    assert updated.last_seen == later

    renamed = storage.upsert_user("42", "alice_new", later)
    assert renamed.username == "alice_new"
    assert storage.get_user("42") == renamed
    assert storage.get_user("43") is None


def test_list_users_orders_by_last_seen(tmp_path) -> None:
    storage = _storage(tmp_path)
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    storage.upsert_user("1", "old", base)
    storage.upsert_user("2", "new", base + timedelta(days=1))

    assert [profile.user_id for profile in storage.list_users()] == ["2", "1"]


def test_filters_add_remove_clear(tmp_path) -> None:
    storage = _storage(tmp_path)
    storage.add_filter("spam")
    storage.add_filter("spam")
    storage.add_filter("promo")
    assert storage.list_filters() == {"spam", "promo"}

    assert storage.remove_filter("spam") is True
    assert storage.remove_filter("spam") is False
    assert storage.clear_filters() == 1
    assert storage.list_filters() == set()
