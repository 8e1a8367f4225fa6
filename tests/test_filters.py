from __future__ import annotations

import pytest

from adapters.sqlite_storage import SQLiteStorage
from core.filters import FilterSet, is_filtered


def _filters(tmp_path) -> FilterSet:
    storage = SQLiteStorage(str(tmp_path / "filters.db"))
    storage.init_db()
    filters = FilterSet(storage)
    filters.load()
    return filters


def test_is_filtered_matches_trimmed_lowercase_prefix() -> None:
    prefixes = {"spam", "ad:"}
    assert is_filtered("Spam and eggs", prefixes)
    assert is_filtered("   AD: buy now", prefixes)
    assert not is_filtered("no spam here", prefixes)
    assert not is_filtered("", prefixes)
    assert not is_filtered("   ", prefixes)
    assert not is_filtered("anything", set())


def test_add_normalizes_and_persists(tmp_path) -> None:
    filters = _filters(tmp_path)
    assert filters.add("  PROMO ") == "promo"
    assert filters.matches("Promo code!")

    reloaded = _filters(tmp_path)
    assert reloaded.words == frozenset({"promo"})


def test_empty_filter_is_rejected(tmp_path) -> None:
    filters = _filters(tmp_path)
    with pytest.raises(ValueError):
        filters.add("   ")
    assert filters.words == frozenset()


def test_remove_and_clear(tmp_path) -> None:
    filters = _filters(tmp_path)
    filters.add("one")
    filters.add("two")
    filters.add("three")

    assert filters.remove("ONE") is True
    assert filters.remove("one") is False
    assert not filters.matches("one more")

    assert filters.clear() == 2
    assert filters.words == frozenset()
    assert _filters(tmp_path).words == frozenset()


def test_entries_written_by_another_instance_apply_without_reload(tmp_path) -> None:
    running = _filters(tmp_path)
    assert not running.matches("spam offer")

    _filters(tmp_path).add("spam")
    assert running.matches("spam offer")

    _filters(tmp_path).remove("spam")
    assert not running.matches("spam offer")
