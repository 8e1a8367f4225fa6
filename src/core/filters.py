"""Prefix filters applied to relayed text in both directions."""

from __future__ import annotations

import logging
from typing import Iterable

from core.ports import StoragePort

LOGGER = logging.getLogger(__name__)


def normalize_filter_word(word: str) -> str:
    return word.strip().lower()


def is_filtered(text: str, prefixes: Iterable[str]) -> bool:
    """True if the lowercased, trimmed text starts with any prefix."""

    lowered = (text or "").strip().lower()
    if not lowered:
        return False
    return any(prefix and lowered.startswith(prefix) for prefix in prefixes)


class FilterSet:
    """Persisted set of lowercase literal prefixes.

    Mutated only through add/remove/clear; never bulk-replaced otherwise.
    Matching reads the table on every call, so entries written by another
    process (the `filters` command) apply to a running bridge.
    """

    def __init__(self, storage: StoragePort) -> None:
        self._storage = storage
        self._words: set[str] = set()

    def load(self) -> None:
        self._refresh()
        LOGGER.info("Loaded %s filters", len(self._words))

    def _refresh(self) -> None:
        self._words = {normalize_filter_word(word) for word in self._storage.list_filters()}
        self._words.discard("")

    @property
    def words(self) -> frozenset[str]:
        return frozenset(self._words)

    def matches(self, text: str) -> bool:
        self._refresh()
        return is_filtered(text, self._words)

    def add(self, word: str) -> str:
        normalized = normalize_filter_word(word)
        if not normalized:
            raise ValueError("Filter word must not be empty")
        self._storage.add_filter(normalized)
        self._words.add(normalized)
        return normalized

    def remove(self, word: str) -> bool:
        normalized = normalize_filter_word(word)
        removed = self._storage.remove_filter(normalized)
        self._words.discard(normalized)
        return removed

    def clear(self) -> int:
        removed = self._storage.clear_filters()
        self._words.clear()
        return removed
