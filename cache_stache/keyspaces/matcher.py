"""Keyspace classification with per-key memoization."""
from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from cache_stache.config.keyspace import Keyspace


DEFAULT_MEMO_SIZE = 65536


def key_digest(key: str) -> str:
    """Truncated 64-bit BLAKE2b digest used as the memo slot for ``key``."""
    return hashlib.blake2b(str(key).encode("utf-8"), digest_size=8).hexdigest()


class KeyspaceMatcher:
    """Map a cache key to the keyspaces whose pattern matches it.

    Results keep registration order and are memoized by key digest. The memo
    is shared across threads without a lock: two threads missing on the same
    key both compute the (identical) answer and the last write wins. When the
    memo reaches ``max_entries`` it is cleared rather than grown.
    """

    def __init__(self, keyspaces: Iterable["Keyspace"], max_entries: int = DEFAULT_MEMO_SIZE) -> None:
        self.keyspaces: tuple["Keyspace", ...] = tuple(keyspaces)
        self.max_entries = max(1, int(max_entries))
        self._memo: dict[str, tuple["Keyspace", ...]] = {}

    def matching(self, key: str) -> tuple["Keyspace", ...]:
        if not self.keyspaces:
            return ()

        slot = key_digest(key)
        cached = self._memo.get(slot)
        if cached is not None:
            return cached

        result = tuple(ks for ks in self.keyspaces if ks.matches(key))
        if len(self._memo) >= self.max_entries:
            self._memo.clear()
        self._memo[slot] = result
        return result

    def memo_size(self) -> int:
        return len(self._memo)

    def clear(self) -> None:
        self._memo.clear()
