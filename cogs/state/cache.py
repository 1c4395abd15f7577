"""Expiring key/value cache used by the identity resolver."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """Mapping whose entries expire ``ttl`` seconds after insertion.

    Expired entries are dropped lazily on lookup. Every method is synchronous,
    so concurrent tasks on the event loop never observe a half-written entry.
    """

    def __init__(self, ttl: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[K, tuple[V, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: K, value: V) -> None:
        if self.ttl <= 0:
            return
        self._entries[key] = (value, self._clock() + self.ttl)

