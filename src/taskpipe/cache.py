from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    fetched_at: float


class TTLCache(Generic[V]):
    """Workspace-keyed cache whose entries expire after ``ttl_seconds``.

    Expired entries are kept so callers can fall back to the stale value
    when a refresh fails. All access is serialized by a lock so a reader
    never observes a half-applied ``invalidate``.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry[V]] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get_fresh(self, key: str) -> V | None:
        """Value for *key* if fetched less than ``ttl_seconds`` ago."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.fetched_at < self._ttl:
                return entry.value
            return None

    def get_stale(self, key: str) -> V | None:
        """Last stored value for *key* regardless of age."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.value if entry is not None else None

    def put(self, key: str, value: V) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, fetched_at=self._clock())

    def invalidate(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries
