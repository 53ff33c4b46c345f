from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Hashable, TypeVar

V = TypeVar("V")


@dataclass(slots=True, frozen=True)
class CacheEntry(Generic[V]):
    value: V
    inserted_at: float


class TtlCache(Generic[V]):
    """Entries expire ttl_seconds after insertion; reads never extend them."""

    def __init__(
        self,
        *,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive.")
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry[V]] = {}
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._lock_users: dict[Hashable, int] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def __len__(self) -> int:
        return len(self._entries)

    def _is_fresh(self, entry: CacheEntry[V]) -> bool:
        return self._clock() - entry.inserted_at < self._ttl_seconds

    def get(self, key: Hashable) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not self._is_fresh(entry):
            self._entries.pop(key, None)
            return None
        return entry.value

    def put(self, key: Hashable, value: V) -> None:
        self._entries[key] = CacheEntry(value=value, inserted_at=self._clock())

    def invalidate(self, key: Hashable | None = None) -> None:
        if key is None:
            self._entries.clear()
            return
        self._entries.pop(key, None)

    async def get_or_refresh(self, key: Hashable, refresh: Callable[[], Awaitable[V]]) -> V:
        cached = self.get(key)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                # another waiter may have refreshed while we were blocked
                cached = self.get(key)
                if cached is not None:
                    return cached
                value = await refresh()
                self.put(key, value)
                return value
        finally:
            users = self._lock_users[key] - 1
            if users:
                self._lock_users[key] = users
            else:
                del self._lock_users[key]
                del self._locks[key]
