"""Keyed TTL cache that coalesces concurrent loads of the same key."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Generic, Hashable, Optional, TypeVar

V = TypeVar("V")

Loader = Callable[[], Awaitable[V]]


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class SingleFlightCache(Generic[V]):
    """At most one in-flight load per key; every concurrent caller awaits it.

    Failed loads are not cached, so the next caller starts a fresh load.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 300.0,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[Hashable, _Entry[V]] = {}
        self._inflight: Dict[Hashable, asyncio.Future[V]] = {}
        self.loads = 0

    def peek(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry.value

    async def get_or_load(self, key: Hashable, loader: Loader[V]) -> V:
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at > self._clock():
            return entry.value

        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future[V] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        self.loads += 1
        try:
            value = await loader()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # consume so an unawaited failure does not warn at GC time
            future.exception()
            raise
        else:
            self._store(key, value)
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)

    def _store(self, key: Hashable, value: V) -> None:
        if len(self._entries) >= self.max_entries and key not in self._entries:
            oldest = min(self._entries, key=lambda k: self._entries[k].expires_at)
            self._entries.pop(oldest, None)
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + self.ttl_seconds)

    def invalidate(self, key: Hashable | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
