"""In-process cache backend.

Holds one map per entity family, all guarded by a single reader/writer lock.
Values are stored as serialized strings, so every read hands back a fresh
copy. Expired entries are dropped lazily on access and by a periodic sweep
task with an explicit start/stop lifecycle.

Usage:
    backend = MemoryCacheBackend(max_entries=10_000, sweep_interval=600)
    backend.start()
    await backend.set(CacheKind.COMPANY, "AAPL", payload, ttl=7200)
    ...
    await backend.stop()
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from ratingsync.core.exceptions import CacheError
from ratingsync.core.logging import get_logger

from .keys import CacheKind


logger = get_logger("cache.memory")


@dataclass
class CacheItem:
    """Stored payload plus its absolute expiry (monotonic seconds)."""

    data: str
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class MemoryCacheBackend:
    """Bounded TTL cache with one map per ``CacheKind``."""

    def __init__(
        self,
        max_entries: int = 10_000,
        sweep_interval: float = 600.0,
        clock=time.monotonic,
    ):
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._lock = ReadWriteLock()
        self._maps: dict[CacheKind, OrderedDict[str, CacheItem]] = {
            kind: OrderedDict() for kind in CacheKind
        }
        self._sweep_task: asyncio.Task | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        """Start the periodic expiry sweep on the running event loop."""
        if self.running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="cache-sweep")
        logger.debug("Memory cache sweep started", extra={"interval": self.sweep_interval})

    async def stop(self) -> None:
        """Stop the sweep task and wait for it to finish."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Memory cache sweep stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self.sweep()
            if removed:
                logger.debug(f"Swept {removed} expired cache entries")

    def sweep(self) -> int:
        """Remove every expired entry; returns how many were dropped."""
        now = self._clock()
        removed = 0
        with self._lock.write():
            for entries in self._maps.values():
                stale = [k for k, item in entries.items() if item.expired(now)]
                for key in stale:
                    del entries[key]
                removed += len(stale)
        return removed

    # -------------------------------------------------------------------------
    # Entry operations
    # -------------------------------------------------------------------------

    async def get(self, kind: CacheKind, key: str) -> str | None:
        now = self._clock()
        with self._lock.read():
            item = self._maps[kind].get(key)
            if item is None:
                return None
            if not item.expired(now):
                return item.data
        with self._lock.write():
            self._maps[kind].pop(key, None)
        return None

    async def set(self, kind: CacheKind, key: str, value: str, ttl: int) -> None:
        with self._lock.write():
            self._store(kind, key, value, ttl)

    def _store(self, kind: CacheKind, key: str, value: str, ttl: int) -> None:
        # Caller holds the write lock
        entries = self._maps[kind]
        entries.pop(key, None)
        if len(entries) >= self.max_entries:
            now = self._clock()
            for stale in [k for k, item in entries.items() if item.expired(now)]:
                del entries[stale]
            while len(entries) >= self.max_entries:
                entries.popitem(last=False)
        entries[key] = CacheItem(data=value, expires_at=self._clock() + ttl)

    async def delete(self, kind: CacheKind, key: str) -> bool:
        with self._lock.write():
            return self._maps[kind].pop(key, None) is not None

    async def get_many(self, kind: CacheKind, keys: list[str]) -> dict[str, str]:
        found: dict[str, str] = {}
        for key in keys:
            value = await self.get(kind, key)
            if value is not None:
                found[key] = value
        return found

    async def set_many(self, kind: CacheKind, items: dict[str, str], ttl: int) -> None:
        for key, value in items.items():
            await self.set(kind, key, value, ttl)

    async def exists(self, kind: CacheKind, key: str) -> bool:
        now = self._clock()
        with self._lock.read():
            item = self._maps[kind].get(key)
            return item is not None and not item.expired(now)

    async def ttl(self, kind: CacheKind, key: str) -> int:
        """Seconds left; -2 when the key is missing, -1 when it has expired."""
        now = self._clock()
        with self._lock.read():
            item = self._maps[kind].get(key)
            if item is None:
                return -2
            if item.expired(now):
                return -1
            return math.ceil(item.expires_at - now)

    async def expire(self, kind: CacheKind, key: str, ttl: int) -> None:
        now = self._clock()
        with self._lock.write():
            item = self._maps[kind].get(key)
            if item is None or item.expired(now):
                raise CacheError("expire", key, "key not found")
            item.expires_at = now + ttl

    async def clear(self, kind: CacheKind | None = None) -> int:
        with self._lock.write():
            kinds = [kind] if kind is not None else list(CacheKind)
            removed = 0
            for k in kinds:
                removed += len(self._maps[k])
                self._maps[k].clear()
            return removed

    async def key_counts(self) -> dict[CacheKind, int]:
        with self._lock.read():
            return {kind: len(entries) for kind, entries in self._maps.items()}

    async def ping(self) -> bool:
        return True
