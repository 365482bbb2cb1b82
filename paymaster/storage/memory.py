from __future__ import annotations

import asyncio
from typing import Any, Callable

from .helpers import now_epoch_ms


class MemoryCache:
    """Process-local cache with the same contract as the Redis gateway.

    Mutations are serialized behind one ``asyncio.Lock``; it is only safe for a
    single event loop in a single process.
    """

    def __init__(self, *, clock: Callable[[], int] = now_epoch_ms) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[Any, int | None]] = {}
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        return None

    async def healthcheck(self) -> None:
        return None

    async def close(self) -> None:
        self._entries.clear()

    async def get(self, key: str) -> Any | None:
        return self._read(key)

    async def set(self, key: str, value: Any, *, ttl_ms: int | None = None) -> None:
        async with self._lock:
            self._write(key, value, ttl_ms)

    async def set_if_absent(self, key: str, value: Any, *, ttl_ms: int | None = None) -> Any | None:
        async with self._lock:
            previous = self._read(key)
            if previous is not None:
                return previous
            self._write(key, value, ttl_ms)
            return None

    async def swap_if_stale(self, key: str, *, now_ms: int, window_ms: int) -> int | None:
        async with self._lock:
            previous = self._read(key)
            if previous is not None and now_ms - int(previous) < window_ms:
                return int(previous)
            self._write(key, now_ms, max(1, window_ms))
            return None

    def _read(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at_ms = entry
        if expires_at_ms is not None and self._clock() >= expires_at_ms:
            del self._entries[key]
            return None
        return value

    def _write(self, key: str, value: Any, ttl_ms: int | None) -> None:
        expires_at_ms = self._clock() + ttl_ms if ttl_ms is not None and ttl_ms > 0 else None
        self._entries[key] = (value, expires_at_ms)
