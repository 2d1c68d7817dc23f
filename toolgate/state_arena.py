"""Process-wide, per-plugin state with one lock per key."""

from __future__ import annotations

import asyncio
import contextlib
from typing import AsyncIterator, Callable, Generic, TypeVar

T = TypeVar("T")


class PluginStateArena(Generic[T]):
    """Map plugin names to owned state objects, each guarded by its own lock.

    Entries are created lazily on first reference and never removed, so every
    concurrent request sees the same state object for a given plugin.
    """

    def __init__(self, factory: Callable[[], T]) -> None:
        self._factory = factory
        self._states: dict[str, T] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _entry(self, key: str) -> tuple[asyncio.Lock, T]:
        # No await between lookup and insert, so creation cannot race on one loop.
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
            self._states[key] = self._factory()
        return lock, self._states[key]

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[T]:
        """Lock one plugin's state for exclusive use."""
        lock, state = self._entry(key)
        async with lock:
            yield state

    def keys(self) -> list[str]:
        return sorted(self._states)

    def peek(self, key: str) -> T | None:
        """Unlocked read for diagnostics."""
        return self._states.get(key)
