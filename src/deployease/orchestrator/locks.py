"""Keyed asyncio locks used to serialize operations per branch or per site."""

from __future__ import annotations

import asyncio


class KeyedLock:
    """One lazily created ``asyncio.Lock`` per key.

    Locks are never evicted; keys are a small fixed set (branch names, site).
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())
