"""Process-local result cache with a two-tier expiry.

``expires_at`` bounds normal reads. ``degraded_expires_at`` is later and is
only honoured when a caller explicitly asks for stale data, which callers do
when the remote provider is rate-limited or unreachable.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60
DEGRADED_TTL_SECONDS = 30 * 60


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: Any
    expires_at: float
    degraded_expires_at: float


@dataclass(slots=True)
class CacheLookup:
    value: Any
    stale: bool


class ResultCache:
    def __init__(
        self,
        *,
        degraded_ttl: float = DEGRADED_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._degraded_ttl = degraded_ttl
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str, *, allow_stale: bool = False) -> CacheLookup | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if now < entry.expires_at:
            return CacheLookup(entry.value, stale=False)
        if allow_stale and now < entry.degraded_expires_at:
            return CacheLookup(entry.value, stale=True)
        return None

    def set(self, key: str, value: Any, ttl: float = DEFAULT_TTL_SECONDS) -> None:
        if value is None:
            return
        now = self._clock()
        expires_at = now + ttl
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            expires_at=expires_at,
            degraded_expires_at=expires_at + self._degraded_ttl,
        )

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self, *, rate_limited: bool) -> int:
        """Drop dead entries, or extend them while the provider is rate-limited.

        Returns the number of entries removed or extended.
        """
        now = self._clock()
        touched = 0
        for key, entry in list(self._entries.items()):
            if now < entry.degraded_expires_at:
                continue
            if rate_limited:
                entry.degraded_expires_at = now + self._degraded_ttl
            else:
                del self._entries[key]
            touched += 1
        if touched:
            logger.debug(
                "cache.sweep",
                extra={"extra": {"rate_limited": rate_limited, "entries": touched}},
            )
        return touched
