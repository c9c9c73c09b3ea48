"""Process-wide view of the repository provider's request quota."""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Any, Mapping

DEFAULT_THRESHOLD = 10
DEFAULT_WAIT_SECONDS = 3600


def _to_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(slots=True)
class RateLimitState:
    threshold: int = DEFAULT_THRESHOLD
    remaining: int | None = None
    limit: int | None = None
    reset_at: float | None = None
    last_checked: float | None = None

    def update(
        self,
        *,
        remaining: int | None,
        reset_at: float | None,
        now: float,
        limit: int | None = None,
    ) -> None:
        # Values are advisory; concurrent updates are last-write-wins.
        if remaining is not None:
            self.remaining = remaining
        if reset_at is not None:
            self.reset_at = reset_at
        if limit is not None:
            self.limit = limit
        self.last_checked = now

    def update_from_headers(self, headers: Mapping[str, str], now: float) -> bool:
        remaining = _to_int(headers.get("x-ratelimit-remaining"))
        reset = _to_int(headers.get("x-ratelimit-reset"))
        if remaining is None and reset is None:
            return False
        self.update(
            remaining=remaining,
            reset_at=float(reset) if reset is not None else None,
            limit=_to_int(headers.get("x-ratelimit-limit")),
            now=now,
        )
        return True

    def mark_exhausted(self, reset_at: float, now: float) -> None:
        self.update(remaining=0, reset_at=reset_at, now=now)

    def exhausted(self, now: float) -> bool:
        if self.remaining is None or self.reset_at is None:
            return False
        return self.remaining < self.threshold and now < self.reset_at

    def wait_seconds(self, now: float) -> int:
        if self.reset_at is None:
            return DEFAULT_WAIT_SECONDS
        return max(1, math.ceil(self.reset_at - now))

    def snapshot(self, now: float) -> dict[str, Any]:
        return {
            "remaining": self.remaining,
            "limit": self.limit,
            "resetAt": self.reset_at,
            "lastChecked": self.last_checked,
            "exhausted": self.exhausted(now),
        }
