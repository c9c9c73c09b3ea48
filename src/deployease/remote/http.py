"""Classification of remote HTTP outcomes into tagged errors.

This is the only place where status codes and provider messages are
inspected; everything above it works with ``deployease.errors`` variants.
"""

from __future__ import annotations

import time
from typing import Any

import httpx

from deployease.errors import (
    ConflictError,
    NotFoundError,
    RateLimitedError,
    RemoteRequestError,
    TransientError,
)
from deployease.resilience.rate_limit import DEFAULT_WAIT_SECONDS

_CONFLICT_HINTS = ("not a fast forward", "reference update failed", "reference already exists")


def _provider_message(response: httpx.Response) -> str:
    try:
        body: Any = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or "")
    return ""


def rate_limit_wait(response: httpx.Response, now: float | None = None) -> tuple[int, float]:
    """Return ``(wait_seconds, reset_at)`` derived from response headers."""
    now = time.time() if now is None else now
    retry_after = response.headers.get("retry-after")
    if retry_after and retry_after.isdigit():
        wait = max(1, int(retry_after))
        return wait, now + wait
    reset = response.headers.get("x-ratelimit-reset")
    if reset and reset.isdigit():
        reset_at = float(reset)
        return max(1, int(reset_at - now) + 1), reset_at
    return DEFAULT_WAIT_SECONDS, now + DEFAULT_WAIT_SECONDS


def is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    if response.headers.get("x-ratelimit-remaining") == "0":
        return True
    return "rate limit" in _provider_message(response).lower()


def raise_for_remote_status(response: httpx.Response, operation: str) -> None:
    """Raise the tagged error matching ``response``; return on 2xx/3xx."""
    status = response.status_code
    if status < 400:
        return
    if is_rate_limited(response):
        wait, reset_at = rate_limit_wait(response)
        raise RateLimitedError(wait, reset_at=reset_at)
    message = _provider_message(response)
    if status == 404:
        raise NotFoundError(f"{operation}: resource not found")
    if status == 409 or (
        status == 422 and any(hint in message.lower() for hint in _CONFLICT_HINTS)
    ):
        raise ConflictError(f"{operation}: branch moved concurrently")
    if status >= 500:
        raise TransientError(f"{operation}: upstream error {status}", status_code=status)
    raise RemoteRequestError(f"{operation}: {status} {message}".strip(), status_code=status)


def transport_error(exc: httpx.HTTPError, operation: str) -> TransientError:
    """Map network failures and timeouts to a retryable error."""
    kind = "timeout" if isinstance(exc, httpx.TimeoutException) else "network error"
    return TransientError(f"{operation}: {kind}")
