"""Retry, backoff and degradation policy shared by every remote call."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import random
import time
from typing import Any, Awaitable, Callable, Generic, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from deployease.errors import (
    DeployEaseError,
    RateLimitedError,
    TransientError,
    raise_operation_failure,
)
from deployease.observability.logging import Logger, NullLogger
from deployease.observability.metrics import REMOTE_CALLS
from deployease.resilience.cache import DEFAULT_TTL_SECONDS, ResultCache
from deployease.resilience.rate_limit import RateLimitState

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 2.0
DEFAULT_MAX_DELAY = 30.0

_MISSING: Any = object()


@dataclass(slots=True)
class ExecutionResult(Generic[T]):
    value: T
    source: str = "remote"
    attempts: int = 0

    @property
    def stale(self) -> bool:
        return self.source in {"stale_cache", "fallback"}


class RetryExecutor:
    """Runs remote operations under the retry/backoff/rate-limit policy.

    Failure classes are read from the tagged errors raised by the remote
    adapters: ``RateLimitedError`` and ``TransientError`` are retryable, any
    other ``DeployEaseError`` is raised on the first occurrence.
    """

    def __init__(
        self,
        cache: ResultCache,
        rate_limit: RateLimitState,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        logger: Logger | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self.cache = cache
        self.rate_limit = rate_limit
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._logger = logger or NullLogger()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

    def backoff_delay(self, attempt: int, base_delay: float | None = None) -> float:
        base = self._base_delay if base_delay is None else base_delay
        delay = base * 2 ** (attempt - 1) * self._rng.uniform(0.8, 1.2)
        return min(delay, self._max_delay)

    def quota_wait(self) -> int | None:
        """Seconds until the provider quota resets, or ``None`` while calls may proceed."""
        now = self._clock()
        if not self.rate_limit.exhausted(now):
            return None
        return self.rate_limit.wait_seconds(now)

    def _should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, TransientError):
            return True
        # Short secondary limits are slept through; long ones end the loop.
        return isinstance(exc, RateLimitedError) and exc.wait_seconds <= self._max_delay

    def _wait_strategy(self, base_delay: float | None) -> Callable[[RetryCallState], float]:
        def _wait(state: RetryCallState) -> float:
            exc = state.outcome.exception() if state.outcome else None
            if isinstance(exc, RateLimitedError):
                return float(exc.wait_seconds)
            return self.backoff_delay(state.attempt_number, base_delay)

        return _wait

    async def _attempt(
        self, operation: Callable[[], Awaitable[T]], name: str, attempt: int
    ) -> T:
        try:
            return await operation()
        except RateLimitedError as exc:
            now = self._clock()
            self.rate_limit.mark_exhausted(exc.reset_at or now + exc.wait_seconds, now)
            self.cache.sweep(rate_limited=True)
            self._logger.warn(
                "retry.rate_limited", operation=name, attempt=attempt, wait_seconds=exc.wait_seconds
            )
            raise
        except TransientError as exc:
            self._logger.warn(
                "retry.transient",
                operation=name,
                attempt=attempt,
                status_code=exc.status_code,
                error=str(exc),
            )
            raise

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        *,
        max_retries: int | None = None,
        base_delay: float | None = None,
        cache_key: str | None = None,
        cache_ttl: float = DEFAULT_TTL_SECONDS,
        fallback_value: Any = _MISSING,
        preflight_rate_check: bool = True,
    ) -> ExecutionResult[T]:
        if cache_key:
            hit = self.cache.get(cache_key)
            if hit is not None:
                self._logger.info("retry.cache_hit", operation=name, cache_key=cache_key)
                return ExecutionResult(hit.value, source="cache")

        now = self._clock()
        if preflight_rate_check and self.rate_limit.exhausted(now):
            wait = self.rate_limit.wait_seconds(now)
            self.cache.sweep(rate_limited=True)
            self._logger.warn("retry.preflight_blocked", operation=name, wait_seconds=wait)
            REMOTE_CALLS.labels(operation_kind=name, outcome="preflight_blocked").inc()
            return self._degrade(
                name,
                cache_key,
                fallback_value,
                RateLimitedError(wait, reset_at=self.rate_limit.reset_at),
                attempts=0,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries if max_retries is None else max_retries),
            wait=self._wait_strategy(base_delay),
            retry=retry_if_exception(self._should_retry),
            sleep=self._sleep,
            reraise=True,
        )
        attempt_number = 0
        try:
            async for attempt in retrying:
                attempt_number = attempt.retry_state.attempt_number
                with attempt:
                    value = await self._attempt(operation, name, attempt_number)
        except RateLimitedError as exc:
            REMOTE_CALLS.labels(operation_kind=name, outcome="rate_limited").inc()
            return self._degrade(name, cache_key, fallback_value, exc, attempts=attempt_number)
        except TransientError as exc:
            self._logger.error("retry.giving_up", operation=name, attempts=attempt_number)
            REMOTE_CALLS.labels(operation_kind=name, outcome="exhausted").inc()
            return self._degrade(name, cache_key, fallback_value, exc, attempts=attempt_number)
        except DeployEaseError as exc:
            self._logger.warn(
                "retry.failed",
                operation=name,
                attempt=attempt_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            REMOTE_CALLS.labels(operation_kind=name, outcome="failed").inc()
            raise

        self._logger.info("retry.success", operation=name, attempt=attempt_number)
        REMOTE_CALLS.labels(operation_kind=name, outcome="success").inc()
        if cache_key:
            self.cache.set(cache_key, value, cache_ttl)
        return ExecutionResult(value, source="remote", attempts=attempt_number)

    def _degrade(
        self,
        name: str,
        cache_key: str | None,
        fallback_value: Any,
        error: DeployEaseError,
        *,
        attempts: int,
    ) -> ExecutionResult[Any]:
        if cache_key:
            hit = self.cache.get(cache_key, allow_stale=True)
            if hit is not None:
                self._logger.warn("retry.stale_cache", operation=name, cache_key=cache_key)
                return ExecutionResult(hit.value, source="stale_cache", attempts=attempts)
        if fallback_value is not _MISSING:
            self._logger.warn("retry.fallback", operation=name)
            return ExecutionResult(fallback_value, source="fallback", attempts=attempts)
        if isinstance(error, RateLimitedError):
            raise error
        raise_operation_failure(f"{name} failed after {attempts} attempts", error)
