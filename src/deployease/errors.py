"""Tagged error variants raised by the DeployEase core.

Remote responses are classified once, where they are first interpreted
(see ``deployease.remote.http``), and the resulting variant is propagated
unchanged until it reaches a caller or ``raise_operation_failure``.
"""

from __future__ import annotations

import logging
import secrets
from typing import NoReturn

logger = logging.getLogger(__name__)


class DeployEaseError(Exception):
    """Base class for every error the core raises on purpose."""

    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DeployEaseError):
    """Bad environment name or malformed/oversized files. Never retried."""


class RateLimitedError(DeployEaseError):
    """Provider quota exhausted; ``wait_seconds`` is always at least 1."""

    retryable = True

    def __init__(
        self,
        wait_seconds: float,
        message: str | None = None,
        *,
        reset_at: float | None = None,
    ) -> None:
        self.wait_seconds = max(1, int(round(wait_seconds)))
        self.reset_at = reset_at
        super().__init__(
            message
            or f"Rate limit exceeded. Please try again in {self.wait_seconds} seconds."
        )


class ConflictError(DeployEaseError):
    """The branch moved concurrently; the whole operation may be retried."""


class NotFoundError(DeployEaseError):
    """Missing file, branch or commit."""


class TransientError(DeployEaseError):
    """Network failure, timeout or 5xx response."""

    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteRequestError(DeployEaseError):
    """Non-retryable client error returned by a remote provider."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(DeployEaseError):
    """Required configuration is missing or a provider is disabled."""


class PartialFailure(DeployEaseError):
    """A best-effort step failed after the authoritative step succeeded.

    Never raised to callers; carried as a field of a successful result.
    """

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class OperationFailed(DeployEaseError):
    """Generic failure carrying a short correlation id safe to show callers."""

    def __init__(self, context: str, correlation_id: str, *, status_code: int = 500) -> None:
        super().__init__(f"{context}. Error ID: {correlation_id}")
        self.context = context
        self.correlation_id = correlation_id
        self.status_code = status_code


PASSTHROUGH_ERRORS: tuple[type[DeployEaseError], ...] = (
    ValidationError,
    RateLimitedError,
    ConflictError,
    NotFoundError,
    ConfigurationError,
    OperationFailed,
)


def new_correlation_id() -> str:
    return secrets.token_hex(4)


def raise_operation_failure(context: str, exc: BaseException) -> NoReturn:
    """Re-raise typed errors unchanged; wrap anything else with a correlation id."""
    if isinstance(exc, PASSTHROUGH_ERRORS):
        raise exc
    correlation_id = new_correlation_id()
    status_code = 502 if isinstance(exc, (TransientError, RemoteRequestError)) else 500
    logger.error(
        "operation.failed",
        exc_info=exc,
        extra={
            "extra": {
                "context": context,
                "error_id": correlation_id,
                "error_type": type(exc).__name__,
                "error": str(exc),
            }
        },
    )
    raise OperationFailed(context, correlation_id, status_code=status_code) from exc
