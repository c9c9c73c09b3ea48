"""Structured logging for DeployEase.

Module loggers go through stdlib ``logging`` with ``JsonFormatter``; fields
passed as ``extra={"extra": {...}}`` are merged into the JSON line.

Remote adapters additionally take an injected ``Logger`` (``info``/``warn``/
``error`` with keyword fields). ``with_span`` wraps each provider call and
emits ``<event>.start`` / ``<event>.end`` / ``<event>.error`` with timing and
the error kind, so one provider call can be followed across retries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import functools
import inspect
import json
import logging
from pathlib import Path
import sys
import threading
import time
from typing import Any, Callable, Mapping, Protocol, TextIO

from deployease.errors import DeployEaseError

_SECRET_FIELDS = frozenset({"token", "authorization", "github_token", "netlify_token"})


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def redact(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Mask credential-looking fields, keeping a short prefix for correlation."""
    cleaned: dict[str, Any] = {}
    for key, value in fields.items():
        if key.lower() in _SECRET_FIELDS and value:
            text = str(value)
            cleaned[key] = f"{text[:4]}***" if len(text) > 8 else "***"
        else:
            cleaned[key] = value
    return cleaned


class JsonFormatter(logging.Formatter):
    """One JSON object per record, tagged with the service name."""

    def __init__(self, service: str = "deployease") -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        payload: dict[str, Any] = {
            "timestamp": _utc_stamp(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(redact(extra))
        if record.exc_info and record.levelno >= logging.ERROR:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: int | str = logging.INFO, service: str = "deployease") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(service))
    logging.basicConfig(level=level, handlers=[handler], force=True)
    # httpx logs every request at INFO; the adapters already emit spans.
    logging.getLogger("httpx").setLevel(logging.WARNING)


class Logger(Protocol):
    def info(self, event: str, **fields: Any) -> None: ...
    def warn(self, event: str, **fields: Any) -> None: ...
    def error(self, event: str, **fields: Any) -> None: ...


class NullLogger:
    def info(self, event: str, **fields: Any) -> None:
        pass

    def warn(self, event: str, **fields: Any) -> None:
        pass

    def error(self, event: str, **fields: Any) -> None:
        pass


class JsonStdoutLogger:
    """Writes obs events as JSON lines to stdout, optionally mirrored to a JSONL file."""

    def __init__(
        self,
        service: str = "deployease",
        env: str = "dev",
        log_path: str | Path | None = None,
        *,
        stream: TextIO | None = None,
    ) -> None:
        self.service = service
        self.env = env
        self._stream = stream
        self._log_path = Path(log_path).expanduser() if log_path else None
        self._file_lock = threading.Lock()

    def _emit(self, level: str, event: str, fields: Mapping[str, Any]) -> None:
        line = json.dumps(
            {
                "ts": _utc_stamp(),
                "level": level,
                "event": event,
                "service": self.service,
                "env": self.env,
                **redact(fields),
            },
            default=str,
        )
        stream = self._stream or (sys.stderr if level == "error" else sys.stdout)
        print(line, file=stream)
        if self._log_path is None:
            return
        with self._file_lock:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with self._log_path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")

    def info(self, event: str, **fields: Any) -> None:
        self._emit("info", event, fields)

    def warn(self, event: str, **fields: Any) -> None:
        self._emit("warn", event, fields)

    def error(self, event: str, **fields: Any) -> None:
        self._emit("error", event, fields)


@dataclass(slots=True)
class Span:
    logger: Logger
    event: str
    fields: Mapping[str, Any] = field(default_factory=dict)
    started: float = 0.0

    def __enter__(self) -> Span:
        self.started = time.perf_counter()
        self.logger.info(f"{self.event}.start", **self.fields)
        return self

    def __exit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        elapsed_ms = round((time.perf_counter() - self.started) * 1000, 2)
        if exc is None:
            self.logger.info(f"{self.event}.end", duration_ms=elapsed_ms, **self.fields)
            return
        self.logger.error(
            f"{self.event}.error",
            duration_ms=elapsed_ms,
            error_kind=type(exc).__name__,
            retryable=bool(getattr(exc, "retryable", False)),
            expected=isinstance(exc, DeployEaseError),
            error=str(exc),
            **self.fields,
        )


def with_span(
    event: str,
    *,
    logger_attr: str = "_logger",
    fields: Mapping[str, Any] | None = None,
    fields_fn: Callable[..., Mapping[str, Any]] | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Wrap a provider call (sync or async) in a ``Span``.

    The logger is read from ``logger_attr`` on the bound instance; without
    one the span goes to ``NullLogger``.
    """

    def _open(args: tuple[Any, ...], kwargs: dict[str, Any]) -> Span:
        logger = getattr(args[0], logger_attr, None) if args else None
        span_fields = dict(fields or {})
        if fields_fn is not None:
            span_fields.update(fields_fn(*args, **kwargs))
        return Span(logger or NullLogger(), event, span_fields)

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                with _open(args, kwargs):
                    return await fn(*args, **kwargs)

            return async_wrapper

        @functools.wraps(fn)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            with _open(args, kwargs):
                return fn(*args, **kwargs)

        return sync_wrapper

    return decorator
