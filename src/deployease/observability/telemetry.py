"""OpenTelemetry wiring for switch and deployment spans.

Set ``DEPLOYEASE_DISABLE_TRACING=1`` to hand out the API's no-op tracer and
skip provider installation (tests do this in ``conftest.py``).
"""

from __future__ import annotations

import logging
import os
from typing import Any

from opentelemetry import trace

logger = logging.getLogger(__name__)

DISABLE_ENV = "DEPLOYEASE_DISABLE_TRACING"

_installed = False


def tracing_disabled() -> bool:
    return os.getenv(DISABLE_ENV, "").strip().lower() in {"1", "true", "yes"}


def setup_tracing(service_name: str, environment: str = "dev", exporter: Any | None = None) -> bool:
    """Install a tracer provider once per process; returns whether one is active."""
    global _installed
    if tracing_disabled():
        logger.info("tracing.disabled", extra={"extra": {"service": service_name}})
        return False
    if _installed:
        return True

    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": service_name, "deployment.environment": environment}
        )
    )
    provider.add_span_processor(BatchSpanProcessor(exporter or ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    _installed = True
    logger.info(
        "tracing.configured",
        extra={"extra": {"service": service_name, "environment": environment}},
    )
    return True


def get_tracer(name: str) -> trace.Tracer:
    if tracing_disabled():
        return trace.NoOpTracer()
    return trace.get_tracer(name)
