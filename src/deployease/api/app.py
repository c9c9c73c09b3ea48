# deployease/api/app.py
from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
import time
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from deployease.api.routes import meta_router, router as api_router
from deployease.api.websocket import install_observer_handlers, router as ws_router
from deployease.config import AppSettings, get_app_settings
from deployease.errors import (
    ConfigurationError,
    ConflictError,
    DeployEaseError,
    NotFoundError,
    OperationFailed,
    RateLimitedError,
    ValidationError,
)
from deployease.observability.logging import JsonStdoutLogger, NullLogger, configure_logging
from deployease.observability.telemetry import setup_tracing
from deployease.runtime import DeployRuntime, build_runtime

# Most specific first; anything unmatched is an upstream failure.
_HTTP_STATUS: tuple[tuple[type[DeployEaseError], int], ...] = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (RateLimitedError, 429),
    (ConfigurationError, 503),
)


def error_response(exc: DeployEaseError) -> JSONResponse:
    """Render a domain error as ``{"success": false, "error": ...}``."""
    if isinstance(exc, OperationFailed):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message, "errorId": exc.correlation_id},
        )
    if isinstance(exc, RateLimitedError):
        return JSONResponse(
            status_code=429,
            content={"success": False, "error": exc.message, "retryAfter": exc.wait_seconds},
            headers={"Retry-After": str(exc.wait_seconds)},
        )
    status_code = next((code for kind, code in _HTTP_STATUS if isinstance(exc, kind)), None)
    if status_code is None:
        # A typed remote error that escaped without being wrapped.
        return JSONResponse(status_code=502, content={"success": False, "error": "Upstream provider error"})
    return JSONResponse(status_code=status_code, content={"success": False, "error": exc.message})


async def log_requests(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Tag each exchange with ``x-request-id`` and log it with its latency."""
    req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.req_id = req_id
    logger = getattr(request.app.state, "logger", None) or NullLogger()
    path = request.url.path
    logger.info(
        "http.request",
        req_id=req_id,
        method=request.method,
        path=path,
        client=request.client.host if request.client else None,
    )
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["x-request-id"] = req_id
    logger.info(
        "http.response",
        req_id=req_id,
        path=path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


def _lifespan(settings: AppSettings, runtime: DeployRuntime | None):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level, settings.service_name)
        setup_tracing(settings.service_name, settings.app_env)
        logger = JsonStdoutLogger(
            service=settings.service_name, env=settings.app_env, log_path=settings.obs_log_file
        )
        rt = runtime or build_runtime(settings, obs=logger)
        app.state.logger = logger
        app.state.runtime = rt
        install_observer_handlers(rt)
        rt.bus.start()
        logger.info("service.start", version=settings.app_version, hosting=settings.hosting_enabled())
        try:
            yield
        finally:
            logger.info("service.stop", observers=rt.bus.connection_count)
            await rt.aclose()

    return lifespan


def create_app(
    runtime: DeployRuntime | None = None, settings: AppSettings | None = None
) -> FastAPI:
    settings = settings or (runtime.settings if runtime else get_app_settings())
    app = FastAPI(
        title="DeployEase Traffic API",
        version=settings.app_version,
        description="Blue/green deployments and traffic switching",
        lifespan=_lifespan(settings, runtime),
    )
    app.middleware("http")(log_requests)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowlist(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DeployEaseError)
    async def handle_domain_error(request: Request, exc: DeployEaseError) -> JSONResponse:
        return error_response(exc)

    app.include_router(meta_router)
    app.include_router(api_router)
    app.include_router(ws_router, tags=["observers"])
    return app
