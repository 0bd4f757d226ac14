"""FastAPI application factory.

Serve with ``uvicorn authgate.app:create_app --factory``.
"""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from authgate.api.error_handling import register_exception_handlers
from authgate.api.routes import router
from authgate.config import Settings, get_settings
from authgate.logging import get_logger, set_correlation_id
from authgate.service.errors import ServiceError
from authgate.service.gateway import AuthGateway
from authgate.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_expiry_sweep(gateway: AuthGateway, interval_seconds: int) -> None:
    """Background loop that drops expired sessions and spent action tokens."""

    try:
        while True:
            try:
                await gateway.purge_expired()
            except ServiceError as exc:
                logger.warning("expiry_sweep_failed", error_code=exc.error_code, error=exc.message)
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("expiry_sweep_task_cancelled")


def create_app(runtime: Optional[Runtime] = None, *, settings: Optional[Settings] = None) -> FastAPI:
    """Build the app around an explicit ``Runtime``.

    When no runtime is given one is built from ``settings`` (or the environment)
    at startup and closed at shutdown; an injected runtime is left to its owner.
    """
    settings = runtime.settings if runtime is not None else settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_runtime = app.state.runtime is None
        if owns_runtime:
            app.state.runtime = Runtime(settings)
        sweep = asyncio.create_task(
            _run_expiry_sweep(app.state.runtime.gateway, settings.cleanup_interval_seconds)
        )
        yield
        sweep.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep
        if owns_runtime:
            await app.state.runtime.close()
            app.state.runtime = None
        logger.info("runtime_cleanup_complete")

    app = FastAPI(title="AuthGate", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    if settings.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
            expose_headers=["X-Request-ID"],
            max_age=3600,
        )

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # Responses may carry bearer tokens
        response.headers.setdefault("Cache-Control", "no-store")
        if request.url.scheme == "https" and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag each request with the client's X-Request-ID or a fresh one and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health():
        """Probe the credential store and the session store."""
        current: Runtime = app.state.runtime
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, probe) -> bool:
            try:
                await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        store_ok = await _run_bounded("credential_store", current.store.ping)
        checks["credential_store"] = {"status": "healthy" if store_ok else "unhealthy"}
        sessions_ok = store_ok
        if current.session_store is not current.store:
            sessions_ok = await _run_bounded("session_store", current.session_store.ping)
        checks["session_store"] = {
            "status": "healthy" if sessions_ok else "unhealthy",
            "backend": current.settings.session_backend.value,
        }

        healthy = store_ok and sessions_ok
        body = {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    return app
