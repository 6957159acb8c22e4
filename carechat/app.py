from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from carechat.api.error_handling import (
    GENERIC_ERROR_MESSAGE,
    error_response,
    register_exception_handlers,
)
from carechat.api.routes import router
from carechat.logging import get_logger, set_correlation_id
from carechat.service.origin import SECURITY_HEADERS
from carechat.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

ORIGIN_NOT_ALLOWED_MESSAGE = "Origin not allowed."
HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its clients on shutdown."""
    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="CareChat", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def enforce_origin_policy(request: Request, call_next):
    """Reject disallowed browser origins before any authentication runs.

    Allowed responses carry the echoed origin plus the hardening headers.
    Unhandled errors are turned into the generic 500 here so the browser
    still receives CORS headers with it.
    """
    decision = get_runtime().origin_policy.resolve(request.headers.get("Origin"))
    if not decision.allowed:
        logger.warning(
            "origin_rejected",
            path=request.url.path,
            method=request.method,
            origin=request.headers.get("Origin"),
        )
        response = error_response(403, ORIGIN_NOT_ALLOWED_MESSAGE)
    else:
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(
                "unhandled_exception",
                exc_info=exc,
                path=request.url.path,
                method=request.method,
                error_type=type(exc).__name__,
            )
            response = error_response(500, GENERIC_ERROR_MESSAGE)
        for name, value in decision.cors_headers().items():
            response.headers[name] = value
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs with ``X-Request-ID`` (client supplied or generated) and echo it."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Durable store connectivity plus session cache state.

    An unavailable cache is reported as degraded; it never makes the
    service unhealthy.
    """
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        db_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database")
        db_ok = False
    except Exception as exc:
        logger.error("health_check_database_failed", error_type=type(exc).__name__)
        db_ok = False
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}

    checks["session_cache"] = {
        "status": "healthy" if runtime.cache.available else "degraded",
        "reason": runtime.cache_health.reason,
    }

    return JSONResponse(
        status_code=200 if db_ok else 503,
        content={
            "status": "healthy" if db_ok else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app() -> FastAPI:
    return app
