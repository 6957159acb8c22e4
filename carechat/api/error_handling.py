from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from carechat.api.schemas import ErrorBody
from carechat.logging import get_logger
from carechat.service.errors import ServiceError, UpstreamTimeoutError

logger = get_logger(__name__)

GENERIC_ERROR_MESSAGE = "Failed to process chat request."
INVALID_REQUEST_MESSAGE = "Invalid request."


def error_response(status_code: int, message: str) -> JSONResponse:
    """``{"error": <message>}`` with ``status_code``."""
    return JSONResponse(status_code=status_code, content=ErrorBody(error=message).model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors to ``{"error": ...}`` bodies; never leak internals."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_type=type(exc).__name__,
            detail=exc.detail,
        )
        if isinstance(exc, UpstreamTimeoutError):
            return error_response(exc.status_code, exc.message)
        if exc.status_code >= 500:
            return error_response(exc.status_code, GENERIC_ERROR_MESSAGE)
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            fields=[".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()],
        )
        return error_response(400, INVALID_REQUEST_MESSAGE)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
            message = GENERIC_ERROR_MESSAGE
        return error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(500, GENERIC_ERROR_MESSAGE)
