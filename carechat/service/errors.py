from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    ``message`` is the user-facing text placed in the ``{"error": ...}`` body.
    Server-side failures (5xx) carry a generic message; the specific cause
    belongs in ``detail`` and is only ever logged.
    """

    status_code: int = 400

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Missing body, empty messages, or missing required query parameter (400)."""
    status_code = 400


class AuthenticationError(ServiceError):
    """Missing, invalid, or expired credential (401)."""
    status_code = 401


class OriginDisallowedError(ServiceError):
    """Browser origin is not on the allowlist (403)."""
    status_code = 403


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500


class ConfigurationError(ServerError):
    """Deployment is missing or has unsafe configuration."""


class UpstreamError(ServerError):
    """The model provider failed the request.

    ``upstream_status`` is the provider's HTTP status, or ``None`` when the
    failure happened before a response arrived.
    """

    def __init__(
        self,
        message: str,
        *,
        upstream_status: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.upstream_status = upstream_status

    @property
    def retryable(self) -> bool:
        return self.upstream_status is not None and self.upstream_status >= 500


class MalformedResponseError(UpstreamError):
    """Provider answered 2xx without a usable reply text."""


class UpstreamTimeoutError(ServiceError):
    """Model call exceeded its time budget (504)."""
    status_code = 504


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "OriginDisallowedError",
    "ServerError",
    "ConfigurationError",
    "UpstreamError",
    "MalformedResponseError",
    "UpstreamTimeoutError",
]
