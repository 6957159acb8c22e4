from __future__ import annotations

import asyncio
from typing import List, Optional, Sequence
from urllib.parse import urlsplit

import httpx

from carechat.config import Settings
from carechat.logging import get_logger
from carechat.service.context import Turn
from carechat.service.errors import (
    ConfigurationError,
    MalformedResponseError,
    UpstreamError,
    UpstreamTimeoutError,
)

logger = get_logger(__name__)

TIMEOUT_MESSAGE = "The assistant took too long to respond. Please try again."
_GENERIC_UPSTREAM_MESSAGE = "Failed to process chat request."


class ModelCaller:
    """Calls an OpenAI-compatible ``/chat/completions`` endpoint.

    The primary model is tried first under its own deadline. A single
    fallback attempt is made only when the primary timed out or answered
    with a 5xx status and a distinct fallback model is configured.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        model: str,
        *,
        fallback_model: Optional[str] = None,
        primary_timeout_ms: int = 20000,
        fallback_timeout_ms: int = 8000,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.model = model
        self.fallback_model = fallback_model
        self.primary_timeout = primary_timeout_ms / 1000.0
        self.fallback_timeout = fallback_timeout_ms / 1000.0
        self._client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_settings(
        cls, settings: Settings, *, http_client: Optional[httpx.AsyncClient] = None
    ) -> "ModelCaller":
        return cls(
            settings.xai_api_url,
            settings.xai_api_key,
            settings.xai_model,
            fallback_model=settings.xai_fallback_model,
            primary_timeout_ms=settings.primary_timeout_ms,
            fallback_timeout_ms=settings.fallback_timeout_ms,
            http_client=http_client,
        )

    @property
    def has_fallback(self) -> bool:
        return bool(self.fallback_model) and self.fallback_model != self.model

    def _check_config(self) -> None:
        if urlsplit(self.base_url).scheme != "https":
            raise ConfigurationError(
                _GENERIC_UPSTREAM_MESSAGE, detail={"reason": "model_url_not_https"}
            )
        if not self.api_key:
            raise ConfigurationError(
                _GENERIC_UPSTREAM_MESSAGE, detail={"reason": "model_api_key_missing"}
            )

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            # deadlines come from wait_for in _attempt, not from httpx
            self._client = httpx.AsyncClient(timeout=None)
        return self._client

    async def complete(self, turns: Sequence[Turn]) -> str:
        """Return the assistant reply text for ``turns``."""
        self._check_config()
        messages = [turn.to_payload() for turn in turns]
        try:
            return await self._attempt(self.model, messages, self.primary_timeout)
        except (UpstreamTimeoutError, UpstreamError) as exc:
            if not self._should_fall_back(exc):
                raise
            logger.warning(
                "model_fallback_invoked",
                primary_model=self.model,
                fallback_model=self.fallback_model,
                reason=_failure_reason(exc),
            )
        return await self._attempt(self.fallback_model, messages, self.fallback_timeout)

    def _should_fall_back(self, exc: Exception) -> bool:
        if not self.has_fallback:
            return False
        if isinstance(exc, UpstreamTimeoutError):
            return True
        return (
            isinstance(exc, UpstreamError)
            and not isinstance(exc, MalformedResponseError)
            and exc.retryable
        )

    async def _attempt(self, model: str, messages: List[dict], timeout: float) -> str:
        try:
            # wait_for cancels the in-flight request when the deadline passes
            response = await asyncio.wait_for(self._post(model, messages), timeout=timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("model_call_timeout", model=model, timeout_seconds=timeout)
            raise UpstreamTimeoutError(TIMEOUT_MESSAGE, detail={"model": model}) from None
        except httpx.HTTPError as exc:
            logger.error("model_call_transport_error", model=model, error_type=type(exc).__name__)
            raise UpstreamError(
                _GENERIC_UPSTREAM_MESSAGE, detail={"model": model, "error": type(exc).__name__}
            ) from exc

        if response.status_code >= 400:
            logger.error(
                "model_call_failed",
                model=model,
                status_code=response.status_code,
                body_len=len(response.text or ""),
            )
            raise UpstreamError(
                _GENERIC_UPSTREAM_MESSAGE,
                upstream_status=response.status_code,
                detail={"model": model},
            )
        return _extract_reply(response, model)

    async def _post(self, model: str, messages: List[dict]) -> httpx.Response:
        return await self._http().post(
            f"{self.base_url}/chat/completions",
            json={"model": model, "messages": messages},
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=None,
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def _extract_reply(response: httpx.Response, model: str) -> str:
    try:
        payload = response.json()
        content = payload["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError):
        content = None
    if not isinstance(content, str) or not content.strip():
        logger.error("model_response_malformed", model=model, status_code=response.status_code)
        raise MalformedResponseError(
            _GENERIC_UPSTREAM_MESSAGE,
            upstream_status=response.status_code,
            detail={"model": model},
        )
    return content


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, UpstreamTimeoutError):
        return "timeout"
    status = getattr(exc, "upstream_status", None)
    return f"status_{status}" if status else type(exc).__name__
