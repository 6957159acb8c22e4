from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import jwt
from jwt import PyJWKSet

from carechat.config import Settings
from carechat.logging import get_logger
from carechat.service.errors import AuthenticationError

logger = get_logger(__name__)

MISSING_TOKEN_MESSAGE = "Missing Authorization token."
INVALID_TOKEN_MESSAGE = "Invalid user token."

_ALGORITHMS = ["RS256"]
_JWKS_FETCH_TIMEOUT = 3.0


@dataclass(frozen=True)
class CallerIdentity:
    subject: str
    username: Optional[str] = None


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class JwksCache:
    """Fetches and caches the identity provider's JSON Web Key Set."""

    def __init__(
        self,
        jwks_url: str,
        *,
        ttl_seconds: int = 3600,
        refresh_cooldown_seconds: int = 30,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.jwks_url = jwks_url
        self.ttl_seconds = ttl_seconds
        self.refresh_cooldown_seconds = refresh_cooldown_seconds
        self._http_client = http_client
        self._keys: Optional[PyJWKSet] = None
        self._fetched_at = 0.0
        self._last_forced_refresh: Optional[float] = None
        self._lock = asyncio.Lock()

    def _fresh(self) -> bool:
        return self._keys is not None and (time.monotonic() - self._fetched_at) < self.ttl_seconds

    async def _fetch(self) -> PyJWKSet:
        if self._http_client is not None:
            response = await self._http_client.get(self.jwks_url, timeout=_JWKS_FETCH_TIMEOUT)
        else:
            async with httpx.AsyncClient(timeout=_JWKS_FETCH_TIMEOUT) as client:
                response = await client.get(self.jwks_url)
        response.raise_for_status()
        return PyJWKSet.from_dict(response.json())

    def _cooling_down(self) -> bool:
        if self._last_forced_refresh is None:
            return False
        return (time.monotonic() - self._last_forced_refresh) < self.refresh_cooldown_seconds

    async def get_key(self, kid: Optional[str]) -> Any:
        """Return the signing key for ``kid``.

        A miss triggers one refresh, at most once per cooldown window, so
        tokens naming unknown key ids cannot force a fetch per request.
        """
        for force in (False, True):
            async with self._lock:
                if force and self._fresh() and self._cooling_down():
                    logger.info("jwks_refresh_skipped", kid=kid)
                    return None
                if force or not self._fresh():
                    self._keys = await self._fetch()
                    self._fetched_at = time.monotonic()
                    if force:
                        self._last_forced_refresh = self._fetched_at
                    logger.info("jwks_refreshed", key_count=len(self._keys.keys))
                keys = self._keys
            for jwk in keys.keys:
                if kid is None or jwk.key_id == kid:
                    return jwk.key
        return None


class AccessGate:
    """Verifies bearer JWTs issued by the configured identity provider."""

    def __init__(
        self,
        issuer: Optional[str],
        *,
        jwks: Optional[JwksCache] = None,
        leeway_seconds: int = 30,
    ) -> None:
        self.issuer = issuer.rstrip("/") if issuer else None
        self.leeway_seconds = leeway_seconds
        if jwks is None and self.issuer:
            jwks = JwksCache(f"{self.issuer}/.well-known/jwks.json")
        self.jwks = jwks

    @classmethod
    def from_settings(cls, settings: Settings) -> "AccessGate":
        issuer = settings.issuer_url
        jwks = (
            JwksCache(
                f"{issuer}/.well-known/jwks.json",
                ttl_seconds=settings.jwks_cache_seconds,
                refresh_cooldown_seconds=settings.jwks_refresh_cooldown_seconds,
            )
            if issuer
            else None
        )
        return cls(issuer, jwks=jwks)

    async def verify(self, authorization: Optional[str]) -> CallerIdentity:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError(MISSING_TOKEN_MESSAGE)
        if not self.issuer or self.jwks is None:
            logger.error("identity_provider_not_configured")
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)

        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError:
            raise AuthenticationError(INVALID_TOKEN_MESSAGE) from None
        if header.get("alg") not in _ALGORITHMS:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)

        try:
            key = await self.jwks.get_key(header.get("kid"))
        except (httpx.HTTPError, ValueError, jwt.PyJWTError) as exc:
            logger.error("jwks_fetch_failed", error_type=type(exc).__name__)
            raise AuthenticationError(INVALID_TOKEN_MESSAGE) from None
        if key is None:
            logger.warning("jwt_unknown_kid", kid=header.get("kid"))
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)

        try:
            claims = jwt.decode(
                token,
                key=key,
                algorithms=_ALGORITHMS,
                issuer=self.issuer,
                leeway=self.leeway_seconds,
                options={"verify_aud": False, "require": ["exp", "iss"]},
            )
        except jwt.ExpiredSignatureError:
            logger.info("jwt_expired")
            raise AuthenticationError(INVALID_TOKEN_MESSAGE) from None
        except jwt.PyJWTError as exc:
            logger.warning("jwt_rejected", error_type=type(exc).__name__)
            raise AuthenticationError(INVALID_TOKEN_MESSAGE) from None

        subject = claims.get("sub") or claims.get("cognito:username")
        if not isinstance(subject, str) or not subject:
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)
        return CallerIdentity(subject=subject, username=claims.get("cognito:username"))
