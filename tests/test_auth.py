"""Tests for bearer token verification against a JWKS."""

import json
import time

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from carechat.service.auth import (
    INVALID_TOKEN_MESSAGE,
    MISSING_TOKEN_MESSAGE,
    AccessGate,
    JwksCache,
    extract_bearer,
)
from carechat.service.errors import AuthenticationError

ISSUER = "https://cognito-idp.us-east-1.amazonaws.com/us-east-1_TestPool"
JWKS_URL = f"{ISSUER}/.well-known/jwks.json"


def _new_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _jwk(private_key, kid):
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
    return jwk


class IdentityProvider:
    """Signs tokens and serves its key set through an httpx mock transport."""

    def __init__(self):
        self.keys = {"key-1": _new_key()}
        self.published = ["key-1"]
        self.fetches = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        assert str(request.url) == JWKS_URL
        self.fetches += 1
        return httpx.Response(
            200, json={"keys": [_jwk(self.keys[kid], kid) for kid in self.published]}
        )

    def token(self, kid="key-1", **claims):
        now = int(time.time())
        payload = {"sub": "user-123", "iss": ISSUER, "exp": now + 300, "iat": now}
        payload.update(claims)
        payload = {k: v for k, v in payload.items() if v is not None}
        return jwt.encode(payload, self.keys[kid], algorithm="RS256", headers={"kid": kid})

    def gate(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return AccessGate(ISSUER, jwks=JwksCache(JWKS_URL, http_client=client))


@pytest.fixture(scope="module")
def provider():
    return IdentityProvider()


class TestExtractBearer:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer abc", "abc"),
            ("  Bearer   abc  ", "abc"),
            ("Basic abc", None),
            ("Bearer", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract(self, header, expected):
        assert extract_bearer(header) == expected


class TestAccessGate:
    async def test_valid_token_returns_subject(self, provider):
        gate = provider.gate()
        token = provider.token()
        first = await gate.verify(f"Bearer {token}")
        second = await gate.verify(f"Bearer {token}")
        assert first.subject == "user-123"
        assert second == first

    async def test_missing_header(self, provider):
        with pytest.raises(AuthenticationError) as excinfo:
            await provider.gate().verify(None)
        assert excinfo.value.message == MISSING_TOKEN_MESSAGE
        assert excinfo.value.status_code == 401

    async def test_username_claim_fallback(self, provider):
        token = provider.token(sub=None, **{"cognito:username": "jane"})
        identity = await provider.gate().verify(f"Bearer {token}")
        assert identity.subject == "jane"
        assert identity.username == "jane"

    async def test_no_subject_rejected(self, provider):
        token = provider.token(sub=None)
        with pytest.raises(AuthenticationError) as excinfo:
            await provider.gate().verify(f"Bearer {token}")
        assert excinfo.value.message == INVALID_TOKEN_MESSAGE

    async def test_issuer_mismatch_rejected(self, provider):
        token = provider.token(iss="https://evil.example/pool")
        with pytest.raises(AuthenticationError):
            await provider.gate().verify(f"Bearer {token}")

    async def test_expired_token_rejected(self, provider):
        token = provider.token(exp=int(time.time()) - 3600)
        with pytest.raises(AuthenticationError) as excinfo:
            await provider.gate().verify(f"Bearer {token}")
        assert excinfo.value.message == INVALID_TOKEN_MESSAGE

    async def test_foreign_signature_rejected(self, provider):
        forged = jwt.encode(
            {"sub": "user-123", "iss": ISSUER, "exp": int(time.time()) + 300},
            _new_key(),
            algorithm="RS256",
            headers={"kid": "key-1"},
        )
        with pytest.raises(AuthenticationError):
            await provider.gate().verify(f"Bearer {forged}")

    async def test_symmetric_algorithm_rejected(self, provider):
        token = jwt.encode(
            {"sub": "user-123", "iss": ISSUER, "exp": int(time.time()) + 300},
            "shared-secret-that-is-long-enough-for-hs256",
            algorithm="HS256",
        )
        with pytest.raises(AuthenticationError):
            await provider.gate().verify(f"Bearer {token}")

    async def test_garbage_token_rejected(self, provider):
        with pytest.raises(AuthenticationError):
            await provider.gate().verify("Bearer not.a.jwt")

    async def test_unconfigured_issuer_rejects(self, provider):
        gate = AccessGate(None)
        with pytest.raises(AuthenticationError) as excinfo:
            await gate.verify(f"Bearer {provider.token()}")
        assert excinfo.value.status_code == 401


class TestJwksCache:
    async def test_key_set_is_cached(self):
        provider = IdentityProvider()
        gate = provider.gate()
        for _ in range(3):
            await gate.verify(f"Bearer {provider.token()}")
        assert provider.fetches == 1

    async def test_unknown_kid_forces_one_refresh(self):
        provider = IdentityProvider()
        gate = provider.gate()
        await gate.verify(f"Bearer {provider.token()}")

        provider.keys["key-2"] = _new_key()
        provider.published = ["key-1", "key-2"]
        identity = await gate.verify(f"Bearer {provider.token(kid='key-2')}")

        assert identity.subject == "user-123"
        assert provider.fetches == 2

    async def test_unpublished_kid_rejected_after_refresh(self):
        provider = IdentityProvider()
        provider.keys["key-9"] = _new_key()
        gate = provider.gate()
        with pytest.raises(AuthenticationError):
            await gate.verify(f"Bearer {provider.token(kid='key-9')}")
        assert provider.fetches == 2

    async def test_unknown_kids_refetch_once_per_cooldown(self):
        provider = IdentityProvider()
        provider.keys["key-9"] = _new_key()
        gate = provider.gate()
        for _ in range(10):
            with pytest.raises(AuthenticationError):
                await gate.verify(f"Bearer {provider.token(kid='key-9')}")
        assert provider.fetches == 2

        gate.jwks._last_forced_refresh -= gate.jwks.refresh_cooldown_seconds + 1
        with pytest.raises(AuthenticationError):
            await gate.verify(f"Bearer {provider.token(kid='key-9')}")
        assert provider.fetches == 3

    async def test_rotated_key_found_after_cooldown(self):
        provider = IdentityProvider()
        provider.keys["key-2"] = _new_key()
        gate = provider.gate()
        with pytest.raises(AuthenticationError):
            await gate.verify(f"Bearer {provider.token(kid='key-2')}")

        provider.published = ["key-1", "key-2"]
        with pytest.raises(AuthenticationError):
            await gate.verify(f"Bearer {provider.token(kid='key-2')}")
        assert provider.fetches == 2

        gate.jwks._last_forced_refresh -= gate.jwks.refresh_cooldown_seconds + 1
        identity = await gate.verify(f"Bearer {provider.token(kid='key-2')}")
        assert identity.subject == "user-123"
        assert provider.fetches == 3

    async def test_fetch_failure_is_unauthenticated(self):
        def failing(request):
            return httpx.Response(503)

        client = httpx.AsyncClient(transport=httpx.MockTransport(failing))
        gate = AccessGate(ISSUER, jwks=JwksCache(JWKS_URL, http_client=client))
        provider = IdentityProvider()
        with pytest.raises(AuthenticationError):
            await gate.verify(f"Bearer {provider.token()}")
