from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_BYTES = 12
TAG_BYTES = 16
_SEPARATOR = ":"


class CipherError(Exception):
    """Stored value could not be authenticated or parsed."""


class TurnCipher:
    """AES-256-GCM for session cache values.

    Each value is ``b64(nonce):b64(tag):b64(ciphertext)`` with a fresh random
    nonce. The key is the SHA-256 digest of the configured key string.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("encryption key material is required")
        self._aesgcm = AESGCM(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return _SEPARATOR.join(
            base64.b64encode(part).decode("ascii") for part in (nonce, tag, ciphertext)
        )

    def decrypt(self, token: str) -> str:
        parts = token.split(_SEPARATOR) if isinstance(token, str) else []
        if len(parts) != 3:
            raise CipherError("malformed cache value")
        try:
            nonce, tag, ciphertext = (base64.b64decode(p, validate=True) for p in parts)
        except (binascii.Error, ValueError) as exc:
            raise CipherError("malformed cache value") from exc
        # Reject non-canonical base64 so no textual change decodes to the same bytes.
        for raw, encoded in zip((nonce, tag, ciphertext), parts):
            if base64.b64encode(raw).decode("ascii") != encoded:
                raise CipherError("malformed cache value")
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise CipherError("malformed cache value")
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CipherError("cache value failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CipherError("cache value is not text") from exc
