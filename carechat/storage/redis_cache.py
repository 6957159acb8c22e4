from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Generic, List, Optional, Sequence, TypeVar, Union

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from carechat.config import MIN_ENCRYPTION_KEY_LENGTH
from carechat.logging import get_logger
from carechat.storage.crypto import CipherError, TurnCipher
from carechat.storage.models import ChatTurn

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Unavailable:
    reason: str


CacheResult = Union[Ok[T], Unavailable]


class CacheHealth:
    """Process-lifetime availability flag for the session cache.

    Once disabled the cache stays off until ``reset()``; reads and writes to
    the flag are not locked since a stale value only costs one extra connect
    attempt or one missed cache hit.
    """

    def __init__(self) -> None:
        self.disabled = False
        self.reason: Optional[str] = None

    def disable(self, reason: str) -> None:
        if not self.disabled:
            logger.warning("session_cache_disabled", reason=reason)
        self.disabled = True
        self.reason = reason

    def reset(self) -> None:
        self.disabled = False
        self.reason = None


def cache_key(owner_id: str, conversation_id: str) -> str:
    return f"chat:{owner_id}:{conversation_id}"


class SessionCache:
    """Encrypted, best-effort recent-turn cache on Redis lists.

    Every public operation returns a ``CacheResult``; nothing here raises to
    the caller. Values are AES-GCM ciphertext produced by ``TurnCipher``.
    """

    def __init__(
        self,
        *,
        host: Optional[str],
        port: int = 6379,
        username: Optional[str] = None,
        password: Optional[str] = None,
        tls: bool = False,
        encryption_key: Optional[str] = None,
        ttl_seconds: int = 7 * 24 * 3600,
        connect_timeout_ms: int = 300,
        message_limit: int = 20,
        enabled: bool = True,
        health: Optional[CacheHealth] = None,
        client: Any = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.message_limit = message_limit
        self.connect_timeout = connect_timeout_ms / 1000.0
        self.health = health or CacheHealth()
        self._connected = False
        self._cipher: Optional[TurnCipher] = None
        self.client = client

        if not enabled:
            self.health.disable("disabled_by_config")
            return
        if not encryption_key or len(encryption_key) < MIN_ENCRYPTION_KEY_LENGTH:
            # never write unencrypted health content
            self.health.disable("encryption_key_missing")
            return
        if self.client is None and not host:
            self.health.disable("redis_host_missing")
            return
        self._cipher = TurnCipher(encryption_key)
        if self.client is None:
            self.client = aioredis.Redis(
                host=host,
                port=port,
                username=username,
                password=password,
                ssl=tls,
                decode_responses=True,
                socket_connect_timeout=self.connect_timeout,
                socket_timeout=max(self.connect_timeout, 1.0),
            )

    @classmethod
    def from_settings(cls, settings, *, health: Optional[CacheHealth] = None) -> "SessionCache":
        return cls(
            host=settings.redis_host,
            port=settings.redis_port,
            username=settings.redis_username,
            password=settings.redis_password,
            tls=settings.redis_tls,
            encryption_key=settings.redis_encryption_key,
            ttl_seconds=settings.redis_ttl_seconds,
            connect_timeout_ms=settings.redis_connect_timeout_ms,
            message_limit=settings.redis_message_limit,
            enabled=settings.redis_enabled,
            health=health,
        )

    @property
    def available(self) -> bool:
        return self._cipher is not None and not self.health.disabled

    async def _connection(self) -> Any:
        """Return a live client, or ``None`` after marking the cache disabled."""
        if not self.available:
            return None
        if self._connected:
            return self.client
        try:
            await asyncio.wait_for(self.client.ping(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            self.health.disable("connect_timeout")
            return None
        except (RedisError, OSError) as exc:
            self.health.disable(f"connect_failed:{type(exc).__name__}")
            return None
        self._connected = True
        return self.client

    def _handle_error(self, operation: str, exc: Exception) -> Unavailable:
        if isinstance(exc, (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError, OSError)):
            self._connected = False
            self.health.disable(f"{operation}_failed:{type(exc).__name__}")
        else:
            logger.warning(
                "session_cache_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
            )
        return Unavailable(reason=f"{operation}_failed")

    def _unavailable(self) -> Unavailable:
        return Unavailable(reason=self.health.reason or "unavailable")

    async def load_turns(
        self, owner_id: str, conversation_id: str
    ) -> CacheResult[List[ChatTurn]]:
        client = await self._connection()
        if client is None:
            return self._unavailable()
        try:
            raw_items = await client.lrange(
                cache_key(owner_id, conversation_id), -self.message_limit, -1
            )
        except Exception as exc:
            return self._handle_error("read", exc)

        turns: List[ChatTurn] = []
        dropped = 0
        for raw in raw_items or []:
            try:
                turns.append(ChatTurn.from_dict(json.loads(self._cipher.decrypt(raw))))
            except (CipherError, ValueError, TypeError, AttributeError):
                dropped += 1
        if dropped:
            logger.info("session_cache_entries_dropped", dropped=dropped)
        return Ok(turns)

    async def append_turns(
        self, owner_id: str, conversation_id: str, turns: Sequence[ChatTurn]
    ) -> CacheResult[int]:
        if not turns:
            return Ok(0)
        client = await self._connection()
        if client is None:
            return self._unavailable()
        key = cache_key(owner_id, conversation_id)
        try:
            pipe = client.pipeline(transaction=False)
            for turn in turns:
                pipe.rpush(key, self._cipher.encrypt(json.dumps(turn.to_dict())))
            pipe.expire(key, self.ttl_seconds)
            await pipe.execute()
        except Exception as exc:
            return self._handle_error("write", exc)
        return Ok(len(turns))

    async def delete_conversation(
        self, owner_id: str, conversation_id: str
    ) -> CacheResult[bool]:
        client = await self._connection()
        if client is None:
            return self._unavailable()
        try:
            removed = await client.delete(cache_key(owner_id, conversation_id))
        except Exception as exc:
            return self._handle_error("delete", exc)
        return Ok(bool(removed))

    async def close(self) -> None:
        """Close the Redis connection pool when shutting down."""
        if self.client is None or not hasattr(self.client, "aclose"):
            return
        try:
            await self.client.aclose()
        except Exception as exc:
            logger.warning("session_cache_close_failed", error=str(exc))
