from __future__ import annotations

import asyncio
import secrets
import string
import time
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from carechat.logging import get_logger
from carechat.service.context import ContextAssembler
from carechat.service.llm import ModelCaller
from carechat.storage.common import summarize_conversations
from carechat.storage.models import (
    AttachmentRef,
    ChatTurn,
    ConversationSummary,
    StoredMessageRecord,
)
from carechat.storage.redis_cache import Ok, SessionCache

logger = get_logger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase
_ID_SUFFIX_LENGTH = 6


class MessageStore(Protocol):
    def verify_connection(self) -> None: ...

    def append_message(
        self, owner_id: str, conversation_id: str, role: str, content: str
    ) -> StoredMessageRecord: ...

    def query_messages(
        self,
        owner_id: str,
        *,
        conversation_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[StoredMessageRecord]: ...

    def delete_message(self, owner_id: str, created_at: str) -> bool: ...

    def close(self) -> None: ...


def mint_conversation_id(now_ms: Optional[int] = None) -> str:
    """``conv_<epoch-ms>_<6 base36 chars>``."""
    stamp = int(time.time() * 1000) if now_ms is None else now_ms
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_SUFFIX_LENGTH))
    return f"conv_{stamp}_{suffix}"


@dataclass(frozen=True)
class ChatReply:
    message: str
    conversation_id: str


class ChatService:
    """Orchestrates one chat operation for an already-authenticated owner."""

    def __init__(
        self,
        store: MessageStore,
        cache: SessionCache,
        assembler: ContextAssembler,
        model: ModelCaller,
        *,
        history_limit: int = 20,
        delete_concurrency: int = 8,
    ) -> None:
        self.store = store
        self.cache = cache
        self.assembler = assembler
        self.model = model
        self.history_limit = history_limit
        self.delete_concurrency = max(delete_concurrency, 1)

    async def send(
        self,
        owner_id: str,
        turns: Sequence[ChatTurn],
        *,
        conversation_id: Optional[str] = None,
        attachments: Sequence[AttachmentRef] = (),
        persist: bool = True,
    ) -> ChatReply:
        started = time.monotonic()
        continuing = bool(conversation_id)
        conversation_id = conversation_id or mint_conversation_id()

        cached = await self.cache.load_turns(owner_id, conversation_id)
        cached_history = cached.value if isinstance(cached, Ok) else []
        durable_history: List[ChatTurn] = []
        if not cached_history and continuing:
            durable_history = await self._durable_history(owner_id, conversation_id)

        model_turns = self.assembler.assemble(
            turns,
            cached_history=cached_history,
            durable_history=durable_history,
            attachments=attachments,
        )
        reply = await self.model.complete(model_turns)

        if persist:
            await self._persist(
                owner_id, conversation_id, [*turns, ChatTurn(role="assistant", content=reply)]
            )
        logger.info(
            "chat_send_completed",
            conversation_id=conversation_id,
            history_source="cache" if cached_history else ("durable" if durable_history else "none"),
            model_turns=len(model_turns),
            persisted=persist,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return ChatReply(message=reply, conversation_id=conversation_id)

    async def _durable_history(self, owner_id: str, conversation_id: str) -> List[ChatTurn]:
        try:
            records = await asyncio.to_thread(
                self.store.query_messages,
                owner_id,
                conversation_id=conversation_id,
                limit=self.history_limit,
            )
        except Exception as exc:
            logger.warning(
                "chat_history_fallback_failed",
                conversation_id=conversation_id,
                error_type=type(exc).__name__,
            )
            return []
        return [record.to_turn() for record in records]

    async def _persist(
        self, owner_id: str, conversation_id: str, turns: Sequence[ChatTurn]
    ) -> None:
        """Write the exchange to cache and durable store concurrently.

        The reply has already been produced, so failures are logged and the
        caller still receives it.
        """

        def append_all() -> int:
            # sequential so created_at order matches turn order
            for turn in turns:
                self.store.append_message(owner_id, conversation_id, turn.role, turn.content)
            return len(turns)

        cache_result, durable_result = await asyncio.gather(
            self.cache.append_turns(owner_id, conversation_id, turns),
            asyncio.to_thread(append_all),
            return_exceptions=True,
        )
        if isinstance(cache_result, BaseException):
            logger.error(
                "chat_persist_failed",
                target="cache",
                conversation_id=conversation_id,
                error_type=type(cache_result).__name__,
            )
        elif not isinstance(cache_result, Ok):
            logger.info(
                "chat_cache_write_skipped",
                conversation_id=conversation_id,
                reason=cache_result.reason,
            )
        if isinstance(durable_result, BaseException):
            logger.error(
                "chat_persist_failed",
                target="durable",
                conversation_id=conversation_id,
                error_type=type(durable_result).__name__,
            )

    async def list_conversations(self, owner_id: str) -> List[ConversationSummary]:
        records = await asyncio.to_thread(self.store.query_messages, owner_id)
        return summarize_conversations(records)

    async def list_messages(
        self, owner_id: str, conversation_id: str, *, limit: Optional[int] = None
    ) -> List[StoredMessageRecord]:
        return await asyncio.to_thread(
            self.store.query_messages,
            owner_id,
            conversation_id=conversation_id,
            limit=limit,
        )

    async def delete_conversation(self, owner_id: str, conversation_id: str) -> int:
        """Delete every record of one conversation by its exact key.

        Records appended after the initial read survive; a repeat delete
        removes them.
        """
        records = await asyncio.to_thread(
            self.store.query_messages, owner_id, conversation_id=conversation_id
        )
        semaphore = asyncio.Semaphore(self.delete_concurrency)

        async def delete_one(record: StoredMessageRecord) -> bool:
            async with semaphore:
                return await asyncio.to_thread(
                    self.store.delete_message, owner_id, record.created_at
                )

        results = await asyncio.gather(*(delete_one(r) for r in records))
        deleted = sum(1 for removed in results if removed)

        cache_result = await self.cache.delete_conversation(owner_id, conversation_id)
        logger.info(
            "chat_conversation_deleted",
            conversation_id=conversation_id,
            deleted=deleted,
            cache_cleared=isinstance(cache_result, Ok) and cache_result.value,
        )
        return deleted
