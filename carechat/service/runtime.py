from __future__ import annotations

import threading
from typing import Optional

from carechat.config import get_settings, reset_settings_cache
from carechat.logging import get_logger
from carechat.service.auth import AccessGate
from carechat.service.chat import ChatService, MessageStore
from carechat.service.context import ContextAssembler
from carechat.service.llm import ModelCaller
from carechat.service.origin import OriginPolicy
from carechat.storage.memory import MemoryMessageStore
from carechat.storage.postgres import PostgresMessageStore
from carechat.storage.redis_cache import CacheHealth, SessionCache

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            redis_enabled=self.settings.redis_enabled,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: MessageStore = (
                MemoryMessageStore(ttl_days=self.settings.chat_record_ttl_days)
                if self.settings.use_memory_store
                else PostgresMessageStore(
                    self.settings.database_url,
                    table_name=self.settings.chat_table_name,
                    ttl_days=self.settings.chat_record_ttl_days,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache_health = CacheHealth()
        self.cache = SessionCache.from_settings(self.settings, health=self.cache_health)
        self.origin_policy = OriginPolicy(self.settings.cors_allowed_origins)
        self.gate = AccessGate.from_settings(self.settings)
        self.assembler = ContextAssembler.from_settings(self.settings)
        self.model = ModelCaller.from_settings(self.settings)
        self.chat = ChatService(
            self.store,
            self.cache,
            self.assembler,
            self.model,
            history_limit=self.settings.redis_message_limit,
            delete_concurrency=self.settings.delete_concurrency,
        )
        logger.info(
            "runtime_init_completed",
            cache_available=self.cache.available,
            identity_configured=bool(self.settings.issuer_url),
            fallback_model=self.model.has_fallback,
        )

    async def close(self) -> None:
        await self.cache.close()
        await self.model.close()
        try:
            self.store.close()
        except Exception as exc:
            logger.warning("runtime_store_close_failed", error=str(exc))


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
