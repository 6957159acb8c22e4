from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

# REDIS_ENCRYPTION_KEY below this length disables the session cache.
MIN_ENCRYPTION_KEY_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the chat handler."""

    # Identity provider
    aws_region: str = env_field("us-east-1", "AWS_REGION")
    cognito_user_pool_id: str | None = env_field(None, "COGNITO_USER_POOL_ID")
    identity_issuer_url: str | None = env_field(
        None,
        "IDENTITY_ISSUER_URL",
        description="Overrides the issuer derived from region and user pool id",
    )
    jwks_cache_seconds: int = env_field(3600, "JWKS_CACHE_SECONDS", ge=0)
    jwks_refresh_cooldown_seconds: int = env_field(30, "JWKS_REFRESH_COOLDOWN_SECONDS", ge=0)

    # Upstream model provider
    xai_api_url: str = env_field("https://api.x.ai/v1", "XAI_API_URL")
    xai_api_key: str | None = env_field(None, "XAI_API_KEY")
    xai_model: str = env_field("grok-4", "XAI_MODEL")
    xai_fallback_model: str | None = env_field(None, "XAI_FALLBACK_MODEL")
    primary_timeout_ms: int = env_field(20000, "XAI_PRIMARY_TIMEOUT_MS", gt=0)
    fallback_timeout_ms: int = env_field(8000, "XAI_FALLBACK_TIMEOUT_MS", gt=0)

    # Context assembly
    context_window_messages: int = env_field(20, "CONTEXT_WINDOW_MESSAGES", ge=1)
    message_char_limit: int = env_field(4000, "MESSAGE_CHAR_LIMIT", ge=1)
    max_attachments: int = env_field(4, "MAX_ATTACHMENTS", ge=0)
    ai_system_prompt: str | None = env_field(None, "AI_SYSTEM_PROMPT")

    # Session cache
    redis_enabled: bool = env_field(True, "REDIS_ENABLED")
    redis_host: str | None = env_field(None, "REDIS_HOST")
    redis_port: int = env_field(6379, "REDIS_PORT")
    redis_username: str | None = env_field(None, "REDIS_USERNAME")
    redis_password: str | None = env_field(None, "REDIS_PASSWORD")
    redis_tls: bool = env_field(False, "REDIS_TLS")
    redis_encryption_key: str | None = env_field(None, "REDIS_ENCRYPTION_KEY")
    redis_ttl_seconds: int = env_field(7 * 24 * 3600, "REDIS_TTL_SECONDS", gt=0)
    redis_connect_timeout_ms: int = env_field(300, "REDIS_CONNECT_TIMEOUT_MS", gt=0)
    redis_message_limit: int = env_field(20, "REDIS_MESSAGE_LIMIT", ge=1)

    # Durable store
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    database_url: str = env_field(
        "postgresql://localhost:5432/carechat", "DATABASE_URL"
    )
    chat_table_name: str = env_field(
        "chat_messages", "CHAT_TABLE_NAME", pattern=r"^[A-Za-z_][A-Za-z0-9_]{0,62}$"
    )
    chat_record_ttl_days: int = env_field(0, "CHAT_RECORD_TTL_DAYS", ge=0)
    delete_concurrency: int = env_field(8, "DELETE_CONCURRENCY", ge=1)

    # Logging
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

    # HTTP surface
    cors_allowed_origins: List[str] = env_field(
        [],
        "CORS_ALLOWED_ORIGINS",
        description="Comma-separated list of browser origins allowed to call /chat",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator(
        "cognito_user_pool_id",
        "identity_issuer_url",
        "xai_api_key",
        "xai_fallback_model",
        "ai_system_prompt",
        "redis_host",
        "redis_username",
        "redis_password",
        "redis_encryption_key",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def issuer_url(self) -> str | None:
        if self.identity_issuer_url:
            return self.identity_issuer_url.rstrip("/")
        if not self.cognito_user_pool_id:
            return None
        return (
            f"https://cognito-idp.{self.aws_region}.amazonaws.com/"
            f"{self.cognito_user_pool_id}"
        )

    @property
    def cache_encryption_ready(self) -> bool:
        key = self.redis_encryption_key or ""
        return len(key) >= MIN_ENCRYPTION_KEY_LENGTH


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
