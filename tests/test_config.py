"""Tests for environment-driven settings and log redaction."""

import pytest
import structlog
from pydantic import ValidationError

from carechat.config import Settings, get_settings, reset_settings_cache
from carechat.logging import _redact_pii, configure_logging


class TestSettings:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("XAI_MODEL", "grok-test")
        monkeypatch.setenv("XAI_PRIMARY_TIMEOUT_MS", "1500")
        monkeypatch.setenv("CORS_ALLOWED_ORIGINS", "https://a.example, https://b.example,,")
        monkeypatch.setenv("REDIS_TLS", "true")
        settings = Settings.from_env()
        assert settings.xai_model == "grok-test"
        assert settings.primary_timeout_ms == 1500
        assert settings.cors_allowed_origins == ["https://a.example", "https://b.example"]
        assert settings.redis_tls is True

    def test_issuer_derived_from_pool(self):
        settings = Settings(aws_region="eu-west-1", cognito_user_pool_id="eu-west-1_abc")
        assert settings.issuer_url == "https://cognito-idp.eu-west-1.amazonaws.com/eu-west-1_abc"

    def test_issuer_override_wins(self):
        settings = Settings(
            cognito_user_pool_id="pool", identity_issuer_url="https://issuer.example/x/"
        )
        assert settings.issuer_url == "https://issuer.example/x"

    def test_no_issuer_configured(self):
        assert Settings(identity_issuer_url="  ").issuer_url is None

    def test_encryption_key_length(self):
        assert not Settings(redis_encryption_key="short").cache_encryption_ready
        assert Settings(redis_encryption_key="k" * 32).cache_encryption_ready

    @pytest.mark.parametrize("name", ["chat-messages", "1table", "drop table;"])
    def test_table_name_must_be_identifier(self, name):
        with pytest.raises(ValidationError):
            Settings(chat_table_name=name)

    def test_get_settings_is_cached(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        monkeypatch.setenv("XAI_MODEL", "changed")
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().xai_model == "changed"
        reset_settings_cache()


class TestRedaction:
    def test_chat_content_dropped(self):
        event = _redact_pii(None, "info", {"event": "x", "content": "my diagnosis", "messages": [1, 2]})
        assert "content" not in event
        assert event["content_len"] == len("my diagnosis")
        assert event["messages_len"] == 2

    def test_secrets_masked(self):
        event = _redact_pii(None, "info", {"event": "x", "api_key": "sk-1234567890"})
        assert event["api_key"] == "sk***90"


class TestLoggingSettings:
    def test_log_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("LOG_JSON", "false")
        settings = Settings.from_env()
        assert settings.log_level == "debug"
        assert settings.log_json is False

    def test_configure_logging_follows_settings(self):
        try:
            configure_logging(Settings(log_json=False))
            assert isinstance(structlog.get_config()["processors"][-1], structlog.dev.ConsoleRenderer)
            configure_logging(Settings(log_level="not-a-level"))
            assert isinstance(structlog.get_config()["processors"][-1], structlog.processors.JSONRenderer)
        finally:
            configure_logging(Settings.from_env())
