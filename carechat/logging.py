from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import Any

import structlog

from carechat.config import Settings

# Set per request by the correlation middleware in app.py.
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Chat content is health information and never belongs in logs.
_PHI_KEYS = frozenset({"content", "message", "messages", "prompt", "reply", "data_url"})
_SECRET_KEYS = ("password", "secret", "token", "api_key", "authorization", "encryption_key")


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind the caller's request id, or a fresh uuid4, to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _stamp_request(logger: Any, method_name: str, event_dict: dict) -> dict:
    cid = correlation_id_var.get()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Replace chat content with its length and mask credentials."""
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in _PHI_KEYS:
            value = event_dict.pop(key)
            if isinstance(value, (str, list, tuple)):
                event_dict[f"{key}_len"] = len(value)
        elif any(marker in lowered for marker in _SECRET_KEYS):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 4:
                event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def configure_logging(settings: Settings) -> None:
    """Route structlog output according to ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE``."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _stamp_request,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if settings.log_dev_mode or not settings.log_json:
        processors.append(structlog.dev.ConsoleRenderer(colors=settings.log_dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    level = logging.getLevelName(settings.log_level.upper())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            level if isinstance(level, int) else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(Settings.from_env())


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
