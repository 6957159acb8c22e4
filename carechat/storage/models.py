from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

ROLES = ("system", "user", "assistant")


@dataclass(frozen=True)
class ChatTurn:
    """One plain-text message as stored in the session cache and sent upstream."""

    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, payload: dict) -> "ChatTurn":
        role = payload.get("role")
        content = payload.get("content")
        if role not in ROLES or not isinstance(content, str):
            raise ValueError("invalid chat turn")
        return cls(role=role, content=content)


@dataclass(frozen=True)
class AttachmentRef:
    type: str
    filename: str
    mime_type: str
    data_url: Optional[str] = None
    storage_key: Optional[str] = None


@dataclass(frozen=True)
class StoredMessageRecord:
    owner_id: str
    created_at: str
    conversation_id: str
    role: str
    content: str
    ttl: Optional[int] = None

    def to_turn(self) -> ChatTurn:
        return ChatTurn(role=self.role, content=self.content)


@dataclass
class ConversationSummary:
    conversation_id: str
    created_at: str
    updated_at: str
    last_message: Optional[str]
    message_count: int
