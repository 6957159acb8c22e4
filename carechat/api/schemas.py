from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from carechat.storage.models import AttachmentRef, ChatTurn

# Inline image payloads are base64 data URLs; 10 MB of text per attachment.
MAX_DATA_URL_LENGTH = 10 * 1024 * 1024
MAX_MESSAGES_PER_REQUEST = 200


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)


class ErrorBody(BaseModel):
    error: str


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str = Field(..., max_length=100000)  # 100KB max to prevent DoS

    def to_turn(self) -> ChatTurn:
        return ChatTurn(role=self.role, content=self.content)


class ChatAttachment(_CamelModel):
    type: Literal["image", "video"]
    filename: str = Field(..., max_length=255)
    mime_type: str = Field(..., alias="mimeType", max_length=128)
    data_url: Optional[str] = Field(None, alias="dataUrl", max_length=MAX_DATA_URL_LENGTH)
    storage_key: Optional[str] = Field(None, alias="storageKey", max_length=1024)

    def to_ref(self) -> AttachmentRef:
        return AttachmentRef(
            type=self.type,
            filename=self.filename,
            mime_type=self.mime_type,
            data_url=self.data_url,
            storage_key=self.storage_key,
        )


class ChatRequest(_CamelModel):
    conversation_id: Optional[str] = Field(None, alias="conversationId", max_length=128)
    messages: List[ChatMessage] = Field(
        default_factory=list, max_length=MAX_MESSAGES_PER_REQUEST
    )
    attachments: List[ChatAttachment] = Field(default_factory=list, max_length=32)
    persist: bool = True


class ChatResponse(_CamelModel):
    message: str
    conversation_id: str = Field(..., alias="conversationId")


class ConversationSummary(_CamelModel):
    conversation_id: str = Field(..., alias="conversationId")
    created_at: str = Field(..., alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt")
    last_message: Optional[str] = Field(None, alias="lastMessage")
    message_count: int = Field(..., alias="messageCount")


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummary]


class StoredMessage(_CamelModel):
    role: str
    content: str
    created_at: str = Field(..., alias="createdAt")


class ConversationMessagesResponse(_CamelModel):
    conversation_id: str = Field(..., alias="conversationId")
    messages: List[StoredMessage]


class DeleteConversationResponse(_CamelModel):
    deleted: int
    conversation_id: str = Field(..., alias="conversationId")
