from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from pydantic import ValidationError

from carechat.api.schemas import (
    ChatRequest,
    ChatResponse,
    ConversationListResponse,
    ConversationMessagesResponse,
    ConversationSummary,
    DeleteConversationResponse,
    StoredMessage,
)
from carechat.logging import get_logger
from carechat.service.auth import CallerIdentity
from carechat.service.errors import BadRequestError
from carechat.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

MISSING_BODY_MESSAGE = "Missing request body."
EMPTY_MESSAGES_MESSAGE = "Request must include messages."
INVALID_BODY_MESSAGE = "Invalid request body."
MAX_MESSAGES_LIMIT = 500


async def get_caller(authorization: Optional[str] = Header(None)) -> CallerIdentity:
    runtime = get_runtime()
    return await runtime.gate.verify(authorization)


async def _parse_chat_request(request: Request) -> ChatRequest:
    raw = await request.body()
    if not raw or not raw.strip():
        raise BadRequestError(MISSING_BODY_MESSAGE)
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise BadRequestError(INVALID_BODY_MESSAGE) from None
    if not isinstance(payload, dict):
        raise BadRequestError(INVALID_BODY_MESSAGE)
    if not payload.get("messages"):
        raise BadRequestError(EMPTY_MESSAGES_MESSAGE)
    try:
        return ChatRequest.model_validate(payload)
    except ValidationError as exc:
        logger.info(
            "chat_request_invalid",
            error_count=exc.error_count(),
            fields=[".".join(str(p) for p in err["loc"]) for err in exc.errors()],
        )
        raise BadRequestError(INVALID_BODY_MESSAGE) from None


@router.options("/chat", status_code=204)
async def chat_preflight() -> Response:
    return Response(status_code=204)


@router.post("/chat", response_model=ChatResponse)
async def send_message(request: Request, caller: CallerIdentity = Depends(get_caller)):
    body = await _parse_chat_request(request)
    runtime = get_runtime()
    reply = await runtime.chat.send(
        caller.subject,
        [message.to_turn() for message in body.messages],
        conversation_id=body.conversation_id,
        attachments=[attachment.to_ref() for attachment in body.attachments],
        persist=body.persist,
    )
    return ChatResponse(message=reply.message, conversation_id=reply.conversation_id)


@router.get("/chat")
async def list_chat(
    conversation_id: Optional[str] = Query(None, alias="conversationId", max_length=128),
    limit: Optional[int] = Query(None, ge=1, le=MAX_MESSAGES_LIMIT),
    caller: CallerIdentity = Depends(get_caller),
):
    runtime = get_runtime()
    if not conversation_id:
        summaries = await runtime.chat.list_conversations(caller.subject)
        return ConversationListResponse(
            conversations=[
                ConversationSummary(
                    conversation_id=s.conversation_id,
                    created_at=s.created_at,
                    updated_at=s.updated_at,
                    last_message=s.last_message,
                    message_count=s.message_count,
                )
                for s in summaries
            ]
        )
    records = await runtime.chat.list_messages(caller.subject, conversation_id, limit=limit)
    return ConversationMessagesResponse(
        conversation_id=conversation_id,
        messages=[
            StoredMessage(role=r.role, content=r.content, created_at=r.created_at)
            for r in records
        ],
    )


@router.delete("/chat", response_model=DeleteConversationResponse)
async def delete_chat(
    conversation_id: Optional[str] = Query(None, alias="conversationId", max_length=128),
    caller: CallerIdentity = Depends(get_caller),
):
    if not conversation_id:
        raise BadRequestError("conversationId is required.")
    runtime = get_runtime()
    deleted = await runtime.chat.delete_conversation(caller.subject, conversation_id)
    return DeleteConversationResponse(deleted=deleted, conversation_id=conversation_id)
