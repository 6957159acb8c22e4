"""Builds the exact message list sent to the model provider.

The assembler is a pure transformation: it never performs I/O. History is
supplied by the caller from the session cache (or durable store), new turns
come from the live request.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

from carechat.storage.models import AttachmentRef, ChatTurn

TRUNCATION_MARKER = "…"

_IMAGE_DATA_URL = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,[A-Za-z0-9+/=\s]+$")


@dataclass(frozen=True)
class TextTurn:
    role: str
    content: str

    def to_payload(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class MultiPartTurn:
    role: str
    text: str
    image_urls: Tuple[str, ...] = field(default_factory=tuple)

    def to_payload(self) -> dict:
        parts: List[dict] = [{"type": "text", "text": self.text}]
        parts.extend(
            {"type": "image_url", "image_url": {"url": url}} for url in self.image_urls
        )
        return {"role": self.role, "content": parts}


Turn = Union[TextTurn, MultiPartTurn]


def eligible_images(attachments: Sequence[AttachmentRef], limit: int) -> List[str]:
    """Inline image payloads that may be forwarded, capped at ``limit``."""
    urls: List[str] = []
    for attachment in list(attachments)[: max(limit, 0)]:
        if attachment.type != "image" or not attachment.data_url:
            continue
        if not _IMAGE_DATA_URL.match(attachment.data_url):
            continue
        urls.append(attachment.data_url)
    return urls


def truncate(content: str, char_limit: int) -> str:
    if len(content) <= char_limit:
        return content
    return content[: max(char_limit - len(TRUNCATION_MARKER), 0)] + TRUNCATION_MARKER


def compact(turns: Sequence[ChatTurn], window: int, char_limit: int) -> List[ChatTurn]:
    """Keep the last ``window`` turns, each at most ``char_limit`` characters.

    Idempotent: a list already within both bounds comes back unchanged.
    """
    kept = list(turns)[-window:] if window > 0 else []
    return [ChatTurn(role=t.role, content=truncate(t.content, char_limit)) for t in kept]


def bind_attachments(turns: Sequence[ChatTurn], image_urls: Sequence[str]) -> List[Turn]:
    if not image_urls:
        return [TextTurn(role=t.role, content=t.content) for t in turns]
    target = None
    for index in range(len(turns) - 1, -1, -1):
        if turns[index].role == "user":
            target = index
            break
    bound: List[Turn] = []
    for index, turn in enumerate(turns):
        if index == target:
            bound.append(
                MultiPartTurn(role=turn.role, text=turn.content, image_urls=tuple(image_urls))
            )
        else:
            bound.append(TextTurn(role=turn.role, content=turn.content))
    return bound


class ContextAssembler:
    def __init__(
        self,
        *,
        system_prompt: Optional[str] = None,
        window: int = 20,
        char_limit: int = 4000,
        max_attachments: int = 4,
    ) -> None:
        self.system_prompt = system_prompt
        self.window = window
        self.char_limit = char_limit
        self.max_attachments = max_attachments

    @classmethod
    def from_settings(cls, settings) -> "ContextAssembler":
        return cls(
            system_prompt=settings.ai_system_prompt,
            window=settings.context_window_messages,
            char_limit=settings.message_char_limit,
            max_attachments=settings.max_attachments,
        )

    def assemble(
        self,
        new_turns: Sequence[ChatTurn],
        *,
        cached_history: Sequence[ChatTurn] = (),
        durable_history: Sequence[ChatTurn] = (),
        attachments: Sequence[AttachmentRef] = (),
    ) -> List[Turn]:
        """Order, compact and bind attachments.

        ``durable_history`` only stands in when the cache had nothing for this
        conversation.
        """
        history = list(cached_history) if cached_history else list(durable_history)
        # The window counts conversation turns only; the system prompt is pinned.
        compacted = compact(history + list(new_turns), self.window, self.char_limit)
        if self.system_prompt:
            compacted.insert(0, ChatTurn(role="system", content=self.system_prompt))
        return bind_attachments(compacted, eligible_images(attachments, self.max_attachments))
