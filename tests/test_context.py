"""Tests for context assembly: ordering, compaction and attachment binding."""

from carechat.service.context import (
    TRUNCATION_MARKER,
    ContextAssembler,
    MultiPartTurn,
    TextTurn,
    compact,
    eligible_images,
)
from carechat.storage.models import AttachmentRef, ChatTurn

PNG = "data:image/png;base64,iVBORw0KGgo="


def _image(data_url=PNG, type_="image"):
    return AttachmentRef(type=type_, filename="scan.png", mime_type="image/png", data_url=data_url)


class TestOrdering:
    def test_system_prompt_then_history_then_new(self):
        assembler = ContextAssembler(system_prompt="Be kind.")
        turns = assembler.assemble(
            [ChatTurn("user", "new")],
            cached_history=[ChatTurn("user", "old"), ChatTurn("assistant", "old reply")],
        )
        assert [t.to_payload() for t in turns] == [
            {"role": "system", "content": "Be kind."},
            {"role": "user", "content": "old"},
            {"role": "assistant", "content": "old reply"},
            {"role": "user", "content": "new"},
        ]

    def test_no_system_prompt(self):
        turns = ContextAssembler().assemble([ChatTurn("user", "hi")])
        assert turns == [TextTurn("user", "hi")]

    def test_durable_history_used_when_cache_empty(self):
        turns = ContextAssembler().assemble(
            [ChatTurn("user", "new")],
            cached_history=[],
            durable_history=[ChatTurn("assistant", "from durable")],
        )
        assert [t.content for t in turns] == ["from durable", "new"]

    def test_cached_history_wins_over_durable(self):
        turns = ContextAssembler().assemble(
            [ChatTurn("user", "new")],
            cached_history=[ChatTurn("assistant", "from cache")],
            durable_history=[ChatTurn("assistant", "from durable")],
        )
        assert [t.content for t in turns] == ["from cache", "new"]


class TestCompaction:
    def test_keeps_last_window_messages(self):
        assembler = ContextAssembler(system_prompt="sys", window=3)
        history = [ChatTurn("user", f"m{i}") for i in range(10)]
        turns = assembler.assemble([ChatTurn("user", "latest")], cached_history=history)
        assert [t.content for t in turns] == ["sys", "m8", "m9", "latest"]

    def test_truncates_long_messages(self):
        assembler = ContextAssembler(char_limit=10)
        turns = assembler.assemble([ChatTurn("user", "x" * 50)])
        assert len(turns[0].content) == 10
        assert turns[0].content.endswith(TRUNCATION_MARKER)

    def test_short_messages_untouched(self):
        turns = compact([ChatTurn("user", "exactly10!")], window=5, char_limit=10)
        assert turns == [ChatTurn("user", "exactly10!")]

    def test_compaction_is_idempotent(self):
        turns = [ChatTurn("user", "y" * 40), ChatTurn("assistant", "short")] * 6
        once = compact(turns, window=5, char_limit=12)
        assert compact(once, window=5, char_limit=12) == once
        assert len(once) == 5


class TestAttachmentBinding:
    def test_images_bound_to_latest_user_turn(self):
        assembler = ContextAssembler()
        turns = assembler.assemble(
            [ChatTurn("user", "first"), ChatTurn("assistant", "ok"), ChatTurn("user", "look")],
            attachments=[_image()],
        )
        assert isinstance(turns[2], MultiPartTurn)
        assert all(isinstance(t, TextTurn) for t in turns[:2])
        assert turns[2].to_payload() == {
            "role": "user",
            "content": [
                {"type": "text", "text": "look"},
                {"type": "image_url", "image_url": {"url": PNG}},
            ],
        }

    def test_no_eligible_images_keeps_plain_text(self):
        assembler = ContextAssembler()
        turns = assembler.assemble(
            [ChatTurn("user", "look")],
            attachments=[
                _image(type_="video", data_url="data:video/mp4;base64,AAAA"),
                _image(data_url=None),
                _image(data_url="https://cdn.example/scan.png"),
            ],
        )
        assert turns == [TextTurn("user", "look")]

    def test_attachment_cap(self):
        urls = eligible_images([_image() for _ in range(6)], limit=4)
        assert len(urls) == 4

    def test_zero_cap_disables_images(self):
        turns = ContextAssembler(max_attachments=0).assemble(
            [ChatTurn("user", "look")], attachments=[_image()]
        )
        assert turns == [TextTurn("user", "look")]

    def test_images_follow_truncated_text(self):
        assembler = ContextAssembler(char_limit=5)
        turns = assembler.assemble([ChatTurn("user", "describe this")], attachments=[_image()])
        assert turns[0].text == "desc" + TRUNCATION_MARKER
        assert turns[0].image_urls == (PNG,)
