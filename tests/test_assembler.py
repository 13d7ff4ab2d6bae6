"""Tests for stream reduction into content blocks."""

from __future__ import annotations

import pytest

from chatrelay.runtime.assembler import ContentAssembler, parse_tool_arguments, reduce_stream
from chatrelay.runtime.types import (
    ArgumentsDelta,
    BlockStart,
    BlockStop,
    BlockType,
    TextBlock,
    TextDelta,
    ToolInvocationBlock,
    TurnStop,
)

from conftest import text_reply, tool_reply


async def _aiter(events):
    for e in events:
        yield e


@pytest.mark.asyncio
async def test_text_deltas_are_forwarded_as_they_arrive():
    seen: list[str] = []
    blocks = await reduce_stream(_aiter(text_reply("a", "b", "c")), on_text=seen.append)

    assert seen == ["a", "b", "c"]
    assert blocks == [TextBlock(text="abc")]


@pytest.mark.asyncio
async def test_tool_arguments_are_joined_and_parsed():
    blocks = await reduce_stream(_aiter(tool_reply(("call_1", "read_file", '{"path": "src/app.py"}'), text="Let me look.")))

    assert blocks == [
        TextBlock(text="Let me look."),
        ToolInvocationBlock(id="call_1", name="read_file", input={"path": "src/app.py"}),
    ]


@pytest.mark.asyncio
async def test_argument_fragments_are_not_forwarded():
    seen: list[str] = []
    await reduce_stream(_aiter(tool_reply(("call_1", "list_files", '{"maxResults": 5}'))), on_text=seen.append)
    assert seen == []


@pytest.mark.asyncio
async def test_malformed_arguments_become_text_block():
    seen: list[str] = []
    blocks = await reduce_stream(_aiter(tool_reply(("call_9", "read_file", '{"path": '))), on_text=seen.append)

    assert len(blocks) == 1
    assert isinstance(blocks[0], TextBlock)
    assert blocks[0].text.startswith("[Malformed arguments for tool 'read_file' (id call_9):")
    assert seen == [blocks[0].text]


@pytest.mark.asyncio
async def test_non_object_arguments_are_malformed():
    blocks = await reduce_stream(_aiter(tool_reply(("call_2", "list_files", "[1, 2]"))))
    assert isinstance(blocks[0], TextBlock)
    assert "expected a JSON object" in blocks[0].text


@pytest.mark.asyncio
async def test_events_after_turn_stop_are_ignored():
    events = text_reply("done") + [
        BlockStart(index=5, block_type=BlockType.TEXT),
        TextDelta(index=5, text="late"),
        BlockStop(index=5),
    ]
    seen: list[str] = []
    blocks = await reduce_stream(_aiter(events), on_text=seen.append)

    assert blocks == [TextBlock(text="done")]
    assert seen == ["done"]


@pytest.mark.asyncio
async def test_unterminated_blocks_are_finalized_at_stream_end():
    events = [
        BlockStart(index=0, block_type=BlockType.TEXT),
        TextDelta(index=0, text="cut "),
        TextDelta(index=0, text="off"),
    ]
    blocks = await reduce_stream(_aiter(events))
    assert blocks == [TextBlock(text="cut off")]


def test_block_order_follows_start_order():
    asm = ContentAssembler()
    asm.feed(BlockStart(index=0, block_type=BlockType.TOOL_INVOCATION, invocation_id="a", name="list_files"))
    asm.feed(BlockStart(index=1, block_type=BlockType.TOOL_INVOCATION, invocation_id="b", name="read_file"))
    asm.feed(ArgumentsDelta(index=1, partial_json='{"path": "x"}'))
    asm.feed(BlockStop(index=1))
    asm.feed(BlockStop(index=0))
    assert asm.feed(TurnStop()) is True

    blocks = asm.finish()
    assert [b.id for b in blocks] == ["a", "b"]
    assert blocks[0].input == {}


def test_empty_text_block_is_dropped_and_stray_deltas_ignored():
    asm = ContentAssembler()
    asm.feed(BlockStart(index=0, block_type=BlockType.TEXT))
    asm.feed(TextDelta(index=3, text="orphan"))
    asm.feed(ArgumentsDelta(index=0, partial_json="{}"))
    asm.feed(BlockStop(index=0))
    asm.feed(BlockStop(index=7))
    assert asm.finish() == []


def test_tool_block_without_name_is_reported():
    asm = ContentAssembler()
    asm.feed(BlockStart(index=0, block_type=BlockType.TOOL_INVOCATION, invocation_id="c1", name=None))
    asm.feed(BlockStop(index=0))
    blocks = asm.finish()
    assert isinstance(blocks[0], TextBlock)
    assert "missing tool id or name" in blocks[0].text


def test_parse_tool_arguments():
    assert parse_tool_arguments("") == {}
    assert parse_tool_arguments("  ") == {}
    assert parse_tool_arguments('{"a": 1}') == {"a": 1}
    with pytest.raises(ValueError):
        parse_tool_arguments('"text"')
    with pytest.raises(ValueError):
        parse_tool_arguments("{")


@pytest.mark.asyncio
async def test_reduce_closes_the_stream():
    closed: list[bool] = []

    async def gen():
        try:
            for e in text_reply("x"):
                yield e
            yield TextDelta(index=0, text="never")
        finally:
            closed.append(True)

    await ContentAssembler().reduce(gen())
    assert closed == [True]
