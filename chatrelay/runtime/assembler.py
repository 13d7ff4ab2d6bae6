from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, assert_never

from .types import (
    ArgumentsDelta,
    BlockStart,
    BlockStop,
    BlockType,
    ContentBlock,
    StreamEvent,
    TextBlock,
    TextDelta,
    ToolInvocationBlock,
    TurnStop,
)

logger = logging.getLogger(__name__)

TextCallback = Callable[[str], None]


@dataclass(slots=True)
class _OpenBlock:
    block_type: BlockType
    invocation_id: str | None = None
    name: str | None = None
    parts: list[str] = field(default_factory=list)


def _malformed_arguments_text(name: str, invocation_id: str, error: str) -> str:
    return f"[Malformed arguments for tool '{name}' (id {invocation_id}): {error}]"


def parse_tool_arguments(raw: str) -> dict:
    """
    Parse a complete tool-argument buffer.

    An empty buffer means "no arguments". Anything that is not a JSON object raises ValueError.
    """

    if not raw.strip():
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
    return parsed


class ContentAssembler:
    """
    Reduce one streamed model reply into content blocks.

    Text deltas are forwarded to `on_text` as they arrive. Tool-argument fragments are
    buffered until their block stops and then parsed; a malformed buffer becomes a visible
    text block instead of an invocation.
    """

    def __init__(self, *, on_text: TextCallback | None = None) -> None:
        self._on_text = on_text
        self._open: dict[int, _OpenBlock] = {}
        # Block order follows block-start order, not block-stop order.
        self._slots: list[int] = []
        self._done: dict[int, ContentBlock | None] = {}

    async def reduce(self, stream: AsyncIterator[StreamEvent]) -> list[ContentBlock]:
        try:
            async for event in stream:
                if self.feed(event):
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return self.finish()

    def feed(self, event: StreamEvent) -> bool:
        """Apply one event. Returns True once the turn has stopped."""

        if isinstance(event, BlockStart):
            if event.index in self._open or event.index in self._done:
                logger.warning("Duplicate block start for index %s; ignoring", event.index)
                return False
            self._open[event.index] = _OpenBlock(
                block_type=event.block_type,
                invocation_id=event.invocation_id,
                name=event.name,
            )
            self._slots.append(event.index)
            return False
        if isinstance(event, TextDelta):
            block = self._open.get(event.index)
            if block is None or block.block_type is not BlockType.TEXT:
                logger.warning("Text delta for unknown block index %s; ignoring", event.index)
                return False
            if event.text:
                block.parts.append(event.text)
                self._emit_text(event.text)
            return False
        if isinstance(event, ArgumentsDelta):
            block = self._open.get(event.index)
            if block is None or block.block_type is not BlockType.TOOL_INVOCATION:
                logger.warning("Arguments delta for unknown block index %s; ignoring", event.index)
                return False
            block.parts.append(event.partial_json)
            return False
        if isinstance(event, BlockStop):
            block = self._open.pop(event.index, None)
            if block is None:
                logger.warning("Block stop for unknown block index %s; ignoring", event.index)
                return False
            self._done[event.index] = self._finalize(block)
            return False
        if isinstance(event, TurnStop):
            return True
        assert_never(event)

    def finish(self) -> list[ContentBlock]:
        if self._open:
            logger.warning("Stream ended with %d unterminated block(s); finalizing them", len(self._open))
            for index, block in list(self._open.items()):
                self._done[index] = self._finalize(block)
            self._open.clear()
        out: list[ContentBlock] = []
        for index in self._slots:
            block = self._done.get(index)
            if block is not None:
                out.append(block)
        return out

    def _finalize(self, block: _OpenBlock) -> ContentBlock | None:
        raw = "".join(block.parts)
        if block.block_type is BlockType.TEXT:
            return TextBlock(text=raw) if raw else None
        if block.block_type is BlockType.TOOL_INVOCATION:
            invocation_id = block.invocation_id or ""
            name = block.name or ""
            if not invocation_id or not name:
                text = _malformed_arguments_text(name or "?", invocation_id or "?", "missing tool id or name")
                self._emit_text(text)
                return TextBlock(text=text)
            try:
                args = parse_tool_arguments(raw)
            except ValueError as e:
                # json.JSONDecodeError is a ValueError.
                text = _malformed_arguments_text(name, invocation_id, str(e))
                self._emit_text(text)
                return TextBlock(text=text)
            return ToolInvocationBlock(id=invocation_id, name=name, input=args)
        if block.block_type is BlockType.TOOL_RESULT:
            logger.warning("Model streamed a tool_result block; dropping it")
            return None
        assert_never(block.block_type)

    def _emit_text(self, text: str) -> None:
        if self._on_text is not None:
            self._on_text(text)


async def reduce_stream(
    stream: AsyncIterator[StreamEvent],
    *,
    on_text: TextCallback | None = None,
) -> list[ContentBlock]:
    return await ContentAssembler(on_text=on_text).reduce(stream)
