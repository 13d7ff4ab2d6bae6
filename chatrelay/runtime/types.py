from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Union, assert_never


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class BlockType(StrEnum):
    TEXT = "text"
    TOOL_INVOCATION = "tool_use"
    TOOL_RESULT = "tool_result"


@dataclass(frozen=True, slots=True)
class TextBlock:
    text: str


@dataclass(frozen=True, slots=True)
class ToolInvocationBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolResultBlock:
    invocation_id: str
    content: str
    is_error: bool = False


ContentBlock = Union[TextBlock, ToolInvocationBlock, ToolResultBlock]


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": BlockType.TEXT.value, "text": block.text}
    if isinstance(block, ToolInvocationBlock):
        return {"type": BlockType.TOOL_INVOCATION.value, "id": block.id, "name": block.name, "input": dict(block.input)}
    if isinstance(block, ToolResultBlock):
        out: dict[str, Any] = {
            "type": BlockType.TOOL_RESULT.value,
            "tool_use_id": block.invocation_id,
            "content": block.content,
        }
        if block.is_error:
            out["is_error"] = True
        return out
    assert_never(block)


def block_from_dict(raw: dict[str, Any]) -> ContentBlock:
    kind = BlockType(str(raw.get("type") or ""))
    if kind is BlockType.TEXT:
        return TextBlock(text=str(raw.get("text") or ""))
    if kind is BlockType.TOOL_INVOCATION:
        args = raw.get("input")
        return ToolInvocationBlock(
            id=str(raw["id"]),
            name=str(raw["name"]),
            input=dict(args) if isinstance(args, dict) else {},
        )
    if kind is BlockType.TOOL_RESULT:
        return ToolResultBlock(
            invocation_id=str(raw["tool_use_id"]),
            content=str(raw.get("content") or ""),
            is_error=bool(raw.get("is_error", False)),
        )
    assert_never(kind)


@dataclass(frozen=True, slots=True)
class Message:
    role: MessageRole
    content: str | tuple[ContentBlock, ...]

    @property
    def blocks(self) -> tuple[ContentBlock, ...]:
        if isinstance(self.content, str):
            return (TextBlock(text=self.content),) if self.content else ()
        return self.content

    @property
    def is_empty(self) -> bool:
        return not self.blocks

    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    def tool_invocations(self) -> list[ToolInvocationBlock]:
        return [b for b in self.blocks if isinstance(b, ToolInvocationBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role.value, "content": self.content}
        return {"role": self.role.value, "content": [block_to_dict(b) for b in self.content]}

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "Message":
        role = MessageRole(str(raw["role"]))
        content = raw.get("content")
        if isinstance(content, str):
            return Message(role=role, content=content)
        blocks: list[ContentBlock] = []
        if isinstance(content, list):
            for item in content:
                if isinstance(item, dict):
                    blocks.append(block_from_dict(item))
        return Message(role=role, content=tuple(blocks))


# Wire-level stream events. `index` identifies the block within one model reply.


@dataclass(frozen=True, slots=True)
class BlockStart:
    index: int
    block_type: BlockType
    invocation_id: str | None = None
    name: str | None = None


@dataclass(frozen=True, slots=True)
class TextDelta:
    index: int
    text: str


@dataclass(frozen=True, slots=True)
class ArgumentsDelta:
    index: int
    partial_json: str


@dataclass(frozen=True, slots=True)
class BlockStop:
    index: int


@dataclass(frozen=True, slots=True)
class TurnStop:
    stop_reason: str | None = None


StreamEvent = Union[BlockStart, TextDelta, ArgumentsDelta, BlockStop, TurnStop]


class TurnStatus(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"
    # Returned to callers whose send was refused because a turn was already running.
    REJECTED = "rejected"


TERMINAL_TURN_STATUSES: frozenset[TurnStatus] = frozenset(
    {TurnStatus.DONE, TurnStatus.CANCELLED, TurnStatus.FAILED, TurnStatus.REJECTED}
)


@dataclass(frozen=True, slots=True)
class TurnResult:
    status: TurnStatus
    turn_id: str | None
    message_id: str | None = None
    iterations: int = 0
    text: str | None = None
    error: str | None = None
    error_code: str | None = None
