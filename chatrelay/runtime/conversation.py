from __future__ import annotations

from typing import Iterable

from .types import ContentBlock, Message, MessageRole, ToolResultBlock


class ConversationState:
    """
    Ordered message history for one conversation.

    Only the turn engine mutates it. Readers get copies.
    """

    def __init__(self, messages: Iterable[Message] | None = None) -> None:
        self._messages: list[Message] = list(messages or [])

    @property
    def history(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def append_user(self, text: str) -> Message:
        msg = Message(role=MessageRole.USER, content=text)
        self._messages.append(msg)
        return msg

    def append_assistant(self, blocks: Iterable[ContentBlock]) -> Message:
        msg = Message(role=MessageRole.ASSISTANT, content=tuple(blocks))
        self._messages.append(msg)
        return msg

    def append_tool_results(self, results: Iterable[ToolResultBlock]) -> Message:
        msg = Message(role=MessageRole.USER, content=tuple(results))
        self._messages.append(msg)
        return msg

    def discard_empty_assistant_tail(self) -> bool:
        last = self.last()
        if last is not None and last.role is MessageRole.ASSISTANT and last.is_empty:
            self._messages.pop()
            return True
        return False

    def clear(self) -> None:
        self._messages.clear()
