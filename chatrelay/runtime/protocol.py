from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable


class EventKind(StrEnum):
    USER_MESSAGE_ADDED = "user_message_added"
    ASSISTANT_RESPONSE_STARTED = "assistant_response_started"
    ASSISTANT_RESPONSE_APPENDED = "assistant_response_appended"
    ASSISTANT_RESPONSE_FINALIZED = "assistant_response_finalized"

    TOOL_APPROVAL_PROPOSED = "tool_approval_proposed"
    TOOL_APPROVAL_RESOLVED = "tool_approval_resolved"
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_COMPLETED = "tool_call_completed"

    TURN_CANCELLED = "turn_cancelled"
    TURN_ERROR = "turn_error"


@dataclass(frozen=True, slots=True)
class UIEvent:
    """
    A single notification for the presentation layer.

    `message_id` correlates every event of one user turn (user message, streamed reply,
    tool activity) so a UI can group them under one bubble.
    """

    kind: EventKind
    message_id: str
    turn_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    timestamp: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message_id": self.message_id,
            "turn_id": self.turn_id,
            "payload": dict(self.payload),
            "sequence": int(self.sequence),
            "timestamp": int(self.timestamp),
        }


@runtime_checkable
class EventSink(Protocol):
    """Receives UI events emitted by the turn engine (ordered, synchronous)."""

    def publish(self, event: UIEvent) -> None: ...
