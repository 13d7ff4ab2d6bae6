"""Tests for messages, blocks and conversation state."""

from __future__ import annotations

import pytest

from chatrelay.runtime.conversation import ConversationState
from chatrelay.runtime.types import (
    Message,
    MessageRole,
    TextBlock,
    ToolInvocationBlock,
    ToolResultBlock,
    block_from_dict,
    block_to_dict,
)


def test_message_from_dict_restores_blocks():
    raw = {
        "role": "assistant",
        "content": [
            {"type": "text", "text": "Reading."},
            {"type": "tool_use", "id": "call_1", "name": "read_file", "input": {"path": "a.py"}},
        ],
    }
    msg = Message.from_dict(raw)

    assert msg.role is MessageRole.ASSISTANT
    assert msg.text() == "Reading."
    assert msg.tool_invocations() == [ToolInvocationBlock(id="call_1", name="read_file", input={"path": "a.py"})]
    assert msg.to_dict() == raw


def test_string_content_message():
    msg = Message(role=MessageRole.USER, content="hello")
    assert msg.blocks == (TextBlock(text="hello"),)
    assert msg.to_dict() == {"role": "user", "content": "hello"}
    assert Message(role=MessageRole.USER, content="").is_empty


def test_tool_result_error_flag_only_when_set():
    ok = block_to_dict(ToolResultBlock(invocation_id="c", content="fine"))
    err = block_to_dict(ToolResultBlock(invocation_id="c", content="Error: x", is_error=True))

    assert "is_error" not in ok
    assert err["is_error"] is True
    assert block_from_dict(err) == ToolResultBlock(invocation_id="c", content="Error: x", is_error=True)


def test_unknown_block_type_is_rejected():
    with pytest.raises(ValueError):
        block_from_dict({"type": "image"})


def test_conversation_state_appends_and_copies():
    state = ConversationState()
    state.append_user("hi")
    state.append_assistant([ToolInvocationBlock(id="c", name="list_files")])
    state.append_tool_results([ToolResultBlock(invocation_id="c", content="a.py")])

    history = state.history
    history.clear()
    assert len(state) == 3
    assert state.last().role is MessageRole.USER
    assert state.last().tool_results()[0].invocation_id == "c"


def test_discard_empty_assistant_tail():
    state = ConversationState()
    state.append_user("hi")
    assert state.discard_empty_assistant_tail() is False

    state.append_assistant([])
    assert state.discard_empty_assistant_tail() is True
    assert len(state) == 1

    state.clear()
    assert state.last() is None
