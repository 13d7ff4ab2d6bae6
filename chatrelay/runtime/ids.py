from __future__ import annotations

import time
import uuid


def _stamped(kind: str) -> str:
    return f"{kind}-{time.time_ns():x}-{uuid.uuid4().hex[:12]}"


def new_turn_id() -> str:
    return _stamped("turn")


def new_message_id() -> str:
    """Shared by every assistant event of one turn, across all its rounds."""
    return _stamped("msg")


def new_tool_call_id() -> str:
    # OpenAI-compatible gateways may cap tool call ids at 40 chars; this is 37.
    return "call_" + uuid.uuid4().hex


def now_ts_ms() -> int:
    return time.time_ns() // 1_000_000
