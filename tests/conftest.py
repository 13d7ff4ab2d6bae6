"""Shared fakes for engine, gateway and endpoint tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, ClassVar, Sequence

import pytest

from chatrelay.runtime.approval import ApprovalRegister
from chatrelay.runtime.engine import TurnEngine
from chatrelay.runtime.event_bus import EventEmitter
from chatrelay.runtime.llm.errors import CancellationToken
from chatrelay.runtime.protocol import EventKind, UIEvent
from chatrelay.runtime.tools.registry import ToolRegistry
from chatrelay.runtime.tools.runtime import ToolApprovalMode, ToolCancelledError, ToolRuntime
from chatrelay.runtime.types import (
    ArgumentsDelta,
    BlockStart,
    BlockStop,
    BlockType,
    Message,
    StreamEvent,
    TextDelta,
    TurnStop,
)

# A script entry that makes the fake endpoint wait until it is cancelled.
HANG = object()


def text_reply(*chunks: str) -> list[StreamEvent]:
    events: list[StreamEvent] = [BlockStart(index=0, block_type=BlockType.TEXT)]
    events.extend(TextDelta(index=0, text=c) for c in chunks)
    events.append(BlockStop(index=0))
    events.append(TurnStop(stop_reason="end_turn"))
    return events


def tool_reply(*calls: tuple[str, str, str], text: str | None = None) -> list[StreamEvent]:
    """Build one reply with optional leading text and one tool_use block per (id, name, raw_json)."""

    events: list[StreamEvent] = []
    index = 0
    if text:
        events += [BlockStart(index=0, block_type=BlockType.TEXT), TextDelta(index=0, text=text), BlockStop(index=0)]
        index = 1
    for call_id, name, raw in calls:
        events.append(BlockStart(index=index, block_type=BlockType.TOOL_INVOCATION, invocation_id=call_id, name=name))
        # Split the JSON so the assembler has to join fragments.
        mid = len(raw) // 2
        for part in (raw[:mid], raw[mid:]):
            if part:
                events.append(ArgumentsDelta(index=index, partial_json=part))
        events.append(BlockStop(index=index))
        index += 1
    events.append(TurnStop(stop_reason="tool_use"))
    return events


class FakeEndpoint:
    """Replays one scripted reply per `open_stream` call and records the history it was given."""

    def __init__(self, scripts: Sequence[Any] = ()) -> None:
        self.scripts: list[Any] = list(scripts)
        self.calls: list[list[Message]] = []
        self.closed = 0

    async def open_stream(self, history, *, cancel):
        self.calls.append(list(history))
        if not self.scripts:
            raise AssertionError("FakeEndpoint ran out of scripted replies")
        script = self.scripts.pop(0)
        if script is HANG:
            await asyncio.Event().wait()
            return
        if isinstance(script, BaseException):
            raise script
        for event in script:
            if cancel.cancelled:
                return
            if isinstance(event, BaseException):
                raise event
            yield event
            await asyncio.sleep(0)

    async def aclose(self) -> None:
        self.closed += 1


class FakeExecutor:
    def __init__(
        self,
        *,
        results: dict[str, str] | None = None,
        delays: dict[str, float] | None = None,
        errors: dict[str, BaseException] | None = None,
        honor_cancel: bool = True,
    ) -> None:
        self.results = dict(results or {})
        self.delays = dict(delays or {})
        self.errors = dict(errors or {})
        self.honor_cancel = honor_cancel
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.completed: list[str] = []
        self.interrupted: list[str] = []

    async def execute(self, name: str, input: dict[str, Any], *, cancel: CancellationToken | None = None) -> str:
        self.calls.append((name, dict(input)))
        delay = self.delays.get(name)
        if delay:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + delay
            while loop.time() < deadline:
                if self.honor_cancel and cancel is not None and cancel.cancelled:
                    self.interrupted.append(name)
                    raise ToolCancelledError(f"{name} stopped early")
                await asyncio.sleep(0.01)
        if name in self.errors:
            raise self.errors[name]
        self.completed.append(name)
        return self.results.get(name, f"{name} ok")


@dataclass(slots=True)
class FakeTool:
    name: str
    requires_approval: bool = False
    description: str = "fake tool"
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def execute(self, *, args: dict[str, Any], project_root: Path, cancel: CancellationToken | None = None) -> str:
        return f"{self.name} executed"


@dataclass(slots=True)
class EchoTool:
    name: ClassVar[str] = "echo"
    description: ClassVar[str] = "Echo the text argument."
    input_schema: ClassVar[dict[str, Any]] = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }
    requires_approval: ClassVar[bool] = False

    def execute(self, *, args: dict[str, Any], project_root: Path, cancel: CancellationToken | None = None) -> str:
        return str(args.get("text") or "")


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[UIEvent] = []

    def publish(self, event: UIEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[EventKind]:
        return [e.kind for e in self.events]

    def of(self, kind: EventKind) -> list[UIEvent]:
        return [e for e in self.events if e.kind is kind]


def default_fake_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(FakeTool(name="list_files"))
    registry.register(FakeTool(name="read_file"))
    registry.register(FakeTool(name="search_files"))
    registry.register(FakeTool(name="run_command", requires_approval=True))
    registry.register(FakeTool(name="delete_file", requires_approval=True))
    return registry


async def wait_until(predicate: Callable[[], bool], *, timeout_s: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def make_engine():
    """Build a `TurnEngine` wired to fakes; returns a namespace with every collaborator."""

    def _make(
        scripts: Sequence[Any] = (),
        *,
        registry: ToolRegistry | None = None,
        executor: FakeExecutor | None = None,
        max_iterations: int = 10,
        approval_mode: ToolApprovalMode = ToolApprovalMode.STANDARD,
    ) -> SimpleNamespace:
        sink = RecordingSink()
        emitter = EventEmitter(sink)
        endpoint = FakeEndpoint(scripts)
        registry = registry or default_fake_registry()
        executor = executor or FakeExecutor()
        tool_runtime = ToolRuntime(
            registry=registry,
            executor=executor,
            approvals=ApprovalRegister(),
            emitter=emitter,
            approval_mode=approval_mode,
        )
        engine = TurnEngine(
            endpoint=endpoint,
            tool_runtime=tool_runtime,
            emitter=emitter,
            max_iterations=max_iterations,
        )
        return SimpleNamespace(
            engine=engine,
            endpoint=endpoint,
            executor=executor,
            sink=sink,
            registry=registry,
            tool_runtime=tool_runtime,
        )

    return _make
