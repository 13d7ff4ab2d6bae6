"""Tests for run_command and read_terminal_output."""

from __future__ import annotations

import asyncio
import sys
import threading
import time

import pytest

from chatrelay.runtime.approval import ApprovalRegister
from chatrelay.runtime.event_bus import EventEmitter
from chatrelay.runtime.llm.errors import CancellationToken
from chatrelay.runtime.tools.builtins import build_default_registry
from chatrelay.runtime.tools.executor import LocalToolExecutor
from chatrelay.runtime.tools.runtime import ToolApprovalMode, ToolCancelledError, ToolRuntime, ToolRuntimeError
from chatrelay.runtime.tools.shell_tools import ReadTerminalOutputTool, RunCommandTool, TerminalOutputStore
from chatrelay.runtime.types import ToolInvocationBlock

from conftest import RecordingSink

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX shell commands")


def test_run_command_captures_output_and_exit_code(tmp_path):
    store = TerminalOutputStore()
    out = RunCommandTool(store=store).execute(args={"command": "echo hello; echo oops 1>&2; exit 3"}, project_root=tmp_path)

    lines = out.splitlines()
    assert lines[0] == "$ echo hello; echo oops 1>&2; exit 3"
    assert lines[1].startswith("(exit code 3, ")
    assert "hello" in lines[2:]
    assert "oops" in lines[2:]
    assert store.get()[0] == "echo hello; echo oops 1>&2; exit 3"


def test_run_command_uses_relative_cwd(tmp_path):
    (tmp_path / "sub").mkdir()
    out = RunCommandTool().execute(args={"command": "pwd", "cwd": "sub"}, project_root=tmp_path)
    assert out.rstrip().endswith("sub")


def test_run_command_rejects_escaping_cwd(tmp_path):
    with pytest.raises(ToolRuntimeError):
        RunCommandTool().execute(args={"command": "ls", "cwd": "../.."}, project_root=tmp_path)


def test_run_command_timeout_keeps_partial_output(tmp_path):
    store = TerminalOutputStore()
    with pytest.raises(TimeoutError, match="timed out"):
        RunCommandTool(store=store).execute(
            args={"command": "echo started; sleep 5", "timeout_s": 0.5},
            project_root=tmp_path,
        )
    command, output = store.get()
    assert command == "echo started; sleep 5"
    assert "started" in output


def test_read_terminal_output(tmp_path):
    store = TerminalOutputStore()
    reader = ReadTerminalOutputTool(store=store)
    assert reader.execute(args={}, project_root=tmp_path) == "No command output captured yet."

    RunCommandTool(store=store).execute(args={"command": "printf 'a\\nb\\nc\\n'"}, project_root=tmp_path)
    assert reader.execute(args={"maxLines": 2}, project_root=tmp_path) == "$ printf 'a\\nb\\nc\\n'\nb\nc"

    with pytest.raises(ValueError):
        reader.execute(args={"maxLines": "two"}, project_root=tmp_path)
    with pytest.raises(ValueError):
        reader.execute(args={"maxLines": 0}, project_root=tmp_path)


def test_run_command_stops_when_cancelled(tmp_path):
    store = TerminalOutputStore()
    token = CancellationToken()
    timer = threading.Timer(0.3, token.cancel)
    timer.start()
    try:
        with pytest.raises(ToolCancelledError, match="Command stopped"):
            RunCommandTool(store=store).execute(
                args={"command": "echo begun; sleep 1; touch marker"},
                project_root=tmp_path,
                cancel=token,
            )
    finally:
        timer.cancel()

    time.sleep(1.2)
    assert not (tmp_path / "marker").exists()
    assert "begun" in store.get()[1]


@pytest.mark.asyncio
async def test_gateway_cancel_kills_running_command(tmp_path):
    registry = build_default_registry()
    sink = RecordingSink()
    rt = ToolRuntime(
        registry=registry,
        executor=LocalToolExecutor(registry=registry, project_root=tmp_path),
        approvals=ApprovalRegister(),
        emitter=EventEmitter(sink),
        approval_mode=ToolApprovalMode.TRUSTED,
    )
    token = CancellationToken()
    invocation = ToolInvocationBlock(id="c1", name="run_command", input={"command": "sleep 1; touch marker"})

    task = asyncio.create_task(rt.resolve(invocation, turn_id="t", message_id="m", cancel=token))
    await asyncio.sleep(0.3)
    token.cancel()
    result = await asyncio.wait_for(task, timeout=3)
    await asyncio.sleep(1.2)

    assert result.is_error is True
    assert result.content.startswith("Tool call interrupted")
    assert not (tmp_path / "marker").exists()
