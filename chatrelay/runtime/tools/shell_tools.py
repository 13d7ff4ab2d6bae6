from __future__ import annotations

import contextlib
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, ClassVar

from ..llm.errors import CancellationToken
from .project_tools import _require_str, _resolve_in_project
from .runtime import ToolCancelledError

DEFAULT_TIMEOUT_S = 120.0
MAX_OUTPUT_CHARS = 50_000
POLL_INTERVAL_S = 0.1
READER_JOIN_S = 2.0


def _maybe_float(args: dict[str, Any], key: str) -> float | None:
    value = args.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid '{key}' (expected number).")
    if isinstance(value, (int, float)):
        return float(value)
    raise ValueError(f"Invalid '{key}' (expected number).")


def _maybe_int(args: dict[str, Any], key: str) -> int | None:
    value = args.get(key)
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Invalid '{key}' (expected int).")
    return value


class TerminalOutputStore:
    """Last captured command output, shared by `run_command` and `read_terminal_output`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._command: str | None = None
        self._output = ""

    def set(self, command: str, output: str) -> None:
        with self._lock:
            self._command = command
            self._output = output

    def get(self) -> tuple[str | None, str]:
        with self._lock:
            return self._command, self._output


@dataclass(slots=True)
class RunCommandTool:
    store: TerminalOutputStore = field(default_factory=TerminalOutputStore)

    name: ClassVar[str] = "run_command"
    description: ClassVar[str] = (
        "Runs a shell command in the workspace and returns its exit code and combined output. "
        "Use it for git, build and test commands. The output stays available via read_terminal_output."
    )
    input_schema: ClassVar[dict[str, Any]] = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Shell command to run."},
            "cwd": {"type": "string", "description": "Relative working directory (default: workspace root)."},
            "timeout_s": {"type": "number", "minimum": 0, "description": f"Timeout in seconds (default {int(DEFAULT_TIMEOUT_S)})."},
        },
        "required": ["command"],
        "additionalProperties": False,
    }
    requires_approval: ClassVar[bool] = True

    def execute(self, *, args: dict[str, Any], project_root: Path, cancel: CancellationToken | None = None) -> str:
        command = _require_str(args, "command")
        cwd_path = _resolve_in_project(project_root, str(args.get("cwd") or "."))
        timeout_s = _maybe_float(args, "timeout_s") or DEFAULT_TIMEOUT_S

        env = dict(os.environ)
        env["PYTHONUNBUFFERED"] = "1"

        started = time.monotonic()
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=str(cwd_path),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            env=env,
            start_new_session=True,
        )
        chunks: list[bytes] = []
        reader = threading.Thread(target=_drain, args=(proc.stdout, chunks), name="run-command-output", daemon=True)
        reader.start()

        deadline = started + timeout_s
        while True:
            try:
                proc.wait(timeout=POLL_INTERVAL_S)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.cancelled:
                output = self._stop(proc, reader, chunks, command)
                raise ToolCancelledError(
                    f"Command stopped after {time.monotonic() - started:.1f}s: {command}\n{_clip(output)}".rstrip()
                )
            if time.monotonic() >= deadline:
                self._stop(proc, reader, chunks, command)
                raise TimeoutError(f"Command timed out after {timeout_s:g}s: {command}")

        # A background child may keep the pipe open after the shell exits.
        reader.join(timeout=READER_JOIN_S)
        duration_ms = int((time.monotonic() - started) * 1000)
        output = b"".join(chunks).decode("utf-8", errors="replace")
        self.store.set(command, output)
        return f"$ {command}\n(exit code {proc.returncode}, {duration_ms} ms)\n{_clip(output)}"

    def _stop(self, proc: subprocess.Popen, reader: threading.Thread, chunks: list[bytes], command: str) -> str:
        """Kill the command's whole process group and keep whatever it printed."""
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(proc.pid, signal.SIGKILL)
        with contextlib.suppress(OSError):
            proc.kill()
        proc.wait()
        reader.join(timeout=READER_JOIN_S)
        output = b"".join(chunks).decode("utf-8", errors="replace")
        self.store.set(command, output)
        return output


def _drain(pipe: IO[bytes] | None, chunks: list[bytes]) -> None:
    if pipe is None:
        return
    with pipe:
        for block in iter(lambda: pipe.read1(65536), b""):
            chunks.append(block)


def _clip(output: str) -> str:
    if len(output) > MAX_OUTPUT_CHARS:
        return output[:MAX_OUTPUT_CHARS] + "…"
    return output


@dataclass(slots=True)
class ReadTerminalOutputTool:
    store: TerminalOutputStore

    name: ClassVar[str] = "read_terminal_output"
    description: ClassVar[str] = (
        "Returns the output of the most recent run_command call, optionally only the last maxLines lines."
    )
    input_schema: ClassVar[dict[str, Any]] = {
        "type": "object",
        "properties": {
            "maxLines": {"type": "integer", "minimum": 1, "description": "Only return the last N lines."},
        },
        "additionalProperties": False,
    }
    requires_approval: ClassVar[bool] = False

    def execute(self, *, args: dict[str, Any], project_root: Path, cancel: CancellationToken | None = None) -> str:
        del project_root
        max_lines = _maybe_int(args, "maxLines")
        if max_lines is not None and max_lines < 1:
            raise ValueError("Invalid 'maxLines' (expected positive integer).")
        command, output = self.store.get()
        if command is None:
            return "No command output captured yet."
        if max_lines is not None:
            output = "\n".join(output.splitlines()[-max_lines:])
        return f"$ {command}\n{output}"
