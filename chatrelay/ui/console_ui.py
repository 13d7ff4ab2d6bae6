from __future__ import annotations

import queue
import shutil
import sys
import threading
import time
import unicodedata
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

from ..runtime.protocol import EventKind, UIEvent


@dataclass(frozen=True, slots=True)
class Notice:
    """Console-local message (help text, command output, warnings) rendered in order with engine events."""

    text: str
    level: str = "info"  # info | dim | warning | error


_STOP = object()

_LEVEL_SGR = {"dim": "2", "warning": "33", "error": "31"}

_STATUS_BADGES = {
    "succeeded": ("OK", "32"),
    "denied": ("DENIED", "33"),
    "cancelled": ("CANCELLED", "33"),
}

_SPINNER_FRAMES = ("◌", "◍", "●", "◍")
_TICK_S = 0.08
_CLEAR_LINE = "\r\x1b[2K\r"


def _char_width(ch: str) -> int:
    if unicodedata.combining(ch):
        return 0
    return 2 if unicodedata.east_asian_width(ch) in {"W", "F"} else 1


def _fit(text: str, width: int, *, ellipsis: str = "") -> str:
    """Cut `text` to `width` terminal columns, ending with `ellipsis` when cut."""
    if sum(_char_width(ch) for ch in text) <= width:
        return text
    budget = max(0, width - len(ellipsis))
    kept: list[str] = []
    for ch in text:
        budget -= _char_width(ch)
        if budget < 0:
            break
        kept.append(ch)
    return "".join(kept) + ellipsis


class _AssistantLine:
    """Tracks the open "Assistant: ..." block and collapses blank-line runs in streamed text."""

    def __init__(self) -> None:
        self.open = False
        self.at_line_start = True
        self._newlines = 0

    def begin(self) -> bool:
        if self.open:
            return False
        self.open = True
        self.at_line_start = False
        self._newlines = 0
        return True

    def feed(self, delta: str) -> str:
        kept: list[str] = []
        for ch in delta.replace("\r", ""):
            if ch == "\n":
                self._newlines += 1
                if self._newlines > 1:
                    continue
            else:
                self._newlines = 0
            kept.append(ch)
        text = "".join(kept)
        if text:
            self.at_line_start = text.endswith("\n")
        return text

    def close(self) -> bool:
        """Close the block; True if a trailing newline is still owed."""
        owed = self.open and not self.at_line_start
        self.open = False
        self.at_line_start = True
        self._newlines = 0
        return owed


class ConsoleUI:
    """
    Single-writer, event-driven console UI (line-mode).

    Only the renderer thread writes to the stream. The engine feeds `UIEvent`s through
    `publish()` and the CLI adds `Notice`s through `notice()`; both are rendered in
    arrival order. Between items the renderer animates a waiting spinner on ANSI terminals.
    """

    def __init__(self, *, stream=None, enable_color: bool = True) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._ansi = bool(getattr(self._stream, "isatty", lambda: False)())
        self._enable_color = bool(enable_color)

        self._q: "queue.Queue[object]" = queue.Queue()
        self._thread: threading.Thread | None = None

        self._assistant = _AssistantLine()
        self._waiting_label: str | None = None
        self._frame = 0
        self._last_paint = 0.0

        self._io_lock = threading.RLock()
        self._suspend_lock = threading.Lock()
        self._suspended = 0
        self._held: list[object] = []

        self._handlers: dict[EventKind, Callable[[dict], None]] = {
            EventKind.USER_MESSAGE_ADDED: lambda p: self._settle(),
            EventKind.ASSISTANT_RESPONSE_STARTED: lambda p: self._wait("Thinking"),
            EventKind.ASSISTANT_RESPONSE_APPENDED: self._on_text,
            EventKind.ASSISTANT_RESPONSE_FINALIZED: lambda p: self._settle(),
            EventKind.TOOL_APPROVAL_PROPOSED: self._on_approval,
            EventKind.TOOL_CALL_STARTED: self._on_tool_started,
            EventKind.TOOL_CALL_COMPLETED: self._on_tool_completed,
            EventKind.TURN_CANCELLED: lambda p: self._line("Cancelled.", level="warning"),
            EventKind.TURN_ERROR: self._on_turn_error,
        }

    # --- public surface ---
    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._render_loop, name="chatrelay-ui", daemon=True)
        self._thread.start()

    def stop(self, *, join_timeout_s: float = 1.0) -> None:
        self._q.put_nowait(_STOP)
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=join_timeout_s)

    def publish(self, event: UIEvent) -> None:
        self._q.put_nowait(event)

    def notice(self, text: str, *, level: str = "info") -> None:
        self._q.put_nowait(Notice(text=text, level=level))

    def flush(self, *, timeout_s: float = 2.0) -> None:
        """Block until everything queued so far has been rendered (or held, while suspended)."""
        if self._thread is None:
            return
        done = threading.Event()
        self._q.put_nowait(done)
        done.wait(timeout=timeout_s)

    @contextmanager
    def suspend(self) -> Iterator[None]:
        """Hold rendering while the input loop owns the terminal (e.g. an approval prompt)."""
        with self._suspend_lock:
            self._suspended += 1
            outermost = self._suspended == 1
        if outermost:
            self.flush()
            with self._io_lock:
                self._settle()
        try:
            yield
        finally:
            released: list[object] = []
            with self._suspend_lock:
                self._suspended = max(0, self._suspended - 1)
                if self._suspended == 0:
                    released, self._held = self._held, []
            for item in released:
                self._q.put_nowait(item)

    # --- renderer thread ---
    def _render_loop(self) -> None:
        while True:
            try:
                item = self._q.get(timeout=_TICK_S)
            except queue.Empty:
                self._animate()
                continue
            if item is _STOP:
                break
            if isinstance(item, threading.Event):
                item.set()
                continue
            with self._suspend_lock:
                if self._suspended:
                    self._held.append(item)
                    continue
            try:
                with self._io_lock:
                    self._render(item)
            except Exception:
                # A rendering bug must not kill the renderer thread.
                pass
        with self._io_lock:
            self._settle()

    def _render(self, item: object) -> None:
        if isinstance(item, Notice):
            self._line(item.text, level=item.level)
            return
        if isinstance(item, UIEvent):
            handler = self._handlers.get(item.kind)
            if handler is not None:
                handler(item.payload)

    def _on_text(self, p: dict) -> None:
        text = str(p.get("text") or "")
        if not text:
            return
        self._unwait()
        if self._assistant.begin():
            self._write(self._style("Assistant: ", "1;36"))
        self._write(self._assistant.feed(text))

    def _on_approval(self, p: dict) -> None:
        self._line(f"{self._badge('APPROVAL', '35')} {p.get('description') or p.get('tool_name')}")
        reason = p.get("reason")
        if isinstance(reason, str) and reason:
            self._line(f"  {reason}", level="dim")

    def _on_tool_started(self, p: dict) -> None:
        self._settle()
        self._wait(str(p.get("summary") or p.get("tool_name") or "Running tool"))

    def _on_tool_completed(self, p: dict) -> None:
        status = str(p.get("status") or "").strip().lower()
        label, sgr = _STATUS_BADGES.get(status, ("FAILED", "31"))
        line = f"{self._badge(label, sgr)} {p.get('tool_name')}"
        duration_ms = p.get("duration_ms")
        if isinstance(duration_ms, int) and duration_ms > 0:
            line += f" ({duration_ms} ms)"
        self._line(line)
        err = p.get("error")
        if status == "failed" and isinstance(err, str) and err:
            self._line("  " + _fit(err.splitlines()[0], 160, ellipsis="…"), level="dim")
        # Results go back to the model next.
        self._wait("Thinking")

    def _on_turn_error(self, p: dict) -> None:
        code = p.get("error_code")
        prefix = f"Error ({code}): " if code else "Error: "
        self._line(prefix + str(p.get("error") or ""), level="error")

    # --- output primitives ---
    def _style(self, text: str, sgr: str | None) -> str:
        if not sgr or not self._enable_color:
            return text
        return f"\x1b[{sgr}m{text}\x1b[0m"

    def _badge(self, label: str, sgr: str) -> str:
        return self._style(f"[{label}]", f"1;{sgr}")

    def _write(self, text: str) -> None:
        if not text:
            return
        self._stream.write(text)
        try:
            self._stream.flush()
        except (OSError, ValueError):
            pass

    def _line(self, text: str, *, level: str = "info") -> None:
        self._settle()
        self._write(self._style(text, _LEVEL_SGR.get(level)) + "\n")

    def _settle(self) -> None:
        """Clear the spinner and finish any open assistant line."""
        self._unwait()
        if self._assistant.close():
            self._write("\n")

    # --- waiting indicator ---
    def _wait(self, label: str) -> None:
        self._waiting_label = label
        self._frame = 0
        self._last_paint = 0.0
        if self._ansi:
            self._paint()
        else:
            self._write(self._style(f"{label}…", _LEVEL_SGR["dim"]) + "\n")

    def _unwait(self) -> None:
        if self._waiting_label is None:
            return
        self._waiting_label = None
        if self._ansi:
            self._write(_CLEAR_LINE)

    def _animate(self) -> None:
        if not self._ansi or self._waiting_label is None:
            return
        with self._suspend_lock:
            if self._suspended:
                return
        if time.monotonic() - self._last_paint < _TICK_S * 0.75:
            return
        with self._io_lock:
            self._paint()

    def _paint(self) -> None:
        if self._waiting_label is None:
            return
        self._last_paint = time.monotonic()
        frame = _SPINNER_FRAMES[self._frame % len(_SPINNER_FRAMES)]
        self._frame += 1
        cols = max(20, shutil.get_terminal_size((80, 20)).columns - 1)
        self._write(_CLEAR_LINE + _fit(f"{frame} {self._waiting_label}…", cols))
