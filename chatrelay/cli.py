from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable

from . import __version__
from .runtime.config import CONFIG_DIRNAME, MAX_ITERATIONS_LIMIT, ChatConfig, load_config
from .runtime.llm.errors import ModelConfigError
from .runtime.logging_config import configure_logging
from .runtime.protocol import EventKind, UIEvent
from .runtime.types import TurnStatus

if TYPE_CHECKING:
    from .runtime.session import ChatSession
    from .ui.console_ui import ConsoleUI

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 5

SLASH_COMMANDS = ["/help", "/new", "/profiles", "/profile", "/history", "/exit", "/quit"]

HELP_TEXT = (
    "Commands:\n"
    "  /new             start a new conversation\n"
    "  /profiles        list model profiles\n"
    "  /profile <id>    switch model profile (starts a new conversation)\n"
    "  /history         print the conversation as JSON\n"
    "  /exit            quit\n"
    "Ctrl+C cancels the running turn."
)

ReadLine = Callable[[str], Awaitable[str]]


def _configure_text_io() -> None:
    """
    Best-effort I/O normalization for interactive terminals.

    Invalid byte sequences read from the terminal would otherwise survive as surrogate
    codepoints and crash later when encoded for the provider request.
    """

    for stream, errors in ((sys.stdin, "replace"), (sys.stdout, "backslashreplace"), (sys.stderr, "backslashreplace")):
        try:
            stream.reconfigure(encoding="utf-8", errors=errors)
        except Exception:
            continue


def _is_tty() -> bool:
    try:
        return sys.stdin.isatty() and sys.stdout.isatty()
    except Exception:
        return False


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatrelay",
        description="Terminal chat with a tool-using model.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--project",
        dest="project",
        default=".",
        help="Project directory the tools operate on (default: current directory).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    chat_parser = subparsers.add_parser("chat", help="Start an interactive session.")
    chat_parser.add_argument("--profile", dest="profile", default=None, help="Model profile id to use.")
    chat_parser.add_argument(
        "--max-iterations",
        dest="max_iterations",
        type=int,
        default=None,
        help=(
            f"Max model requests per user message (default: 10, max: {MAX_ITERATIONS_LIMIT}). "
            "Each tool round uses one request, and so does the final text reply."
        ),
    )
    chat_parser.add_argument(
        "--approval-mode",
        dest="approval_mode",
        choices=["strict", "standard", "trusted"],
        default=None,
        help="Tool approval policy (default: standard).",
    )
    chat_parser.add_argument("--log-level", dest="log_level", default=None, help="Log level (default: INFO).")
    chat_parser.add_argument(
        "--log-file",
        dest="log_file",
        default=None,
        help=f"Log file (default: <project>/{CONFIG_DIRNAME}/logs/chatrelay.log).",
    )
    chat_parser.add_argument(
        "--color",
        dest="color",
        choices=["auto", "always", "never"],
        default="auto",
        help="Colorize output (default: auto).",
    )
    chat_parser.set_defaults(func=_cmd_chat)

    profiles_parser = subparsers.add_parser("profiles", help="List configured model profiles.")
    profiles_parser.set_defaults(func=_cmd_profiles)

    return parser


def _load_config_or_report(project_root: Path, args: argparse.Namespace) -> ChatConfig | None:
    overrides = {
        "default_profile_id": getattr(args, "profile", None),
        "max_iterations": getattr(args, "max_iterations", None),
        "approval_mode": getattr(args, "approval_mode", None),
        "log_level": getattr(args, "log_level", None),
    }
    try:
        return load_config(project_root, overrides=overrides)
    except ModelConfigError as e:
        print(str(e), file=sys.stderr)
        return None


def _format_profiles(config: ChatConfig, *, current: str | None) -> list[str]:
    lines: list[str] = []
    for p in config.profiles:
        marker = "*" if p.profile_id == current else " "
        lines.append(
            f"{marker} {p.profile_id:<16} {p.provider_kind.value:<18} {p.model_name:<28} {p.credential_ref.to_redacted_string()}"
        )
    return lines


def _cmd_profiles(args: argparse.Namespace) -> int:
    project_root = Path(args.project).expanduser().resolve()
    config = _load_config_or_report(project_root, args)
    if config is None:
        return EXIT_CONFIG_ERROR
    for line in _format_profiles(config, current=config.default_profile_id):
        print(line)
    return EXIT_OK


def _cmd_chat(args: argparse.Namespace) -> int:
    from .ui.console_ui import ConsoleUI

    project_root = Path(args.project).expanduser().resolve()
    if not project_root.is_dir():
        print(f"Project directory not found: {project_root}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    config = _load_config_or_report(project_root, args)
    if config is None:
        return EXIT_CONFIG_ERROR

    log_file = Path(args.log_file) if args.log_file else project_root / CONFIG_DIRNAME / "logs" / "chatrelay.log"
    try:
        configure_logging(config.log_level, log_file)
    except OSError as e:
        print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    enable_color = {"never": False, "always": True}.get(str(args.color or "auto").lower(), _is_tty())

    ui = ConsoleUI(stream=sys.stdout, enable_color=enable_color)
    ui.start()
    try:
        return asyncio.run(_run_chat(project_root=project_root, config=config, ui=ui))
    finally:
        ui.stop()


def _should_use_prompt_toolkit() -> bool:
    # Let callers (and tests) force plain input mode.
    if str(os.environ.get("CHATRELAY_PLAIN_INPUT") or "").strip().lower() in {"1", "true", "yes", "on"}:
        return False
    return _is_tty()


def _make_reader(history_path: Path) -> ReadLine:
    if _should_use_prompt_toolkit():
        from prompt_toolkit import PromptSession
        from prompt_toolkit.completion import Completer, Completion
        from prompt_toolkit.history import FileHistory

        class _SlashCompleter(Completer):
            def get_completions(self, document, complete_event):
                text = document.text_before_cursor
                if not text.startswith("/"):
                    return
                for c in SLASH_COMMANDS:
                    if c.startswith(text):
                        yield Completion(c, start_position=-len(text))

        try:
            history_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            logger.warning("Cannot create input history directory %s", history_path.parent)
        prompt_session: PromptSession[str] = PromptSession(
            completer=_SlashCompleter(),
            history=FileHistory(str(history_path)),
        )

        async def _read_pt(message: str) -> str:
            return await prompt_session.prompt_async(message)

        return _read_pt

    async def _read_plain(message: str) -> str:
        return await asyncio.to_thread(input, message)

    return _read_plain


async def _run_chat(*, project_root: Path, config: ChatConfig, ui: "ConsoleUI") -> int:
    from .runtime.session import ChatSession

    try:
        session = ChatSession(project_root=project_root, config=config)
    except ModelConfigError as e:
        ui.notice(str(e), level="error")
        return EXIT_CONFIG_ERROR

    approval_requests: asyncio.Queue[UIEvent] = asyncio.Queue()
    session.event_bus.subscribe(ui.publish)
    session.event_bus.subscribe(approval_requests.put_nowait, kinds={EventKind.TOOL_APPROVAL_PROPOSED})

    read_line = _make_reader(project_root / CONFIG_DIRNAME / "history.txt")
    ui.notice(
        f"chatrelay {__version__} | project {project_root} | profile {session.profile.profile_id} ({session.profile.model_name})",
        level="dim",
    )
    ui.notice("Type /help for commands.", level="dim")

    try:
        while True:
            ui.flush()
            try:
                text = await read_line("You> ")
            except KeyboardInterrupt:
                ui.notice("Use /exit to quit.", level="dim")
                continue
            except EOFError:
                break

            text = text.strip()
            if not text:
                continue
            if text.startswith("/"):
                if await _handle_slash_command(text, session=session, ui=ui):
                    break
                continue

            await _run_turn(text, session=session, ui=ui, read_line=read_line, approval_requests=approval_requests)
    finally:
        await session.aclose()
    return EXIT_OK


async def _run_turn(
    text: str,
    *,
    session: "ChatSession",
    ui: "ConsoleUI",
    read_line: ReadLine,
    approval_requests: asyncio.Queue[UIEvent],
) -> None:
    loop = asyncio.get_running_loop()
    turn_task = asyncio.create_task(session.send_message(text))

    sigint_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, session.cancel)
        sigint_installed = True
    except (NotImplementedError, RuntimeError):
        pass

    try:
        while not turn_task.done():
            next_request = asyncio.create_task(approval_requests.get())
            done, _ = await asyncio.wait({turn_task, next_request}, return_when=asyncio.FIRST_COMPLETED)
            if next_request not in done:
                next_request.cancel()
                continue
            await _ask_approval(next_request.result(), session=session, ui=ui, read_line=read_line, turn_task=turn_task)
    finally:
        if sigint_installed:
            loop.remove_signal_handler(signal.SIGINT)

    result = turn_task.result()
    if result.status is TurnStatus.REJECTED:
        ui.notice(result.error or "A turn is already running.", level="warning")

    # Drop proposals for approvals that were resolved by cancellation.
    while not approval_requests.empty():
        approval_requests.get_nowait()


async def _read_answer(read_line: ReadLine, message: str) -> str | None:
    """Read one line; None means the user interrupted, EOF counts as a denial."""

    try:
        return await read_line(message)
    except KeyboardInterrupt:
        return None
    except EOFError:
        return ""


async def _ask_approval(
    event: UIEvent,
    *,
    session: "ChatSession",
    ui: "ConsoleUI",
    read_line: ReadLine,
    turn_task: asyncio.Task,
) -> None:
    invocation_id = str(event.payload.get("invocation_id") or "")
    if invocation_id not in session.engine.approvals:
        return

    with ui.suspend():
        answer_task = asyncio.create_task(_read_answer(read_line, "Approve? [y/N] "))
        done, _ = await asyncio.wait({answer_task, turn_task}, return_when=asyncio.FIRST_COMPLETED)
        if answer_task not in done:
            # The turn ended (e.g. cancelled) while we were asking.
            answer_task.cancel()
            return
        answer = answer_task.result()

    if answer is None:
        session.cancel()
        return

    if answer.strip().lower() in {"y", "yes"}:
        session.approve_tool(invocation_id)
    else:
        session.cancel_tool(invocation_id)


async def _handle_slash_command(text: str, *, session: "ChatSession", ui: "ConsoleUI") -> bool:
    """Run a slash command. Returns True when the chat loop should exit."""

    parts = text.split()
    cmd = parts[0].lower()
    arg = parts[1] if len(parts) > 1 else None

    if cmd in {"/exit", "/quit"}:
        return True

    if cmd == "/help":
        ui.notice(HELP_TEXT, level="dim")
        return False

    if cmd == "/new":
        if session.new_thread():
            ui.notice("Started a new conversation.", level="dim")
        else:
            ui.notice("A turn is still running.", level="warning")
        return False

    if cmd == "/profiles":
        lines = _format_profiles(session.config, current=session.profile.profile_id)
        ui.notice("\n".join(lines), level="info")
        return False

    if cmd == "/profile":
        if not arg:
            ui.notice("Usage: /profile <id>", level="warning")
            return False
        try:
            switched = await session.select_profile(arg)
        except ModelConfigError as e:
            ui.notice(str(e), level="error")
            return False
        if switched:
            ui.notice(f"Using profile {session.profile.profile_id} ({session.profile.model_name}); new conversation.", level="dim")
        else:
            ui.notice("A turn is still running.", level="warning")
        return False

    if cmd == "/history":
        history = [m.to_dict() for m in session.history]
        ui.notice(json.dumps(history, ensure_ascii=False, indent=2) if history else "(empty)", level="info")
        return False

    ui.notice(f"Unknown command: {cmd}. Type /help.", level="warning")
    return False


def main(argv: list[str] | None = None) -> int:
    _configure_text_io()
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        func = getattr(args, "func")
        return int(func(args))
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130
