from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from ..approval import ApprovalConflictError, ApprovalOutcome, ApprovalRegister
from ..error_codes import ErrorCode
from ..event_bus import EventEmitter
from ..llm.errors import CancellationToken
from ..protocol import EventKind
from ..types import ToolInvocationBlock, ToolResultBlock
from .registry import ToolRegistry

if TYPE_CHECKING:
    from .executor import ToolExecutor

logger = logging.getLogger(__name__)

NOT_EXECUTED_PREFIX = "Tool call not executed"
INTERRUPTED_PREFIX = "Tool call interrupted"
DEFAULT_CANCEL_GRACE_S = 5.0
ERROR_PREFIX = "Error: "


class ToolRuntimeError(RuntimeError):
    """A tool refused or failed its call; the message is shown to the model."""

    def __init__(self, message: str, *, code: ErrorCode = ErrorCode.TOOL_FAILED) -> None:
        super().__init__(message)
        self.code = code


class ToolCancelledError(ToolRuntimeError):
    """A running tool stopped early because its turn was cancelled."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=ErrorCode.CANCELLED)


_SUMMARY_TEMPLATES = {
    "create_file": "Create or overwrite file {path} ({size} chars)",
    "update_file": "Replace content of {path} ({size} chars)",
    "delete_file": "Delete file {path}",
    "read_file": "Read {path}",
    "search_files": "Search files for '{query}'",
    "list_files": "List workspace files",
    "read_terminal_output": "Read last command output",
}


def _shell_summary(args: dict[str, Any], *, max_chars: int = 120) -> str:
    command = args.get("command")
    if not isinstance(command, str) or not command.strip():
        return "Run shell command"
    flat = " ".join(command.split())
    if len(flat) > max_chars:
        flat = flat[: max_chars - 1].rstrip() + "…"
    cwd = args.get("cwd")
    where = cwd.strip() if isinstance(cwd, str) else ""
    return f"Run $ {flat} (in {where})" if where not in {"", "."} else f"Run $ {flat}"


def summarize_tool_call(tool_name: str, args: dict[str, Any]) -> str:
    """Human-readable one-liner describing what a tool call will do."""

    if tool_name == "run_command":
        return _shell_summary(args)
    template = _SUMMARY_TEMPLATES.get(tool_name)
    if template is None:
        return f"Execute tool: {tool_name}"
    path = args.get("path")
    content = args.get("content")
    return template.format(
        path=path.strip() if isinstance(path, str) and path.strip() else "?",
        size=len(content) if isinstance(content, str) else 0,
        query=args.get("query"),
    )


class InspectionDecision(StrEnum):
    ALLOW = "allow"
    DENY = "deny"
    REQUIRE_APPROVAL = "require_approval"


class ToolApprovalMode(StrEnum):
    """
    Tool approval policy for a session.

    - strict: require approval for every tool call (including reads/search).
    - standard: require approval only for tools flagged as side-effecting (default).
    - trusted: never require approval (dangerous).
    """

    STRICT = "strict"
    STANDARD = "standard"
    TRUSTED = "trusted"


@dataclass(frozen=True, slots=True)
class InspectionResult:
    decision: InspectionDecision
    action_summary: str
    reason: str | None = None
    error_code: ErrorCode | None = None


class ToolRuntime:
    """
    Turns tool invocations into tool results.

    `resolve()` never raises: unknown tools, denied approvals, cancellation and executor
    failures all come back as a `ToolResultBlock` with `is_error=True`, so the model can see
    what happened and carry on.
    """

    def __init__(
        self,
        *,
        registry: ToolRegistry,
        executor: ToolExecutor,
        approvals: ApprovalRegister,
        emitter: EventEmitter,
        approval_mode: ToolApprovalMode = ToolApprovalMode.STANDARD,
        cancel_grace_s: float = DEFAULT_CANCEL_GRACE_S,
    ) -> None:
        self._registry = registry
        self._executor = executor
        self._approvals = approvals
        self._emitter = emitter
        self._approval_mode = approval_mode
        self._cancel_grace_s = cancel_grace_s

    def set_approval_mode(self, mode: ToolApprovalMode) -> None:
        self._approval_mode = mode

    def get_approval_mode(self) -> ToolApprovalMode:
        return self._approval_mode

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def approvals(self) -> ApprovalRegister:
        return self._approvals

    def inspect(self, invocation: ToolInvocationBlock) -> InspectionResult:
        tool = self._registry.get(invocation.name)
        if tool is None:
            return InspectionResult(
                decision=InspectionDecision.DENY,
                action_summary=f"Unknown tool: {invocation.name}",
                reason="Tool is not registered.",
                error_code=ErrorCode.TOOL_UNKNOWN,
            )

        summary = summarize_tool_call(invocation.name, invocation.input)

        if self._approval_mode is ToolApprovalMode.TRUSTED:
            return InspectionResult(
                decision=InspectionDecision.ALLOW,
                action_summary=summary,
                reason="Approval mode is trusted (auto-allow).",
            )

        if self._approval_mode is ToolApprovalMode.STRICT:
            return InspectionResult(
                decision=InspectionDecision.REQUIRE_APPROVAL,
                action_summary=summary,
                reason="Approval mode is strict (every tool call needs approval).",
            )

        if getattr(tool, "requires_approval", False):
            return InspectionResult(
                decision=InspectionDecision.REQUIRE_APPROVAL,
                action_summary=summary,
                reason="Tool has side effects; approval required in standard mode.",
            )

        return InspectionResult(decision=InspectionDecision.ALLOW, action_summary=summary, reason=None)

    async def resolve(
        self,
        invocation: ToolInvocationBlock,
        *,
        turn_id: str,
        message_id: str,
        cancel: CancellationToken,
    ) -> ToolResultBlock:
        inspection = self.inspect(invocation)

        if inspection.decision is InspectionDecision.DENY:
            message = f"{ERROR_PREFIX}{inspection.action_summary}. {NOT_EXECUTED_PREFIX}."
            self._emit_completed(
                invocation,
                turn_id=turn_id,
                message_id=message_id,
                status="denied",
                duration_ms=0,
                error_code=inspection.error_code or ErrorCode.PERMISSION,
                error=inspection.reason,
            )
            return ToolResultBlock(invocation_id=invocation.id, content=message, is_error=True)

        if cancel.cancelled:
            return self._cancelled_result(invocation, turn_id=turn_id, message_id=message_id)

        if inspection.decision is InspectionDecision.REQUIRE_APPROVAL:
            outcome = await self._await_approval(invocation, inspection, turn_id=turn_id, message_id=message_id, cancel=cancel)
            if outcome is None:
                message = f"{ERROR_PREFIX}an approval for invocation {invocation.id} is already pending. {NOT_EXECUTED_PREFIX}."
                return ToolResultBlock(invocation_id=invocation.id, content=message, is_error=True)
            if outcome is not ApprovalOutcome.APPROVED:
                if cancel.cancelled:
                    return self._cancelled_result(invocation, turn_id=turn_id, message_id=message_id)
                self._emit_completed(
                    invocation,
                    turn_id=turn_id,
                    message_id=message_id,
                    status="cancelled",
                    duration_ms=0,
                    error_code=ErrorCode.CANCELLED,
                    error="Approval denied.",
                )
                return ToolResultBlock(
                    invocation_id=invocation.id,
                    content=f"{NOT_EXECUTED_PREFIX}: the user declined {inspection.action_summary!r}.",
                    is_error=True,
                )

        return await self._execute(invocation, inspection, turn_id=turn_id, message_id=message_id, cancel=cancel)

    async def _await_approval(
        self,
        invocation: ToolInvocationBlock,
        inspection: InspectionResult,
        *,
        turn_id: str,
        message_id: str,
        cancel: CancellationToken,
    ) -> ApprovalOutcome | None:
        try:
            pending = self._approvals.register(invocation.id, invocation)
        except ApprovalConflictError:
            logger.warning("Duplicate approval request for invocation %s", invocation.id)
            return None

        loop = asyncio.get_running_loop()
        unregister = cancel.on_cancel(
            lambda: loop.call_soon_threadsafe(self._approvals.resolve, invocation.id, ApprovalOutcome.CANCELLED)
        )
        logger.info("Approval requested for %s (%s): %s", invocation.name, invocation.id, inspection.action_summary)
        self._emitter.emit(
            EventKind.TOOL_APPROVAL_PROPOSED,
            message_id=message_id,
            turn_id=turn_id,
            payload={
                "invocation_id": invocation.id,
                "tool_name": invocation.name,
                "description": inspection.action_summary,
                "reason": inspection.reason,
                "arguments": dict(invocation.input),
            },
        )
        try:
            outcome = await pending.wait()
        finally:
            unregister()
        logger.info("Approval for %s resolved: %s", invocation.id, outcome.value)
        self._emitter.emit(
            EventKind.TOOL_APPROVAL_RESOLVED,
            message_id=message_id,
            turn_id=turn_id,
            payload={"invocation_id": invocation.id, "outcome": outcome.value},
        )
        return outcome

    async def _execute(
        self,
        invocation: ToolInvocationBlock,
        inspection: InspectionResult,
        *,
        turn_id: str,
        message_id: str,
        cancel: CancellationToken,
    ) -> ToolResultBlock:
        self._emitter.emit(
            EventKind.TOOL_CALL_STARTED,
            message_id=message_id,
            turn_id=turn_id,
            payload={
                "invocation_id": invocation.id,
                "tool_name": invocation.name,
                "summary": inspection.action_summary,
            },
        )

        started = time.monotonic()
        try:
            raw = await self._run_executor(invocation, cancel)
            content = raw if isinstance(raw, str) else json.dumps(raw, ensure_ascii=False, default=str)
        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            if cancel.cancelled or isinstance(e, ToolCancelledError):
                return self._interrupted_result(invocation, e, turn_id=turn_id, message_id=message_id, duration_ms=duration_ms)
            code = _classify_tool_exception(e)
            logger.info("Tool %s (%s) failed: %s", invocation.name, invocation.id, e)
            self._emit_completed(
                invocation,
                turn_id=turn_id,
                message_id=message_id,
                status="failed",
                duration_ms=duration_ms,
                error_code=code,
                error=str(e),
            )
            return ToolResultBlock(invocation_id=invocation.id, content=f"{ERROR_PREFIX}{e}", is_error=True)

        duration_ms = int((time.monotonic() - started) * 1000)
        self._emit_completed(invocation, turn_id=turn_id, message_id=message_id, status="succeeded", duration_ms=duration_ms)
        return ToolResultBlock(invocation_id=invocation.id, content=content)

    async def _run_executor(self, invocation: ToolInvocationBlock, cancel: CancellationToken) -> Any:
        """
        Await the executor, letting it observe `cancel` itself.

        Once the token fires the tool gets `cancel_grace_s` to stop (or finish) on its own;
        after that the await is abandoned and ToolCancelledError is raised.
        """

        loop = asyncio.get_running_loop()
        fired = asyncio.Event()
        task = asyncio.ensure_future(self._executor.execute(invocation.name, dict(invocation.input), cancel=cancel))
        unregister = cancel.on_cancel(lambda: loop.call_soon_threadsafe(fired.set))
        waiter = asyncio.ensure_future(fired.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if not task.done():
                await asyncio.wait({task}, timeout=self._cancel_grace_s)
            if not task.done():
                task.cancel()
                logger.warning("Tool %s (%s) did not stop after cancellation", invocation.name, invocation.id)
                raise ToolCancelledError(f"{invocation.name} did not stop within {self._cancel_grace_s:g}s.")
            return task.result()
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            unregister()
            waiter.cancel()

    def _interrupted_result(
        self,
        invocation: ToolInvocationBlock,
        exc: BaseException,
        *,
        turn_id: str,
        message_id: str,
        duration_ms: int,
    ) -> ToolResultBlock:
        logger.info("Tool %s (%s) interrupted by cancellation: %s", invocation.name, invocation.id, exc)
        self._emit_completed(
            invocation,
            turn_id=turn_id,
            message_id=message_id,
            status="cancelled",
            duration_ms=duration_ms,
            error_code=ErrorCode.CANCELLED,
            error="Turn cancelled while the tool was running.",
        )
        content = (
            f"{INTERRUPTED_PREFIX}: the turn was cancelled while {invocation.name} was running; "
            "it may have partly run."
        )
        detail = str(exc).strip()
        if detail:
            content = f"{content}\n{detail}"
        return ToolResultBlock(invocation_id=invocation.id, content=content, is_error=True)

    def _cancelled_result(
        self,
        invocation: ToolInvocationBlock,
        *,
        turn_id: str,
        message_id: str,
    ) -> ToolResultBlock:
        self._emit_completed(
            invocation,
            turn_id=turn_id,
            message_id=message_id,
            status="cancelled",
            duration_ms=0,
            error_code=ErrorCode.CANCELLED,
            error="Turn cancelled.",
        )
        return ToolResultBlock(
            invocation_id=invocation.id,
            content=f"{NOT_EXECUTED_PREFIX}: the turn was cancelled.",
            is_error=True,
        )

    def _emit_completed(
        self,
        invocation: ToolInvocationBlock,
        *,
        turn_id: str,
        message_id: str,
        status: str,
        duration_ms: int,
        error_code: ErrorCode | None = None,
        error: str | None = None,
    ) -> None:
        self._emitter.emit(
            EventKind.TOOL_CALL_COMPLETED,
            message_id=message_id,
            turn_id=turn_id,
            payload={
                "invocation_id": invocation.id,
                "tool_name": invocation.name,
                "status": status,
                "duration_ms": duration_ms,
                "error_code": error_code.value if error_code is not None else None,
                "error": error,
            },
        )


_OS_ERROR_CODES: tuple[tuple[type[BaseException], ErrorCode], ...] = (
    (PermissionError, ErrorCode.PERMISSION),
    (FileNotFoundError, ErrorCode.NOT_FOUND),
    (TimeoutError, ErrorCode.TIMEOUT),
    (ValueError, ErrorCode.BAD_REQUEST),
)


def _classify_tool_exception(exc: BaseException) -> ErrorCode:
    if isinstance(exc, ToolRuntimeError):
        return exc.code
    for exc_type, code in _OS_ERROR_CODES:
        if isinstance(exc, exc_type):
            return code
    return ErrorCode.UNKNOWN
