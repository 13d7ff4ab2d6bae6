from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from .approval import ApprovalRegister
from .assembler import ContentAssembler
from .conversation import ConversationState
from .error_codes import ErrorCode
from .event_bus import EventEmitter
from .ids import new_message_id, new_turn_id
from .llm.endpoint import ModelEndpoint
from .llm.errors import CancellationToken, LLMRequestError
from .protocol import EventKind
from .tools.runtime import ToolRuntime
from .types import (
    ContentBlock,
    Message,
    TextBlock,
    ToolInvocationBlock,
    ToolResultBlock,
    TurnResult,
    TurnStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10


def iteration_limit_message(limit: int) -> str:
    """
    Assistant text recorded when a turn hits its request cap.

    The cap counts model requests, not tool rounds: with a cap of N, a model that
    finishes its Nth request with tool calls does not get a further request to
    answer in text, and the turn fails here instead.
    """
    return (
        f"Stopped: reached the limit of {limit} model requests for a single message. "
        "The last tool results were kept; send another message to continue."
    )


@dataclass(frozen=True, slots=True)
class _Turn:
    turn_id: str
    message_id: str
    cancel: CancellationToken


class TurnEngine:
    """
    Drives one user message through stream -> tool dispatch -> stream rounds.

    One turn runs at a time. `send_message` while a turn is active returns a `rejected`
    result instead of touching history.
    """

    def __init__(
        self,
        *,
        endpoint: ModelEndpoint,
        tool_runtime: ToolRuntime,
        emitter: EventEmitter,
        conversation: ConversationState | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self._endpoint = endpoint
        self._tools = tool_runtime
        self._emitter = emitter
        self._conversation = conversation or ConversationState()
        self._max_iterations = int(max_iterations)

        self._status = TurnStatus.IDLE
        self._turn: _Turn | None = None
        self._stream_task: asyncio.Task[list[ContentBlock]] | None = None

    @property
    def status(self) -> TurnStatus:
        return self._status

    @property
    def busy(self) -> bool:
        return self._status is not TurnStatus.IDLE

    @property
    def history(self) -> list[Message]:
        return self._conversation.history

    @property
    def approvals(self) -> ApprovalRegister:
        return self._tools.approvals

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    def set_endpoint(self, endpoint: ModelEndpoint) -> bool:
        if self.busy:
            return False
        self._endpoint = endpoint
        return True

    def reset(self) -> bool:
        if self.busy:
            return False
        self._conversation.clear()
        return True

    def approve_tool(self, invocation_id: str) -> bool:
        return self.approvals.approve(invocation_id)

    def cancel_tool(self, invocation_id: str) -> bool:
        return self.approvals.cancel(invocation_id)

    def cancel(self) -> bool:
        turn = self._turn
        if turn is None or turn.cancel.cancelled:
            return False
        logger.info("Cancelling turn %s", turn.turn_id)
        turn.cancel.cancel()
        task = self._stream_task
        if task is not None and not task.done():
            task.cancel()
        self.approvals.cancel_all()
        return True

    async def send_message(self, text: str) -> TurnResult:
        if self.busy:
            logger.warning("Rejected message: a turn is already %s", self._status.value)
            return TurnResult(
                status=TurnStatus.REJECTED,
                turn_id=None,
                error="A turn is already in progress.",
                error_code=ErrorCode.BUSY.value,
            )

        turn = _Turn(turn_id=new_turn_id(), message_id=new_message_id(), cancel=CancellationToken())
        self._turn = turn
        self._status = TurnStatus.STREAMING
        try:
            return await self._run_turn(text, turn)
        finally:
            self._stream_task = None
            self._turn = None
            self._status = TurnStatus.IDLE

    async def _run_turn(self, text: str, turn: _Turn) -> TurnResult:
        logger.info("Turn %s started (message %s)", turn.turn_id, turn.message_id)
        self._conversation.append_user(text)
        self._emit(turn, EventKind.USER_MESSAGE_ADDED, {"text": text})
        self._emit(turn, EventKind.ASSISTANT_RESPONSE_STARTED, {})

        iterations = 0
        while True:
            if turn.cancel.cancelled:
                return self._finish_cancelled(turn, iterations)
            if iterations >= self._max_iterations:
                return self._finish_iteration_limit(turn, iterations)

            iterations += 1
            self._status = TurnStatus.STREAMING
            try:
                blocks = await self._stream_once(turn)
            except asyncio.CancelledError:
                if not turn.cancel.cancelled:
                    raise
                return self._finish_cancelled(turn, iterations)
            except LLMRequestError as e:
                if turn.cancel.cancelled:
                    return self._finish_cancelled(turn, iterations)
                logger.error("Turn %s failed: [%s] %s", turn.turn_id, e.code.value, e)
                return self._finish_failed(turn, iterations, error=str(e), code=e.code)
            except Exception as e:
                if turn.cancel.cancelled:
                    return self._finish_cancelled(turn, iterations)
                logger.exception("Turn %s failed while streaming", turn.turn_id)
                return self._finish_failed(turn, iterations, error=str(e) or e.__class__.__name__, code=ErrorCode.UNKNOWN)

            if turn.cancel.cancelled:
                return self._finish_cancelled(turn, iterations)

            invocations = [b for b in blocks if isinstance(b, ToolInvocationBlock)]
            if not invocations:
                if blocks:
                    self._conversation.append_assistant(blocks)
                final_text = "".join(b.text for b in blocks if isinstance(b, TextBlock))
                self._emit(turn, EventKind.ASSISTANT_RESPONSE_FINALIZED, {"text": final_text, "iterations": iterations})
                logger.info("Turn %s done after %d model request(s)", turn.turn_id, iterations)
                return TurnResult(
                    status=TurnStatus.DONE,
                    turn_id=turn.turn_id,
                    message_id=turn.message_id,
                    iterations=iterations,
                    text=final_text,
                )

            self._conversation.append_assistant(blocks)
            self._status = TurnStatus.TOOL_DISPATCH
            results = await self._dispatch(invocations, turn)
            self._conversation.append_tool_results(results)

    async def _stream_once(self, turn: _Turn) -> list[ContentBlock]:
        def _on_text(chunk: str) -> None:
            self._emit(turn, EventKind.ASSISTANT_RESPONSE_APPENDED, {"text": chunk})

        async def _consume() -> list[ContentBlock]:
            stream = self._endpoint.open_stream(self._conversation.history, cancel=turn.cancel)
            return await ContentAssembler(on_text=_on_text).reduce(stream)

        task = asyncio.ensure_future(_consume())
        self._stream_task = task
        try:
            return await task
        finally:
            self._stream_task = None

    async def _dispatch(self, invocations: list[ToolInvocationBlock], turn: _Turn) -> list[ToolResultBlock]:
        results = await asyncio.gather(
            *(
                self._tools.resolve(inv, turn_id=turn.turn_id, message_id=turn.message_id, cancel=turn.cancel)
                for inv in invocations
            )
        )
        by_id: dict[str, ToolResultBlock] = {}
        for r in results:
            by_id.setdefault(r.invocation_id, r)
        ordered: list[ToolResultBlock] = []
        for inv, positional in zip(invocations, results):
            ordered.append(by_id.pop(inv.id, positional))
        return ordered

    def _finish_cancelled(self, turn: _Turn, iterations: int) -> TurnResult:
        self._status = TurnStatus.CANCELLED
        self._conversation.discard_empty_assistant_tail()
        self.approvals.cancel_all()
        self._emit(turn, EventKind.TURN_CANCELLED, {"iterations": iterations})
        logger.info("Turn %s cancelled after %d model request(s)", turn.turn_id, iterations)
        return TurnResult(
            status=TurnStatus.CANCELLED,
            turn_id=turn.turn_id,
            message_id=turn.message_id,
            iterations=iterations,
            error="Turn cancelled.",
            error_code=ErrorCode.CANCELLED.value,
        )

    def _finish_failed(self, turn: _Turn, iterations: int, *, error: str, code: ErrorCode) -> TurnResult:
        self._status = TurnStatus.FAILED
        self._conversation.discard_empty_assistant_tail()
        self._emit(turn, EventKind.TURN_ERROR, {"error": error, "error_code": code.value})
        return TurnResult(
            status=TurnStatus.FAILED,
            turn_id=turn.turn_id,
            message_id=turn.message_id,
            iterations=iterations,
            error=error,
            error_code=code.value,
        )

    def _finish_iteration_limit(self, turn: _Turn, iterations: int) -> TurnResult:
        message = iteration_limit_message(self._max_iterations)
        logger.warning("Turn %s hit the iteration limit (%d)", turn.turn_id, self._max_iterations)
        self._conversation.append_assistant([TextBlock(text=message)])
        return self._finish_failed(turn, iterations, error=message, code=ErrorCode.ITERATION_LIMIT)

    def _emit(self, turn: _Turn, kind: EventKind, payload: dict[str, Any]) -> None:
        self._emitter.emit(kind, message_id=turn.message_id, turn_id=turn.turn_id, payload=payload)
