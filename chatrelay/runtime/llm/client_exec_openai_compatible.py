from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Sequence

from ..ids import new_tool_call_id
from ..types import (
    ArgumentsDelta,
    BlockStart,
    BlockStop,
    BlockType,
    Message,
    MessageRole,
    StreamEvent,
    TextBlock,
    TextDelta,
    ToolInvocationBlock,
    ToolResultBlock,
    TurnStop,
)
from .client_common import _build_http_client, _maybe_close_stream, _resolve_api_key, _wrap_request_error
from .errors import CancellationToken
from .types import ProviderKind, ToolSpec

if TYPE_CHECKING:
    from ..config import ModelProfile

logger = logging.getLogger(__name__)


def to_openai_messages(history: Sequence[Message], *, system_prompt: str | None = None) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in history:
        if msg.is_empty:
            continue
        if msg.role is MessageRole.ASSISTANT:
            text = "".join(b.text for b in msg.blocks if isinstance(b, TextBlock))
            calls = [
                {
                    "id": b.id,
                    "type": "function",
                    "function": {"name": b.name, "arguments": json.dumps(b.input, ensure_ascii=False)},
                }
                for b in msg.blocks
                if isinstance(b, ToolInvocationBlock)
            ]
            item: dict[str, Any] = {"role": "assistant", "content": text or None}
            if calls:
                item["tool_calls"] = calls
            out.append(item)
            continue

        # Tool results must directly follow the assistant message that requested them.
        for b in msg.blocks:
            if isinstance(b, ToolResultBlock):
                out.append({"role": "tool", "tool_call_id": b.invocation_id, "content": b.content})
        text = "".join(b.text for b in msg.blocks if isinstance(b, TextBlock))
        if text:
            out.append({"role": "user", "content": text})
    return out


class OpenAIChunkMapper:
    """
    Synthesizes block boundaries from Chat Completions stream chunks.

    Text and each indexed tool call get their own block index. All open blocks are closed
    when a `finish_reason` arrives (or by `finish()` if the stream ends without one).
    """

    def __init__(self) -> None:
        self._next_index = 0
        self._text_index: int | None = None
        self._tool_slots: dict[int, int] = {}
        self._open: list[int] = []
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def map(self, chunk: Any) -> list[StreamEvent]:
        if self._finished:
            return []
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return []
        choice = choices[0]
        delta = getattr(choice, "delta", None)
        events: list[StreamEvent] = []

        content = getattr(delta, "content", None)
        if isinstance(content, str) and content:
            if self._text_index is None:
                self._text_index = self._open_block(events, BlockType.TEXT)
            events.append(TextDelta(index=self._text_index, text=content))

        for tc in getattr(delta, "tool_calls", None) or []:
            tc_index = getattr(tc, "index", None)
            if not isinstance(tc_index, int):
                tc_index = len(self._tool_slots)
            fn = getattr(tc, "function", None)
            if tc_index not in self._tool_slots:
                call_id = getattr(tc, "id", None)
                name = getattr(fn, "name", None)
                self._tool_slots[tc_index] = self._open_block(
                    events,
                    BlockType.TOOL_INVOCATION,
                    invocation_id=str(call_id) if call_id else new_tool_call_id(),
                    name=str(name or ""),
                )
            args = getattr(fn, "arguments", None)
            if isinstance(args, str) and args:
                events.append(ArgumentsDelta(index=self._tool_slots[tc_index], partial_json=args))

        finish_reason = getattr(choice, "finish_reason", None)
        if isinstance(finish_reason, str) and finish_reason:
            events.extend(self._close_all(finish_reason))
        return events

    def finish(self) -> list[StreamEvent]:
        if self._finished:
            return []
        return self._close_all(None)

    def _open_block(
        self,
        events: list[StreamEvent],
        block_type: BlockType,
        *,
        invocation_id: str | None = None,
        name: str | None = None,
    ) -> int:
        index = self._next_index
        self._next_index += 1
        self._open.append(index)
        events.append(BlockStart(index=index, block_type=block_type, invocation_id=invocation_id, name=name))
        return index

    def _close_all(self, stop_reason: str | None) -> list[StreamEvent]:
        events: list[StreamEvent] = [BlockStop(index=i) for i in self._open]
        self._open.clear()
        events.append(TurnStop(stop_reason=stop_reason))
        self._finished = True
        return events


class OpenAICompatibleEndpoint:
    provider_kind = ProviderKind.OPENAI_COMPATIBLE

    def __init__(
        self,
        *,
        profile: "ModelProfile",
        tools: Sequence[ToolSpec] = (),
        system_prompt: str | None = None,
        client: Any | None = None,
    ) -> None:
        self._profile = profile
        self._tools = list(tools)
        self._system_prompt = system_prompt if system_prompt is not None else profile.system_prompt
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            import openai

            api_key = _resolve_api_key(
                self._profile.credential_ref,
                provider_kind=self.provider_kind,
                profile_id=self._profile.profile_id,
                model=self._profile.model_name,
            )
            kwargs: dict[str, Any] = {
                "api_key": api_key,
                "http_client": _build_http_client(self._profile.timeout_s),
                "max_retries": 2,
            }
            if self._profile.base_url:
                kwargs["base_url"] = self._profile.base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        return self._client

    def build_request(self, history: Sequence[Message]) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": self._profile.model_name,
            "max_tokens": self._profile.max_tokens,
            "messages": to_openai_messages(history, system_prompt=self._system_prompt),
        }
        if self._tools:
            request["tools"] = [t.to_openai() for t in self._tools]
        return request

    async def open_stream(self, history: Sequence[Message], *, cancel: CancellationToken) -> AsyncIterator[StreamEvent]:
        if cancel.cancelled:
            return
        client = self._get_client()
        request = self.build_request(history)
        try:
            stream = await client.chat.completions.create(**request, stream=True)
        except Exception as e:
            raise self._wrap(e, "chat.completions.create") from e

        mapper = OpenAIChunkMapper()
        try:
            async for chunk in stream:
                if cancel.cancelled:
                    return
                for event in mapper.map(chunk):
                    yield event
                if mapper.finished:
                    break
            for event in mapper.finish():
                yield event
        except Exception as e:
            if cancel.cancelled:
                return
            raise self._wrap(e, "chat.completions.stream") from e
        finally:
            await _maybe_close_stream(stream)

    async def aclose(self) -> None:
        client = self._client
        self._client = None
        if client is not None:
            await client.close()

    def _wrap(self, exc: BaseException, operation: str):
        return _wrap_request_error(
            exc,
            provider_kind=self.provider_kind,
            profile_id=self._profile.profile_id,
            model=self._profile.model_name,
            operation=operation,
        )
