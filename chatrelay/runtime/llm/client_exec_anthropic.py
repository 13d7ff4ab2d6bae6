from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Sequence

from ..types import (
    ArgumentsDelta,
    BlockStart,
    BlockStop,
    BlockType,
    Message,
    StreamEvent,
    TextDelta,
    TurnStop,
    block_to_dict,
)
from .client_common import _build_http_client, _maybe_close_stream, _resolve_api_key, _wrap_request_error
from .errors import CancellationToken
from .types import ProviderKind, ToolSpec

if TYPE_CHECKING:
    from ..config import ModelProfile

logger = logging.getLogger(__name__)


def to_anthropic_messages(history: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert history to Messages API shape, merging consecutive same-role messages."""

    out: list[dict[str, Any]] = []
    for msg in history:
        if msg.is_empty:
            continue
        content = [block_to_dict(b) for b in msg.blocks]
        if out and out[-1]["role"] == msg.role.value:
            out[-1]["content"].extend(content)
        else:
            out.append({"role": msg.role.value, "content": content})
    return out


class AnthropicEventMapper:
    """Maps raw Messages API stream events onto `StreamEvent`s; unknown block types are dropped."""

    def __init__(self) -> None:
        self._known: set[int] = set()
        self._stop_reason: str | None = None

    def map(self, raw: Any) -> list[StreamEvent]:
        event_type = getattr(raw, "type", None)

        if event_type == "content_block_start":
            index = int(getattr(raw, "index", 0))
            block = getattr(raw, "content_block", None)
            block_type = getattr(block, "type", None)
            if block_type == "text":
                self._known.add(index)
                events: list[StreamEvent] = [BlockStart(index=index, block_type=BlockType.TEXT)]
                initial = getattr(block, "text", None)
                if isinstance(initial, str) and initial:
                    events.append(TextDelta(index=index, text=initial))
                return events
            if block_type == "tool_use":
                self._known.add(index)
                return [
                    BlockStart(
                        index=index,
                        block_type=BlockType.TOOL_INVOCATION,
                        invocation_id=str(getattr(block, "id", "") or ""),
                        name=str(getattr(block, "name", "") or ""),
                    )
                ]
            logger.debug("Skipping unsupported content block type %r", block_type)
            return []

        if event_type == "content_block_delta":
            index = int(getattr(raw, "index", 0))
            if index not in self._known:
                return []
            delta = getattr(raw, "delta", None)
            delta_type = getattr(delta, "type", None)
            if delta_type == "text_delta":
                text = getattr(delta, "text", None)
                return [TextDelta(index=index, text=text)] if isinstance(text, str) and text else []
            if delta_type == "input_json_delta":
                partial = getattr(delta, "partial_json", None)
                return [ArgumentsDelta(index=index, partial_json=partial)] if isinstance(partial, str) else []
            return []

        if event_type == "content_block_stop":
            index = int(getattr(raw, "index", 0))
            if index not in self._known:
                return []
            return [BlockStop(index=index)]

        if event_type == "message_delta":
            delta = getattr(raw, "delta", None)
            stop_reason = getattr(delta, "stop_reason", None)
            if isinstance(stop_reason, str) and stop_reason:
                self._stop_reason = stop_reason
            return []

        if event_type == "message_stop":
            return [TurnStop(stop_reason=self._stop_reason)]

        return []


class AnthropicEndpoint:
    provider_kind = ProviderKind.ANTHROPIC

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
            import anthropic

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
            self._client = anthropic.AsyncAnthropic(**kwargs)
        return self._client

    def build_request(self, history: Sequence[Message]) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": self._profile.model_name,
            "max_tokens": self._profile.max_tokens,
            "messages": to_anthropic_messages(history),
        }
        if self._system_prompt:
            request["system"] = self._system_prompt
        if self._tools:
            request["tools"] = [t.to_anthropic() for t in self._tools]
        return request

    async def open_stream(self, history: Sequence[Message], *, cancel: CancellationToken) -> AsyncIterator[StreamEvent]:
        if cancel.cancelled:
            return
        client = self._get_client()
        request = self.build_request(history)
        try:
            stream = await client.messages.create(**request, stream=True)
        except Exception as e:
            raise self._wrap(e, "messages.create") from e

        mapper = AnthropicEventMapper()
        try:
            async for raw in stream:
                if cancel.cancelled:
                    return
                for event in mapper.map(raw):
                    yield event
        except Exception as e:
            if cancel.cancelled:
                return
            raise self._wrap(e, "messages.stream") from e
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
