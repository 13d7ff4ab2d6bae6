from __future__ import annotations

from typing import TYPE_CHECKING, AsyncIterator, Protocol, Sequence, runtime_checkable

from ..types import Message, StreamEvent
from .errors import CancellationToken, ModelConfigError
from .types import ProviderKind, ToolSpec

if TYPE_CHECKING:
    from ..config import ModelProfile


@runtime_checkable
class ModelEndpoint(Protocol):
    """
    Streaming model boundary.

    `open_stream` returns an async iterator of stream events for one model reply over the
    full history. It must stop promptly once `cancel` fires and raise `LLMRequestError` for
    transport failures.
    """

    def open_stream(self, history: Sequence[Message], *, cancel: CancellationToken) -> AsyncIterator[StreamEvent]: ...


def build_endpoint(
    profile: "ModelProfile",
    *,
    tools: Sequence[ToolSpec] = (),
    system_prompt: str | None = None,
) -> ModelEndpoint:
    if profile.provider_kind is ProviderKind.ANTHROPIC:
        from .client_exec_anthropic import AnthropicEndpoint

        return AnthropicEndpoint(profile=profile, tools=tools, system_prompt=system_prompt)
    if profile.provider_kind is ProviderKind.OPENAI_COMPATIBLE:
        from .client_exec_openai_compatible import OpenAICompatibleEndpoint

        return OpenAICompatibleEndpoint(profile=profile, tools=tools, system_prompt=system_prompt)
    raise ModelConfigError(f"Unsupported provider kind: {profile.provider_kind}")
