from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from .approval import ApprovalRegister
from .config import ChatConfig, ModelProfile
from .engine import TurnEngine
from .event_bus import EventBus, EventEmitter
from .llm.endpoint import ModelEndpoint, build_endpoint
from .prompts import load_default_system_prompt, render_prompt_template
from .tools.builtins import build_default_registry
from .tools.executor import LocalToolExecutor, ToolExecutor
from .tools.registry import ToolRegistry
from .tools.runtime import ToolRuntime
from .types import Message, TurnResult

logger = logging.getLogger(__name__)

EndpointFactory = Callable[[ModelProfile], ModelEndpoint]


class ChatSession:
    """
    One conversation bound to a project directory.

    Message sending is delegated to the `TurnEngine`; profile management lives here so
    callers never need to reach into the engine's internals. Create one explicitly and
    close it with `aclose()`.
    """

    def __init__(
        self,
        *,
        project_root: Path,
        config: ChatConfig,
        event_bus: EventBus | None = None,
        registry: ToolRegistry | None = None,
        executor: ToolExecutor | None = None,
        endpoint_factory: EndpointFactory | None = None,
    ) -> None:
        self.project_root = project_root.expanduser().resolve()
        self.config = config
        self.event_bus = event_bus or EventBus()
        self.registry = registry or build_default_registry()
        self._executor = executor or LocalToolExecutor(registry=self.registry, project_root=self.project_root)
        self._endpoint_factory = endpoint_factory or self._default_endpoint_factory

        self._profile = config.get_profile()
        self._endpoint = self._endpoint_factory(self._profile)

        emitter = EventEmitter(self.event_bus)
        self.tool_runtime = ToolRuntime(
            registry=self.registry,
            executor=self._executor,
            approvals=ApprovalRegister(),
            emitter=emitter,
            approval_mode=config.approval_mode,
        )
        self.engine = TurnEngine(
            endpoint=self._endpoint,
            tool_runtime=self.tool_runtime,
            emitter=emitter,
            max_iterations=config.max_iterations,
        )

    def _default_endpoint_factory(self, profile: ModelProfile) -> ModelEndpoint:
        template = profile.system_prompt or load_default_system_prompt()
        system_prompt = render_prompt_template(template, vars={"WORKSPACE": str(self.project_root)})
        return build_endpoint(profile, tools=self.registry.specs(), system_prompt=system_prompt)

    @property
    def profile(self) -> ModelProfile:
        return self._profile

    @property
    def busy(self) -> bool:
        return self.engine.busy

    @property
    def history(self) -> list[Message]:
        return self.engine.history

    def list_profiles(self) -> list[ModelProfile]:
        return list(self.config.profiles)

    async def select_profile(self, profile_id: str) -> bool:
        """Switch model profile and start a fresh conversation. Refused while a turn runs."""

        if self.engine.busy:
            return False
        profile = self.config.get_profile(profile_id)
        endpoint = self._endpoint_factory(profile)
        old = self._endpoint
        self.engine.set_endpoint(endpoint)
        self.engine.reset()
        self._endpoint = endpoint
        self._profile = profile
        await _maybe_aclose(old)
        logger.info("Selected profile %s (%s)", profile.profile_id, profile.model_name)
        return True

    def new_thread(self) -> bool:
        if not self.engine.reset():
            return False
        logger.info("Started a new conversation thread")
        return True

    async def send_message(self, text: str) -> TurnResult:
        return await self.engine.send_message(text)

    def cancel(self) -> bool:
        return self.engine.cancel()

    def approve_tool(self, invocation_id: str) -> bool:
        return self.engine.approve_tool(invocation_id)

    def cancel_tool(self, invocation_id: str) -> bool:
        return self.engine.cancel_tool(invocation_id)

    async def aclose(self) -> None:
        self.engine.cancel()
        await _maybe_aclose(self._endpoint)


async def _maybe_aclose(endpoint: ModelEndpoint) -> None:
    aclose = getattr(endpoint, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.warning("Failed to close model endpoint", exc_info=True)
