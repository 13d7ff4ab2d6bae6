from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol

from ..llm.errors import CancellationToken
from ..llm.types import ToolSpec


class Tool(Protocol):
    name: str
    description: str
    input_schema: dict[str, Any]
    requires_approval: bool

    def execute(
        self, *, args: dict[str, Any], project_root: Path, cancel: CancellationToken | None = None
    ) -> str: ...


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def specs(self) -> list[ToolSpec]:
        return [
            ToolSpec(name=t.name, description=t.description, input_schema=dict(t.input_schema))
            for t in self._tools.values()
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
