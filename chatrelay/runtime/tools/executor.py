from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from ..error_codes import ErrorCode
from ..llm.errors import CancellationToken
from .registry import ToolRegistry
from .runtime import ToolRuntimeError


@runtime_checkable
class ToolExecutor(Protocol):
    """
    Runs a named tool with parsed arguments and returns its textual output.

    `cancel` fires when the owning turn is cancelled; long-running tools should stop
    and raise `ToolCancelledError` instead of running to completion.
    """

    async def execute(self, name: str, input: dict[str, Any], *, cancel: CancellationToken | None = None) -> str: ...


class LocalToolExecutor:
    def __init__(self, *, registry: ToolRegistry, project_root: Path) -> None:
        self._registry = registry
        self._project_root = project_root.expanduser().resolve()

    @property
    def project_root(self) -> Path:
        return self._project_root

    async def execute(self, name: str, input: dict[str, Any], *, cancel: CancellationToken | None = None) -> str:
        tool = self._registry.get(name)
        if tool is None:
            raise ToolRuntimeError(f"Unknown tool: {name}", code=ErrorCode.TOOL_UNKNOWN)
        # Tools do blocking file and process I/O; they poll `cancel` from the worker thread.
        raw = await asyncio.to_thread(tool.execute, args=input, project_root=self._project_root, cancel=cancel)
        if isinstance(raw, str):
            return raw
        return json.dumps(raw, ensure_ascii=False, default=str)
