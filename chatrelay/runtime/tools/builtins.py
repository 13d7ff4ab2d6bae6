from __future__ import annotations

from .project_tools import CreateFileTool, DeleteFileTool, ListFilesTool, ReadFileTool, SearchFilesTool, UpdateFileTool
from .registry import ToolRegistry
from .shell_tools import ReadTerminalOutputTool, RunCommandTool, TerminalOutputStore


def build_default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    for tool in (
        CreateFileTool(),
        UpdateFileTool(),
        DeleteFileTool(),
        ReadFileTool(),
        SearchFilesTool(),
        ListFilesTool(),
    ):
        registry.register(tool)

    terminal = TerminalOutputStore()
    registry.register(RunCommandTool(store=terminal))
    registry.register(ReadTerminalOutputTool(store=terminal))
    return registry
