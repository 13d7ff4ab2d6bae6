from __future__ import annotations

from .builtins import build_default_registry
from .executor import LocalToolExecutor, ToolExecutor
from .registry import Tool, ToolRegistry
from .runtime import (
    InspectionDecision,
    InspectionResult,
    ToolApprovalMode,
    ToolCancelledError,
    ToolRuntime,
    ToolRuntimeError,
    summarize_tool_call,
)

__all__ = [
    "InspectionDecision",
    "InspectionResult",
    "LocalToolExecutor",
    "Tool",
    "ToolApprovalMode",
    "ToolCancelledError",
    "ToolExecutor",
    "ToolRegistry",
    "ToolRuntime",
    "ToolRuntimeError",
    "build_default_registry",
    "summarize_tool_call",
]
