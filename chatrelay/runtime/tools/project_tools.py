from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar, Iterator

from ..llm.errors import CancellationToken
from .runtime import ToolRuntimeError

READ_FILE_MAX_CHARS = 200_000
DEFAULT_LIST_MAX_RESULTS = 100
SEARCH_MAX_RESULTS = 100

_SKIP_DIRS = {"node_modules"}


def _require_str(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Missing or invalid '{key}' (expected non-empty string).")
    return value


def _resolve_in_project(project_root: Path, rel: str) -> Path:
    rel_path = Path(rel)
    if rel_path.is_absolute():
        raise ToolRuntimeError("Absolute paths are not allowed. Provide a path relative to the workspace root.")
    candidate = (project_root / rel_path).resolve()
    project_root_resolved = project_root.resolve()
    if candidate != project_root_resolved and project_root_resolved not in candidate.parents:
        raise ToolRuntimeError("Path is outside the workspace.")
    return candidate


def _walk_files(project_root: Path) -> Iterator[Path]:
    """Yield workspace files in a stable order, skipping hidden directories and node_modules."""

    for dirpath, dirnames, filenames in os.walk(project_root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith(".") and d not in _SKIP_DIRS)
        for name in sorted(filenames):
            yield Path(dirpath) / name


def _rel(project_root: Path, path: Path) -> str:
    return path.relative_to(project_root).as_posix()


@dataclass(slots=True)
class CreateFileTool:
    name: ClassVar[str] = "create_file"
    description: ClassVar[str] = (
        "Creates a new file with the given content, or overwrites it if it already exists. "
        "The path must be relative to the workspace root."
    )
    input_schema: ClassVar[dict[str, Any]] = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Relative path, e.g. 'src/new_module.py'."},
            "content": {"type": "string", "description": "Full file content."},
        },
        "required": ["path", "content"],
        "additionalProperties": False,
    }
    requires_approval: ClassVar[bool] = True

    def execute(self, *, args: dict[str, Any], project_root: Path, cancel: CancellationToken | None = None) -> str:
        rel = _require_str(args, "path")
        content = args.get("content")
        if not isinstance(content, str):
            raise ValueError("Missing or invalid 'content' (expected string).")
        target = _resolve_in_project(project_root, rel)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return f"File {rel} has been created or updated."


@dataclass(slots=True)
class UpdateFileTool:
    name: ClassVar[str] = "update_file"
    description: ClassVar[str] = (
        "Replaces the entire content of an existing file. The path must be relative to the workspace root. "
        "Send the complete new content; partial edits are not supported."
    )
    input_schema: ClassVar[dict[str, Any]] = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Relative path to an existing file."},
            "content": {"type": "string", "description": "New full file content."},
        },
        "required": ["path", "content"],
        "additionalProperties": False,
    }
    requires_approval: ClassVar[bool] = True

    def execute(self, *, args: dict[str, Any], project_root: Path, cancel: CancellationToken | None = None) -> str:
        rel = _require_str(args, "path")
        content = args.get("content")
        if not isinstance(content, str):
            raise ValueError("Missing or invalid 'content' (expected string).")
        target = _resolve_in_project(project_root, rel)
        if not target.is_file():
            raise FileNotFoundError(f"File {rel} does not exist. Use create_file to create it.")
        target.write_text(content, encoding="utf-8")
        return f"File {rel} has been updated."


@dataclass(slots=True)
class DeleteFileTool:
    name: ClassVar[str] = "delete_file"
    description: ClassVar[str] = "Deletes the file at the given path, relative to the workspace root."
    input_schema: ClassVar[dict[str, Any]] = {
        "type": "object",
        "properties": {"path": {"type": "string", "description": "Relative path to the file."}},
        "required": ["path"],
        "additionalProperties": False,
    }
    requires_approval: ClassVar[bool] = True

    def execute(self, *, args: dict[str, Any], project_root: Path, cancel: CancellationToken | None = None) -> str:
        rel = _require_str(args, "path")
        target = _resolve_in_project(project_root, rel)
        if target.is_dir():
            raise ToolRuntimeError(f"{rel} is a directory; only files can be deleted.")
        if not target.exists():
            raise FileNotFoundError(f"File {rel} does not exist.")
        target.unlink()
        return f"File {rel} has been deleted."


@dataclass(slots=True)
class ReadFileTool:
    name: ClassVar[str] = "read_file"
    description: ClassVar[str] = (
        "Reads a file. Provide a relative path (e.g. 'cmd/main.go') or just a file name (e.g. 'main.go'); "
        "a bare name is searched for recursively. If several files match, specify the full relative path. "
        "Use search_files first when you do not know where a file is."
    )
    input_schema: ClassVar[dict[str, Any]] = {
        "type": "object",
        "properties": {"path": {"type": "string", "description": "File name or relative path."}},
        "required": ["path"],
        "additionalProperties": False,
    }
    requires_approval: ClassVar[bool] = False

    def execute(self, *, args: dict[str, Any], project_root: Path, cancel: CancellationToken | None = None) -> str:
        rel = _require_str(args, "path")
        target = _resolve_in_project(project_root, rel)
        if not target.is_file():
            target = self._find_unique(project_root, rel)
        try:
            content = target.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise ToolRuntimeError(f"Found {rel} at {_rel(project_root, target)}, but cannot read it: {e}") from e
        if len(content) > READ_FILE_MAX_CHARS:
            content = content[:READ_FILE_MAX_CHARS] + f"\n… (truncated, file has {len(content)} characters)"
        return content

    def _find_unique(self, project_root: Path, rel: str) -> Path:
        wanted = Path(rel).name.lower()
        root = project_root.resolve()
        matches = [p for p in _walk_files(root) if p.name.lower() == wanted]
        if not matches:
            raise FileNotFoundError(
                f"File {rel} not found in workspace. Use list_files or search_files to locate it."
            )
        if len(matches) > 1:
            paths = ", ".join(_rel(root, p) for p in matches)
            raise ToolRuntimeError(f"Multiple files named {Path(rel).name} found: {paths}. Specify the full relative path.")
        return matches[0]


@dataclass(slots=True)
class SearchFilesTool:
    name: ClassVar[str] = "search_files"
    description: ClassVar[str] = (
        "Finds files whose name contains the query (case-insensitive). Returns relative paths, one per line."
    )
    input_schema: ClassVar[dict[str, Any]] = {
        "type": "object",
        "properties": {"query": {"type": "string", "description": "Substring of the file name."}},
        "required": ["query"],
        "additionalProperties": False,
    }
    requires_approval: ClassVar[bool] = False

    def execute(self, *, args: dict[str, Any], project_root: Path, cancel: CancellationToken | None = None) -> str:
        query = _require_str(args, "query").strip().lower()
        root = project_root.resolve()
        found: list[str] = []
        for p in _walk_files(root):
            if query in p.name.lower():
                found.append(_rel(root, p))
                if len(found) >= SEARCH_MAX_RESULTS:
                    break
        if not found:
            return f"No files matching '{query}'."
        return "\n".join(found)


@dataclass(slots=True)
class ListFilesTool:
    name: ClassVar[str] = "list_files"
    description: ClassVar[str] = (
        "Lists workspace files recursively (skipping hidden directories and node_modules), "
        "marking each as readable or not."
    )
    input_schema: ClassVar[dict[str, Any]] = {
        "type": "object",
        "properties": {
            "maxResults": {
                "type": "integer",
                "minimum": 1,
                "description": f"Maximum number of files to return (default {DEFAULT_LIST_MAX_RESULTS}).",
            }
        },
        "additionalProperties": False,
    }
    requires_approval: ClassVar[bool] = False

    def execute(self, *, args: dict[str, Any], project_root: Path, cancel: CancellationToken | None = None) -> str:
        max_results = args.get("maxResults", DEFAULT_LIST_MAX_RESULTS)
        if isinstance(max_results, float) and max_results.is_integer():
            max_results = int(max_results)
        if isinstance(max_results, bool) or not isinstance(max_results, int) or max_results < 1:
            raise ValueError("Invalid 'maxResults' (expected positive integer).")

        root = project_root.resolve()
        lines: list[str] = []
        for p in _walk_files(root):
            status = "Readable" if os.access(p, os.R_OK) else "Not readable"
            lines.append(f"{_rel(root, p)} ({status})")
            if len(lines) >= max_results:
                break

        header = f"Workspace root: {root}"
        if not lines:
            return f"{header}\n\nNo files found in workspace."
        return f"{header}\n\nFiles:\n" + "\n".join(lines)
