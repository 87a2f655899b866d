"""
File Operations Tools - list, read, write and edit files under the workspace root.
"""

import asyncio
import re
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from toolhost.tools.base import BaseTool, ToolDefinition, ToolPermission, ToolResult


MAX_READ_BYTES = 10 * 1024 * 1024


class Workspace:
    """Resolves tool paths against a root directory they may not escape."""

    def __init__(self, root: Path):
        self.root = Path(root).expanduser().resolve()

    def resolve(self, path: Optional[str]) -> Path:
        raw = (path or "").strip().strip('"').strip("'")
        candidate = (self.root / raw).resolve() if raw else self.root
        if candidate != self.root and self.root not in candidate.parents:
            raise ValueError(f"Path escapes the workspace: {path}")
        return candidate

    def relative(self, path: Path) -> str:
        rel = path.relative_to(self.root).as_posix()
        return rel if rel != "." else ""


class _WorkspaceTool(BaseTool):
    def __init__(self, workspace: Workspace):
        self.workspace = workspace


class ListFilesTool(_WorkspaceTool):
    """List files and folders."""

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="list_files",
            description="List files and folders in the workspace with optional filtering",
            permissions=[ToolPermission.READ],
            parameters={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Folder to list (defaults to the workspace root)"},
                    "search": {"type": "string", "description": "Only include entries whose name contains this text"},
                    "type": {
                        "type": "string",
                        "description": 'Filter by type: "file", "folder" or "all" (default: "all")',
                    },
                    "recursive": {"type": "boolean", "description": "Include subdirectories (default: false)"},
                },
            },
        )

    async def execute(
        self,
        path: Optional[str] = None,
        search: Optional[str] = None,
        type: Optional[str] = None,
        recursive: Optional[bool] = False,
        **kwargs,
    ) -> ToolResult:
        folder = self.workspace.resolve(path)
        if not folder.is_dir():
            return ToolResult(success=False, error=f"Not a folder: {path}")

        kind = (type or "all").lower()
        needle = (search or "").lower()

        def _scan() -> List[Dict[str, Any]]:
            entries = folder.rglob("*") if recursive else folder.iterdir()
            out = []
            for entry in sorted(entries):
                is_dir = entry.is_dir()
                if kind == "file" and is_dir or kind == "folder" and not is_dir:
                    continue
                if needle and needle not in entry.name.lower():
                    continue
                out.append({"path": self.workspace.relative(entry), "type": "folder" if is_dir else "file"})
            return out

        entries = await asyncio.to_thread(_scan)
        return ToolResult(success=True, data=entries, metadata={"count": len(entries)})


class ReadFileTool(_WorkspaceTool):
    """Read file contents with line numbers."""

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="read_file",
            description="Read a file from the workspace. Each line is prefixed with its line number.",
            permissions=[ToolPermission.READ],
            parameters={
                "type": "object",
                "properties": {"path": {"type": "string", "description": "File path relative to the workspace"}},
                "required": ["path"],
            },
        )

    async def execute(self, path: str, **kwargs) -> ToolResult:
        file_path = self.workspace.resolve(path)
        if not file_path.is_file():
            return ToolResult(success=False, error=f"File not found: {path}")

        size = file_path.stat().st_size
        if size > MAX_READ_BYTES:
            return ToolResult(success=False, error=f"File too large ({size / 1024 / 1024:.1f}MB). Max 10MB.")

        content = await asyncio.to_thread(file_path.read_text, encoding="utf-8", errors="replace")
        lines = content.split("\n")
        numbered = "\n".join(f"{i} | {line}" for i, line in enumerate(lines, start=1))
        return ToolResult(success=True, data=numbered, metadata={"path": path, "size": size, "lines": len(lines)})


class WriteFileTool(_WorkspaceTool):
    """Write content to a file."""

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="write_file",
            description="Write complete content to a file, overwriting it if it exists. Parent folders are created.",
            permissions=[ToolPermission.WRITE],
            parameters={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "File path relative to the workspace"},
                    "content": {"type": "string", "description": "The complete content to write"},
                },
                "required": ["path", "content"],
            },
            requires_confirmation=True,
        )

    async def execute(self, path: str, content: str, **kwargs) -> ToolResult:
        file_path = self.workspace.resolve(path)
        if file_path == self.workspace.root:
            return ToolResult(success=False, error="A file path is required")

        def _write() -> None:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")

        existed = file_path.exists()
        await asyncio.to_thread(_write)
        logger.info(f"Wrote {len(content)} chars to {path}")
        return ToolResult(
            success=True,
            data=f"{'Updated' if existed else 'Created'} {path}",
            metadata={"path": path, "bytes": len(content.encode("utf-8"))},
        )


class InsertContentTool(_WorkspaceTool):
    """Insert content at line positions."""

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="insert_content",
            description="Insert content at specific line positions in a file without overwriting existing lines.",
            permissions=[ToolPermission.WRITE],
            parameters={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "File to insert content into"},
                    "operations": {
                        "type": "array",
                        "description": "Insertion operations",
                        "items": {
                            "type": "object",
                            "properties": {
                                "start_line": {
                                    "type": "integer",
                                    "description": "1-based line the content is inserted before; 0 or past the end appends",
                                },
                                "content": {"type": "string", "description": "The content to insert"},
                            },
                            "required": ["start_line", "content"],
                        },
                    },
                },
                "required": ["path", "operations"],
            },
            requires_confirmation=True,
        )

    async def execute(self, path: str, operations: List[Dict[str, Any]], **kwargs) -> ToolResult:
        file_path = self.workspace.resolve(path)
        if not file_path.is_file():
            return ToolResult(success=False, error=f"File not found: {path}")

        text = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
        lines = text.split("\n")

        # Apply bottom-up so earlier line numbers stay valid.
        ordered = sorted(operations or [], key=lambda op: int(op.get("start_line", 0)), reverse=True)
        for op in ordered:
            start = int(op.get("start_line", 0))
            new_lines = str(op.get("content", "")).split("\n")
            index = len(lines) if start <= 0 or start > len(lines) else start - 1
            lines[index:index] = new_lines

        await asyncio.to_thread(file_path.write_text, "\n".join(lines), encoding="utf-8")
        return ToolResult(success=True, data=f"Applied {len(ordered)} insertion(s) to {path}")


class SearchAndReplaceTool(_WorkspaceTool):
    """Search and replace inside a file."""

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="search_and_replace",
            description="Search and replace text in a file. Supports regex, line ranges and case-insensitive matching.",
            permissions=[ToolPermission.WRITE],
            parameters={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "File to modify"},
                    "operations": {
                        "type": "array",
                        "description": "Search/replace operations",
                        "items": {
                            "type": "object",
                            "properties": {
                                "search": {"type": "string", "description": "Text or pattern to search for"},
                                "replace": {"type": "string", "description": "Replacement text"},
                                "start_line": {"type": "integer", "description": "First line of the range (optional)"},
                                "end_line": {"type": "integer", "description": "Last line of the range (optional)"},
                                "use_regex": {"type": "boolean", "description": "Treat search as a regex"},
                                "ignore_case": {"type": "boolean", "description": "Case-insensitive matching"},
                            },
                            "required": ["search", "replace"],
                        },
                    },
                },
                "required": ["path", "operations"],
            },
            requires_confirmation=True,
        )

    async def execute(self, path: str, operations: List[Dict[str, Any]], **kwargs) -> ToolResult:
        file_path = self.workspace.resolve(path)
        if not file_path.is_file():
            return ToolResult(success=False, error=f"File not found: {path}")

        lines = (await asyncio.to_thread(file_path.read_text, encoding="utf-8")).split("\n")
        total = 0
        for op in operations or []:
            search = str(op.get("search", ""))
            if not search:
                continue
            pattern = search if op.get("use_regex") else re.escape(search)
            flags = re.IGNORECASE if op.get("ignore_case") else 0
            regex = re.compile(pattern, flags)
            replacement = str(op.get("replace", ""))
            if not op.get("use_regex"):
                replacement = replacement.replace("\\", "\\\\")

            start = max(int(op.get("start_line") or 1), 1) - 1
            end = min(int(op.get("end_line") or len(lines)), len(lines))
            if start >= end:
                continue
            segment = "\n".join(lines[start:end])
            segment, count = regex.subn(replacement, segment)
            if count:
                lines[start:end] = segment.split("\n")
                total += count

        if total:
            await asyncio.to_thread(file_path.write_text, "\n".join(lines), encoding="utf-8")
        return ToolResult(success=True, data=f"Made {total} replacement(s) in {path}", metadata={"replacements": total})


class ManageFilesTool(_WorkspaceTool):
    """Move, delete and create folders."""

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="manage_files",
            description="Move, rename or delete files and folders, and create folders.",
            permissions=[ToolPermission.WRITE],
            parameters={
                "type": "object",
                "properties": {
                    "operations": {
                        "type": "array",
                        "description": "File management operations",
                        "items": {
                            "type": "object",
                            "properties": {
                                "action": {
                                    "type": "string",
                                    "description": 'One of "move", "delete" or "create_folder"',
                                },
                                "source_path": {"type": "string", "description": "Existing path (move)"},
                                "destination_path": {"type": "string", "description": "New path (move)"},
                                "path": {"type": "string", "description": "Target path (delete, create_folder)"},
                            },
                            "required": ["action"],
                        },
                    }
                },
                "required": ["operations"],
            },
            requires_confirmation=True,
        )

    def _apply(self, op: Dict[str, Any]) -> str:
        action = str(op.get("action", "")).strip().lower()
        if action == "move":
            src = self.workspace.resolve(op.get("source_path"))
            dst = self.workspace.resolve(op.get("destination_path"))
            if not src.exists():
                raise FileNotFoundError(f"Source not found: {op.get('source_path')}")
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(src), str(dst))
            return f"Moved {self.workspace.relative(src)} -> {self.workspace.relative(dst)}"
        if action == "delete":
            target = self.workspace.resolve(op.get("path") or op.get("source_path"))
            if target == self.workspace.root:
                raise ValueError("Refusing to delete the workspace root")
            if target.is_dir():
                shutil.rmtree(target)
            elif target.exists():
                target.unlink()
            else:
                raise FileNotFoundError(f"Not found: {op.get('path') or op.get('source_path')}")
            return f"Deleted {self.workspace.relative(target)}"
        if action == "create_folder":
            target = self.workspace.resolve(op.get("path"))
            target.mkdir(parents=True, exist_ok=True)
            return f"Created folder {self.workspace.relative(target)}"
        raise ValueError(f"Unknown action: {action or '<empty>'}")

    async def execute(self, operations: List[Dict[str, Any]], **kwargs) -> ToolResult:
        done: List[str] = []
        for op in operations or []:
            done.append(await asyncio.to_thread(self._apply, op))
        return ToolResult(success=True, data=done)


def create_file_tools(root: Path) -> List[BaseTool]:
    workspace = Workspace(root)
    return [
        ListFilesTool(workspace),
        ReadFileTool(workspace),
        WriteFileTool(workspace),
        InsertContentTool(workspace),
        SearchAndReplaceTool(workspace),
        ManageFilesTool(workspace),
    ]
