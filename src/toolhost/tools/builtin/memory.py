"""
Memory Tools - a plain markdown file the agent can append to and read back.
"""

import asyncio
from datetime import datetime
from pathlib import Path

from toolhost.tools.base import BaseTool, ToolDefinition, ToolPermission, ToolResult


class MemoryFile:
    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")

    def append(self, content: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M")
        with self.path.open("a", encoding="utf-8") as f:
            f.write(f"\n## {stamp}\n{content.strip()}\n")


class WriteToMemoryTool(BaseTool):
    def __init__(self, memory: MemoryFile):
        self.memory = memory

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="write_to_memory",
            description="Append content to the memory file. It is available as context in later conversations.",
            permissions=[ToolPermission.WRITE],
            parameters={
                "type": "object",
                "properties": {"content": {"type": "string", "description": "The content to remember"}},
                "required": ["content"],
            },
        )

    async def execute(self, content: str, **kwargs) -> ToolResult:
        if not str(content or "").strip():
            return ToolResult(success=False, error="Nothing to write")
        await asyncio.to_thread(self.memory.append, str(content))
        return ToolResult(success=True, data="Saved to memory", metadata={"path": str(self.memory.path)})


class ReadMemoryTool(BaseTool):
    def __init__(self, memory: MemoryFile):
        self.memory = memory

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="read_memory",
            description="Read the current content of the memory file",
            permissions=[ToolPermission.READ],
            parameters={"type": "object", "properties": {}, "required": []},
        )

    async def execute(self, **kwargs) -> ToolResult:
        content = await asyncio.to_thread(self.memory.read)
        return ToolResult(success=True, data=content or "(memory is empty)")


def create_memory_tools(path: Path) -> list:
    memory = MemoryFile(path)
    return [WriteToMemoryTool(memory), ReadMemoryTool(memory)]
