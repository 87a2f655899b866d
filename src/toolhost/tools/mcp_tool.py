"""
MCPRemoteTool - expose a capability server tool through the unified registry.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

from loguru import logger

from toolhost.mcp.client import MCPClient
from toolhost.mcp.types import MCPTool
from toolhost.tools.base import BaseTool, ToolDefinition, ToolOrigin, ToolPermission, ToolResult
from toolhost.tools.schema import ensure_object_schema, sanitize_schema


def flatten_mcp_content(content: Any) -> str:
    if not content:
        return ""
    parts = []
    for block in list(content):
        # Pydantic models (mcp.types.*)
        text = getattr(block, "text", None)
        if isinstance(text, str) and text.strip():
            parts.append(text.strip())
            continue
        if isinstance(block, dict) and isinstance(block.get("text"), str) and block["text"].strip():
            parts.append(block["text"].strip())
            continue
        parts.append(str(block))
    return "\n".join(p for p in parts if p)


class MCPRemoteTool(BaseTool):
    origin = ToolOrigin.EXTERNAL

    def __init__(self, *, client: MCPClient, tool: MCPTool) -> None:
        self._client = client
        self._tool = tool
        self._definition = ToolDefinition(
            name=tool.tool_name,
            description=tool.description or f"Tool '{tool.tool_name}' from server {tool.server_name}",
            permissions=[ToolPermission.EXECUTE],
            parameters=ensure_object_schema(sanitize_schema(tool.input_schema)),
            requires_confirmation=tool.destructive,
        )

    @property
    def definition(self) -> ToolDefinition:
        return self._definition

    @property
    def id(self) -> str:
        return self._tool.id

    @property
    def server_name(self) -> str:
        return self._tool.server_name

    @property
    def mcp_tool(self) -> MCPTool:
        return self._tool

    def _metadata(self) -> Dict[str, Any]:
        return {"server_name": self._tool.server_name, "tool_name": self._tool.tool_name}

    async def execute(self, **kwargs) -> ToolResult:
        return await self._invoke(kwargs, None)

    async def safe_execute(self, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> ToolResult:
        # Schema checks happen in the client's validation step.
        start_time = time.time()
        result = await self._invoke(dict(params or {}), timeout)
        result.execution_time_ms = (time.time() - start_time) * 1000
        return result

    async def _invoke(self, params: Dict[str, Any], timeout: Optional[float]) -> ToolResult:
        try:
            res = await self._client.invoke(self._tool.server_name, self._tool.tool_name, params, timeout=timeout)
        except Exception as e:
            logger.debug(f"MCPRemoteTool call failed ({self.id}): {e}")
            return ToolResult(success=False, error=str(e), metadata=self._metadata())

        content = getattr(res, "content", None)
        if bool(getattr(res, "isError", False)):
            msg = flatten_mcp_content(content) or "MCP tool returned an error"
            return ToolResult(success=False, error=msg, metadata=self._metadata())

        structured = getattr(res, "structuredContent", None)
        data: Any = structured if structured is not None else flatten_mcp_content(content)
        return ToolResult(success=True, data=data, metadata=self._metadata())
