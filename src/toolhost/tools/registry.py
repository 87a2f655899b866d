"""
Tool Registry - one flat, id-keyed namespace of built-in and external tools.

Built-ins are registered once at construction. External tools are swapped
wholesale per server: every refresh first purges the server's previous tools.
"""

from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from langchain_core.tools import BaseTool as LangChainBaseTool
from loguru import logger

from toolhost.core.events import TOOLS_CHANGED
from toolhost.mcp.types import MCPTool
from toolhost.tools.adapters import openai_function_name, to_langchain_tools, to_openai_tools
from toolhost.tools.base import BaseTool, ToolOrigin, ToolResult
from toolhost.tools.builtin.files import create_file_tools
from toolhost.tools.builtin.memory import create_memory_tools
from toolhost.tools.mcp_tool import MCPRemoteTool

if TYPE_CHECKING:
    from toolhost.core.confirmations import ConfirmationBroker
    from toolhost.core.events import EventBus
    from toolhost.mcp.client import MCPClient
    from toolhost.security.policy import SecurityPolicy


class ToolRegistry:
    """
    Unified tool registry.

    Features:
    - Built-in workspace tools
    - Per-server swap of external tools
    - Confirmation gate for destructive tools
    - OpenAI / LangChain export
    """

    def __init__(
        self,
        client: Optional["MCPClient"] = None,
        *,
        workspace_dir: Union[str, Path, None] = None,
        memory_file: Union[str, Path, None] = None,
        security: Optional["SecurityPolicy"] = None,
        confirmations: Optional["ConfirmationBroker"] = None,
        event_bus: Optional["EventBus"] = None,
        register_builtins: bool = True,
    ):
        self.client = client
        self.security = security if security is not None else (client.security if client else None)
        self.confirmations = confirmations
        self.event_bus = event_bus

        self._tools: Dict[str, BaseTool] = {}
        self._revision = 0

        if register_builtins:
            root = Path(workspace_dir or ".")
            for tool in create_file_tools(root):
                self.register_builtin(tool)
            for tool in create_memory_tools(Path(memory_file) if memory_file else root / "memory.md"):
                self.register_builtin(tool)

        logger.debug(f"ToolRegistry created with {len(self._tools)} built-in tools")

    @property
    def revision(self) -> int:
        return int(self._revision)

    def _bump_revision(self, reason: str, server_name: Optional[str] = None) -> None:
        self._revision += 1
        if self.event_bus:
            self.event_bus.publish(
                TOOLS_CHANGED,
                {"revision": self._revision, "reason": reason, "server_name": server_name},
                source="tool_registry",
            )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_builtin(self, tool: BaseTool) -> None:
        if tool.id in self._tools:
            raise ValueError(f"Tool id already registered: {tool.id}")
        self._tools[tool.id] = tool
        self._bump_revision("builtin")
        logger.debug(f"Registered built-in tool: {tool.id}")

    def register_external_tool(self, tool: MCPTool) -> MCPRemoteTool:
        if self.client is None:
            raise RuntimeError("ToolRegistry has no MCP client")
        existing = self._tools.get(tool.id)
        if existing is not None and existing.origin == ToolOrigin.BUILTIN:
            raise ValueError(f"Tool id collides with a built-in tool: {tool.id}")
        remote = MCPRemoteTool(client=self.client, tool=tool)
        self._tools[remote.id] = remote
        return remote

    def _purge_server(self, server_name: str) -> int:
        stale = [
            tool_id
            for tool_id, tool in self._tools.items()
            if tool.origin == ToolOrigin.EXTERNAL and tool.server_name == server_name
        ]
        for tool_id in stale:
            del self._tools[tool_id]
        return len(stale)

    async def update_tools_for_server(self, server_name: str, *, refresh: bool = False) -> List[str]:
        """Replace all tools of `server_name` with its current tool list."""
        if self.client is None:
            return []
        if refresh and self.client.is_connected(server_name):
            discovered = await self.client.discover_tools(server_name)
        else:
            discovered = self.client.get_tools(server_name)

        removed = self._purge_server(server_name)
        added: List[str] = []
        for mcp_tool in discovered:
            try:
                added.append(self.register_external_tool(mcp_tool).id)
            except ValueError as e:
                logger.warning(f"Skipping tool from '{server_name}': {e}")

        self._bump_revision("update", server_name)
        logger.info(f"Tools for '{server_name}': {len(added)} registered, {removed} replaced")
        return added

    def remove_tools_for_server(self, server_name: str) -> int:
        removed = self._purge_server(server_name)
        if removed:
            self._bump_revision("remove", server_name)
            logger.info(f"Removed {removed} tools of '{server_name}'")
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_all_tools(self) -> List[Dict[str, Any]]:
        return [tool.describe() for tool in self._tools.values()]

    def get_tool(self, tool_id: str) -> Optional[BaseTool]:
        return self._tools.get(tool_id)

    def get_tools_for_server(self, server_name: str) -> List[BaseTool]:
        return [t for t in self._tools.values() if t.server_name == server_name]

    def get_tool_by_function_name(self, function_name: str) -> Optional[BaseTool]:
        """Reverse of the exported OpenAI/LangChain name."""
        for tool in self._tools.values():
            if openai_function_name(tool.id) == function_name:
                return tool
        return None

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self._tools

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _confirmation_required(self, tool: BaseTool) -> bool:
        if not tool.requires_confirmation or self.confirmations is None:
            return False
        if self.security is None:
            return True
        return self.security.get_security_config().require_confirmation

    async def call_tool(self, tool_id: str, args: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> ToolResult:
        """Single dispatch point for the calling agent. Never raises."""
        tool = self._tools.get(tool_id)
        if tool is None:
            return ToolResult(success=False, error=f"Tool not found: {tool_id}")

        args = dict(args or {})
        if self._confirmation_required(tool):
            approved = await self.confirmations.request(tool_id, args, description=tool.description)
            if not approved:
                logger.info(f"Tool call {tool_id} was not approved")
                return ToolResult(success=False, error=f"User did not approve {tool_id}", metadata={"denied": True})

        result = await tool.safe_execute(args, timeout=timeout)
        if not result.success:
            logger.debug(f"Tool {tool_id} failed: {result.error}")
        return result

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def to_openai_tools(self) -> List[Dict[str, Any]]:
        return to_openai_tools(self._tools.values())

    def to_langchain_tools(self) -> List[LangChainBaseTool]:
        return to_langchain_tools(list(self._tools.values()), self.call_tool)
