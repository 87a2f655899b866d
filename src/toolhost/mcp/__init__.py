"""
MCP runtime - capability server processes, protocol sessions and lifecycle.

Only the data model is re-exported here; import `toolhost.mcp.client` and
`toolhost.mcp.manager` directly.
"""

from __future__ import annotations

from toolhost.mcp.types import (
    ConfigurationError,
    MCPTool,
    ServerConfig,
    ServerConnectionError,
    ServerState,
    ServerStatus,
    ToolHostError,
    ToolInvocationError,
)

__all__ = [
    "ServerConfig",
    "ServerState",
    "ServerStatus",
    "MCPTool",
    "ToolHostError",
    "ConfigurationError",
    "ServerConnectionError",
    "ToolInvocationError",
]
