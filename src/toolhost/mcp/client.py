"""
MCPClient - owns one connection and child process per capability server.
"""

from __future__ import annotations

import asyncio
import re
import shlex
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from toolhost.mcp.connection import MCPServerConnection
from toolhost.mcp.transport import build_server_env, resolve_command
from toolhost.mcp.types import (
    ConfigurationError,
    MCPTool,
    ServerConfig,
    ServerConnectionError,
    ServerState,
    ServerStatus,
    ToolInvocationError,
)
from toolhost.security.policy import SecurityPolicy


# Trivial commands that cannot speak the protocol.
PLACEHOLDER_COMMANDS = frozenset({"echo", "true", "false", "cat", "sleep", "yes", ":"})
SHELLS = frozenset({"sh", "bash", "zsh"})

StatusListener = Callable[[ServerStatus], None]


@dataclass(frozen=True)
class MCPTimeouts:
    start_seconds: float = 30.0
    list_tools_seconds: float = 30.0
    call_tool_seconds: float = 300.0


def _basename(command: str) -> str:
    return re.split(r"[\\/]", command or "")[-1]


def is_placeholder_command(command: str, args: List[str]) -> bool:
    base = _basename(command)
    if base in PLACEHOLDER_COMMANDS:
        return True
    if base in SHELLS and len(args) >= 2 and args[0] == "-c":
        try:
            script = shlex.split(args[1])
        except ValueError:
            return False
        return bool(script) and _basename(script[0]) in PLACEHOLDER_COMMANDS
    return False


def normalize_arguments(args: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop unset values; servers treat a missing key and null differently."""
    return {k: v for k, v in (args or {}).items() if v is not None}


class MCPClient:
    def __init__(
        self,
        security: Optional[SecurityPolicy] = None,
        *,
        timeouts: Optional[MCPTimeouts] = None,
        discovery_retries: int = 3,
        retry_backoff_seconds: float = 0.5,
    ) -> None:
        self.security = security or SecurityPolicy()
        self._timeouts = timeouts or MCPTimeouts()
        self._discovery_retries = max(1, int(discovery_retries))
        self._retry_backoff = float(retry_backoff_seconds)
        self._connections: Dict[str, MCPServerConnection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._listeners: List[StatusListener] = []

    @property
    def timeouts(self) -> MCPTimeouts:
        return self._timeouts

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def is_connected(self, name: str) -> bool:
        conn = self._connections.get(name)
        return conn is not None and conn.state == ServerState.RUNNING

    def get_connection(self, name: str) -> Optional[MCPServerConnection]:
        return self._connections.get(name)

    def get_status(self, name: str) -> Optional[ServerStatus]:
        conn = self._connections.get(name)
        return conn.status.copy() if conn else None

    def get_tools(self, name: str) -> List[MCPTool]:
        conn = self._connections.get(name)
        return list(conn.status.tools) if conn else []

    def connected_servers(self) -> List[str]:
        return [name for name in self._connections if self.is_connected(name)]

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    async def connect(self, config: ServerConfig) -> ServerStatus:
        if not config.enabled:
            raise ConfigurationError(f"Server '{config.name}' is disabled")

        result = self.security.validate_server_config(config)
        for warning in result.warnings:
            logger.warning(f"[{config.name}] {warning}")
        if not result.valid:
            raise ConfigurationError(
                f"Security validation failed for server '{config.name}': {'; '.join(result.errors)}"
            )

        if is_placeholder_command(config.command, config.args):
            raise ConfigurationError(
                f"Server '{config.name}' uses placeholder command '{config.command}' which cannot run an MCP server"
            )

        async with self._lock(config.name):
            return await self._connect(config)

    async def _connect(self, config: ServerConfig) -> ServerStatus:
        existing = self._connections.get(config.name)
        if existing is not None:
            if existing.state == ServerState.RUNNING:
                logger.debug(f"Server '{config.name}' already connected")
                return existing.status.copy()
            if existing.state not in (ServerState.STOPPED, ServerState.ERROR):
                raise ServerConnectionError(
                    f"Server '{config.name}' is {existing.state.value}; wait for it before connecting again"
                )
            # A dead connection whose process already exited; make sure it is torn down.
            await existing.shutdown()

        env = build_server_env(config.env)
        command = resolve_command(config.command, env)
        conn = MCPServerConnection(config, on_state_change=self._on_state_change)
        self._connections[config.name] = conn

        try:
            await conn.start(command, env, timeout=float(self._timeouts.start_seconds))
        except Exception as e:
            logger.error(f"Failed to start MCP server '{config.name}': {e}")
            if self._connections.get(config.name) is conn:
                self._connections.pop(config.name, None)
            raise

        await self.discover_tools(config.name)
        logger.success(f"MCP server '{config.name}' running with {len(conn.status.tools)} tools")
        return conn.status.copy()

    async def disconnect(self, name: str) -> None:
        async with self._lock(name):
            await self._disconnect(name)

    async def _disconnect(self, name: str) -> None:
        conn = self._connections.get(name)
        if conn is None:
            return
        try:
            await conn.shutdown()
        except Exception as e:
            logger.warning(f"Error while disconnecting MCP server '{name}': {e}")
        finally:
            if self._connections.get(name) is conn:
                self._connections.pop(name, None)
        logger.info(f"Disconnected MCP server '{name}'")

    async def cleanup(self) -> None:
        for name in list(self._connections):
            await self.disconnect(name)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def discover_tools(self, name: str, retries: Optional[int] = None) -> List[MCPTool]:
        conn = self._connections.get(name)
        if conn is None:
            raise ServerConnectionError(f"Server '{name}' is not connected")

        attempts = max(1, int(retries if retries is not None else self._discovery_retries))
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            try:
                raw = await asyncio.wait_for(conn.list_tools(), timeout=float(self._timeouts.list_tools_seconds))
                tools = [MCPTool.from_sdk(name, t) for t in raw]
                tools = [t for t in tools if t.tool_name]
                conn.status.tools = tools
                logger.debug(f"Discovered {len(tools)} tools on '{name}' (attempt {attempt})")
                return list(tools)
            except asyncio.TimeoutError:
                last_error = TimeoutError(f"timeout after {self._timeouts.list_tools_seconds}s during list_tools")
            except Exception as e:
                last_error = e
            logger.warning(f"Tool discovery failed for '{name}' (attempt {attempt}/{attempts}): {last_error}")
            if attempt < attempts:
                await asyncio.sleep(self._retry_backoff)

        # Exhausted: report no tools, leave the server running.
        logger.error(f"Tool discovery for '{name}' gave up after {attempts} attempts: {last_error}")
        conn.status.tools = []
        return []

    async def invoke(
        self,
        server_name: str,
        tool_name: str,
        args: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        conn = self._connections.get(server_name)
        if conn is None or conn.state != ServerState.RUNNING:
            raise ServerConnectionError(f"Server '{server_name}' is not connected")

        tool = conn.find_tool(tool_name) or MCPTool.create(server_name, tool_name)
        arguments = normalize_arguments(args)

        result = self.security.validate_tool_input(tool, arguments)
        for warning in result.warnings:
            logger.warning(f"[{tool.id}] {warning}")
        if not result.valid:
            raise ToolInvocationError(f"Validation failed for tool {tool.id}: {'; '.join(result.errors)}")

        effective = self._call_timeout(conn.config, timeout)
        logger.debug(f"Calling {tool.id} (timeout={effective}s)")
        return await conn.call_tool(tool_name, arguments, timeout=effective)

    def _call_timeout(self, config: ServerConfig, timeout: Optional[float]) -> float:
        if timeout:
            return float(timeout)
        if config.security and config.security.timeout_ms:
            return config.security.timeout_ms / 1000.0
        if config.timeout_seconds:
            return float(config.timeout_seconds)
        return float(self._timeouts.call_tool_seconds)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _on_state_change(self, conn: MCPServerConnection, old: ServerState, new: ServerState) -> None:
        logger.debug(f"MCP server '{conn.name}': {old.value} -> {new.value}")
        if new in (ServerState.STOPPED, ServerState.ERROR) and self._connections.get(conn.name) is conn:
            self._connections.pop(conn.name, None)

        status = conn.status.copy()
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:
                logger.warning(f"Status listener failed for '{conn.name}': {e}")
