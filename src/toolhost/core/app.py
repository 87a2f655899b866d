"""
Main application wiring for toolhost.

Builds the security policy, protocol client, tool registry and server
manager from configuration and manages their lifecycle.
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from loguru import logger

from toolhost.config.manager import ConfigManager
from toolhost.core.confirmations import ConfirmationBroker
from toolhost.core.events import SETTINGS_CHANGED, EventBus
from toolhost.mcp.client import MCPClient, MCPTimeouts
from toolhost.mcp.manager import ServerManager
from toolhost.mcp.types import ServerConfig
from toolhost.security.policy import SecurityPolicy
from toolhost.tools.registry import ToolRegistry


class ToolHostApp:
    """
    Application class that coordinates all toolhost components.

    Startup order: config -> security -> client -> registry -> manager.
    Shutdown runs in reverse.
    """

    def __init__(self, config_path: Optional[str] = None, *, auto_approve: bool = False):
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._config_path = config_path
        self._auto_approve = auto_approve

        self.event_bus: EventBus = EventBus()
        self.config: Optional[ConfigManager] = None
        self.security: Optional[SecurityPolicy] = None
        self.client: Optional[MCPClient] = None
        self.confirmations: Optional[ConfirmationBroker] = None
        self.tools: Optional[ToolRegistry] = None
        self.servers: Optional[ServerManager] = None

        logger.info("toolhost application instance created")

    def _timeout(self, key: str, default: float) -> float:
        try:
            return float(self.config.get(key, default))
        except (TypeError, ValueError):
            return float(default)

    async def startup(self, *, autostart: bool = True) -> None:
        """Initialize all components in the correct order."""
        logger.info("Starting toolhost...")

        # 1. Configuration
        self.config = ConfigManager(self._config_path)
        await self.config.load()

        # 2. Security policy
        audit_file = self.config.get("logging.audit_file")
        self.security = SecurityPolicy(self.config.get_security_config(), audit_log_path=audit_file)

        # 3. Protocol client
        self.client = MCPClient(
            self.security,
            timeouts=MCPTimeouts(
                start_seconds=self._timeout("mcp.timeouts.start_seconds", 30.0),
                list_tools_seconds=self._timeout("mcp.timeouts.list_tools_seconds", 30.0),
                call_tool_seconds=self._timeout("mcp.timeouts.call_tool_seconds", 300.0),
            ),
            discovery_retries=int(self.config.get("mcp.discovery.retries", 3)),
            retry_backoff_seconds=self._timeout("mcp.discovery.backoff_seconds", 0.5),
        )

        # 4. Tool registry with built-ins
        workspace = Path(self.config.get("tools.workspace_dir", "workspace"))
        workspace.mkdir(parents=True, exist_ok=True)
        self.confirmations = ConfirmationBroker(
            default_timeout=self._timeout("tools.confirmation_timeout_seconds", 60.0),
            auto_approve=self._auto_approve,
        )
        self.tools = ToolRegistry(
            self.client,
            workspace_dir=workspace,
            memory_file=self.config.get("tools.memory_file"),
            security=self.security,
            confirmations=self.confirmations,
            event_bus=self.event_bus,
        )

        # 5. Server manager
        self.servers = ServerManager(
            self.client,
            security=self.security,
            tool_registry=self.tools,
            on_settings_change=self._persist_servers,
            event_bus=self.event_bus,
        )
        await self.servers.load_server_configurations(self.config.get_server_configs())

        if autostart:
            results = await self.servers.start_all_enabled_servers()
            failed = [name for name, ok in results.items() if not ok]
            if failed:
                logger.warning(f"Servers failed to start: {', '.join(failed)}")

        self._running = True
        logger.success(f"toolhost started with {len(self.tools)} tools")

    async def _persist_servers(self, configs: List[ServerConfig]) -> None:
        self.config.set_server_configs(configs)
        await self.config.save()
        await self.event_bus.emit(SETTINGS_CHANGED, {"servers": [c.name for c in configs]}, source="app")

    async def shutdown(self) -> None:
        """Gracefully shutdown all components."""
        if not self._running and self.servers is None:
            return
        logger.info("Shutting down toolhost...")
        self._running = False

        if self.confirmations:
            self.confirmations.cancel_all()

        if self.servers:
            await self.servers.cleanup()

        if self.client:
            await self.client.cleanup()

        await self.event_bus.drain()
        self._shutdown_event.set()
        logger.success("toolhost shutdown complete")

    async def run(self) -> None:
        """Wait until `request_shutdown()` is called or the task is cancelled."""
        logger.info("toolhost running; press Ctrl+C to stop")
        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.shutdown()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        return self._running


@asynccontextmanager
async def create_app(config_path: Optional[str] = None, *, autostart: bool = True, auto_approve: bool = False):
    """Context manager for creating and running the app."""
    app = ToolHostApp(config_path, auto_approve=auto_approve)
    try:
        await app.startup(autostart=autostart)
        yield app
    finally:
        await app.shutdown()
