"""
ServerManager - authoritative registry of server configurations and statuses.

This is the only component that decides when a server starts or stops. The
protocol client does the work; the tool registry is refreshed afterwards.
"""

from __future__ import annotations

import asyncio
import inspect
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Union

from loguru import logger
from pydantic import ValidationError

from toolhost.core.events import SERVER_STATE_CHANGED
from toolhost.mcp.client import MCPClient
from toolhost.mcp.types import ConfigurationError, ServerConfig, ServerState, ServerStatus
from toolhost.security.policy import SecurityPolicy

if TYPE_CHECKING:
    from toolhost.core.events import EventBus
    from toolhost.tools.registry import ToolRegistry


SettingsCallback = Callable[[List[ServerConfig]], Any]

# Changing any of these on a running server requires a restart.
LAUNCH_FIELDS = ("command", "args", "working_directory", "env", "security")


class ServerManager:
    def __init__(
        self,
        client: MCPClient,
        *,
        security: Optional[SecurityPolicy] = None,
        tool_registry: Optional["ToolRegistry"] = None,
        on_settings_change: Optional[SettingsCallback] = None,
        event_bus: Optional["EventBus"] = None,
    ) -> None:
        self.client = client
        self.security = security or client.security
        self.tool_registry = tool_registry
        self.event_bus = event_bus
        self._on_settings_change = on_settings_change
        self._servers: Dict[str, ServerConfig] = {}
        self._statuses: Dict[str, ServerStatus] = {}
        self._background: Set[asyncio.Task] = set()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._suppress_notifications = False
        client.add_status_listener(self._on_client_status)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    @contextmanager
    def _notifications_suppressed(self) -> Iterator[None]:
        previous = self._suppress_notifications
        self._suppress_notifications = True
        try:
            yield
        finally:
            self._suppress_notifications = previous

    def _notify_settings_changed(self) -> None:
        if self._suppress_notifications or self._on_settings_change is None:
            return
        configs = self.get_all_server_configs()
        try:
            outcome = self._on_settings_change(configs)
        except Exception as e:
            logger.error(f"Settings change callback failed: {e}")
            return
        if inspect.isawaitable(outcome):
            self._spawn(outcome, "persist settings")

    def _set_status(self, name: str, state: ServerState, *, error: Optional[str] = None, clear_tools: bool = False) -> None:
        status = self._statuses.get(name)
        if status is None:
            return
        old = status.state
        status.state = state
        if state == ServerState.ERROR:
            status.last_error = error
        elif state == ServerState.STARTING:
            status.last_error = None
        if state in (ServerState.STOPPED, ServerState.ERROR):
            status.start_time = None
        if clear_tools:
            status.tools = []
        if old != state:
            self._emit_state(status, old)

    def _emit_state(self, status: ServerStatus, old: ServerState) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish(
            SERVER_STATE_CHANGED,
            {"name": status.name, "old_state": old.value, **status.to_dict()},
            source="server_manager",
        )

    def _on_client_status(self, status: ServerStatus) -> None:
        """Mirror transitions the client observes on its own (process exit)."""
        current = self._statuses.get(status.name)
        if current is None or current.state == status.state:
            return
        if current.state in (ServerState.STARTING, ServerState.STOPPING):
            # Explicit lifecycle calls in flight own the status.
            return
        logger.warning(f"Server '{status.name}' changed state on its own: {current.state.value} -> {status.state.value}")
        self._set_status(status.name, status.state, error=status.last_error, clear_tools=True)
        if self.tool_registry is not None:
            self.tool_registry.remove_tools_for_server(status.name)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _track(self, task: "asyncio.Future[Any]", what: str) -> None:
        self._background.add(task)

        def _done(t: "asyncio.Future[Any]") -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(f"Background {what} failed: {exc}")

        task.add_done_callback(_done)

    def _spawn(self, coro: Any, what: str) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(coro):
                coro.close()
            logger.warning(f"No running event loop; skipped background {what}")
            return
        self._track(asyncio.ensure_future(coro), what)

    def pending_tasks(self) -> List[asyncio.Task]:
        return list(self._background)

    async def wait_for_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Configuration CRUD
    # ------------------------------------------------------------------

    def _validate(self, config: ServerConfig) -> None:
        errors: List[str] = []
        if not config.name:
            errors.append("Server name is required")
        if not config.command:
            errors.append("Server command is required")

        result = self.security.validate_server_config(config)
        errors.extend(result.errors)
        for warning in result.warnings:
            logger.warning(f"[{config.name or '<unnamed>'}] {warning}")
        if errors:
            raise ConfigurationError(f"Invalid configuration for server '{config.name}': {'; '.join(errors)}")

    @staticmethod
    def _coerce(config: Union[ServerConfig, Dict[str, Any]]) -> ServerConfig:
        if isinstance(config, ServerConfig):
            return config.model_copy(deep=True)
        try:
            return ServerConfig.model_validate(config)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid server configuration: {e}") from e

    def add_server(self, config: Union[ServerConfig, Dict[str, Any]]) -> ServerConfig:
        config = self._coerce(config)
        self._validate(config)
        if config.name in self._servers:
            raise ConfigurationError(f"Server '{config.name}' already exists")

        self._servers[config.name] = config
        self._statuses[config.name] = ServerStatus(name=config.name)
        logger.info(f"Added MCP server '{config.name}'")
        self._notify_settings_changed()
        return config

    def update_server(self, name: str, /, **changes: Any) -> ServerConfig:
        """Merge `changes` into a server's config; `name=` renames it."""
        current = self._servers.get(name)
        if current is None:
            raise ConfigurationError(f"Server '{name}' not found")

        merged = current.model_dump()
        merged.update(changes)
        updated = self._coerce(merged)
        self._validate(updated)

        if updated.name != name:
            if updated.name in self._servers:
                raise ConfigurationError(f"Server '{updated.name}' already exists")
            if self.client.is_connected(name):
                raise ConfigurationError(f"Stop server '{name}' before renaming it")
            del self._servers[name]
            status = self._statuses.pop(name)
            status.name = updated.name
            self._statuses[updated.name] = status
            self._locks.pop(name, None)

        self._servers[updated.name] = updated
        logger.info(f"Updated MCP server '{updated.name}'")
        self._notify_settings_changed()

        connected = self.client.is_connected(updated.name)
        launch_changed = any(getattr(current, f) != getattr(updated, f) for f in LAUNCH_FIELDS)
        if connected and not updated.enabled:
            self._spawn(self.stop_server(updated.name), f"stop of '{updated.name}'")
        elif connected and launch_changed:
            self._spawn(self.restart_server(updated.name), f"restart of '{updated.name}'")
        elif updated.enabled and not current.enabled and not connected and not self._is_starting(updated.name):
            self._spawn(self.start_server(updated.name), f"start of '{updated.name}'")
        return updated

    async def remove_server(self, name: str) -> None:
        if name not in self._servers:
            raise ConfigurationError(f"Server '{name}' not found")

        if self.client.is_connected(name) or self.client.get_connection(name) is not None:
            await self.stop_server(name)

        self._servers.pop(name, None)
        self._statuses.pop(name, None)
        self._locks.pop(name, None)
        if self.tool_registry is not None:
            self.tool_registry.remove_tools_for_server(name)
        logger.info(f"Removed MCP server '{name}'")
        self._notify_settings_changed()

    def set_server_enabled(self, name: str, enabled: bool) -> None:
        config = self._servers.get(name)
        if config is None:
            raise ConfigurationError(f"Server '{name}' not found")

        self._servers[name] = config.model_copy(update={"enabled": bool(enabled)})
        self._notify_settings_changed()

        connected = self.client.is_connected(name)
        if enabled and not connected and not self._is_starting(name):
            self._spawn(self.start_server(name), f"start of '{name}'")
        elif not enabled and connected:
            self._spawn(self.stop_server(name), f"stop of '{name}'")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def _is_starting(self, name: str) -> bool:
        status = self._statuses.get(name)
        return status is not None and status.state == ServerState.STARTING

    async def start_server(self, name: str) -> ServerStatus:
        async with self._lock(name):
            return await self._start(name)

    async def stop_server(self, name: str) -> None:
        async with self._lock(name):
            await self._stop(name)

    async def restart_server(self, name: str) -> ServerStatus:
        async with self._lock(name):
            await self._stop(name)
            return await self._start(name)

    async def _start(self, name: str) -> ServerStatus:
        config = self._servers.get(name)
        if config is None:
            raise ConfigurationError(f"Server '{name}' not found")
        if not config.enabled:
            raise ConfigurationError(f"Server '{name}' is disabled")
        if self.client.is_connected(name):
            logger.debug(f"Server '{name}' already running")
            return self._statuses[name].copy()

        self._set_status(name, ServerState.STARTING)
        try:
            status = await self.client.connect(config)
        except Exception as e:
            self._set_status(name, ServerState.ERROR, error=str(e), clear_tools=True)
            raise

        current = self._statuses.get(name)
        if current is None:
            # Removed while starting.
            await self.client.disconnect(name)
            raise ConfigurationError(f"Server '{name}' was removed while starting")

        old = current.state
        self._statuses[name] = status.copy()
        if old != status.state:
            self._emit_state(self._statuses[name], old)
        if self.tool_registry is not None:
            await self.tool_registry.update_tools_for_server(name)
        return status.copy()

    async def _stop(self, name: str) -> None:
        if name not in self._servers:
            raise ConfigurationError(f"Server '{name}' not found")

        self._set_status(name, ServerState.STOPPING)
        try:
            await self.client.disconnect(name)
        except Exception as e:
            self._set_status(name, ServerState.ERROR, error=str(e), clear_tools=True)
            raise
        finally:
            if self.tool_registry is not None:
                self.tool_registry.remove_tools_for_server(name)
        self._set_status(name, ServerState.STOPPED, clear_tools=True)

    async def start_all_enabled_servers(self) -> Dict[str, bool]:
        """Start enabled servers one at a time; failures are logged and skipped."""
        results: Dict[str, bool] = {}
        for name, config in list(self._servers.items()):
            if not config.enabled or self.client.is_connected(name):
                continue
            try:
                await self.start_server(name)
                results[name] = True
            except Exception as e:
                logger.error(f"Failed to start MCP server '{name}': {e}")
                results[name] = False
        return results

    async def stop_all_servers(self) -> None:
        for name in list(self._servers):
            if not self.client.is_connected(name):
                continue
            try:
                await self.stop_server(name)
            except Exception as e:
                logger.error(f"Failed to stop MCP server '{name}': {e}")

    async def load_server_configurations(
        self,
        configs: Iterable[Union[ServerConfig, Dict[str, Any]]],
        *,
        autostart: bool = False,
    ) -> List[ServerConfig]:
        """Replace the whole registry; invalid entries are skipped."""
        with self._notifications_suppressed():
            await self.stop_all_servers()
            if self.tool_registry is not None:
                for name in self._servers:
                    self.tool_registry.remove_tools_for_server(name)
            self._servers.clear()
            self._statuses.clear()

            for raw in configs:
                try:
                    self.add_server(raw)
                except ConfigurationError as e:
                    logger.warning(f"Skipping server configuration: {e}")

        logger.info(f"Loaded {len(self._servers)} MCP server configurations")
        if autostart:
            await self.start_all_enabled_servers()
        return self.get_all_server_configs()

    async def cleanup(self) -> None:
        await self.wait_for_background()
        await self.stop_all_servers()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_server_config(self, name: str) -> Optional[ServerConfig]:
        config = self._servers.get(name)
        return config.model_copy(deep=True) if config else None

    def get_server_status(self, name: str) -> Optional[ServerStatus]:
        status = self._statuses.get(name)
        return status.copy() if status else None

    def get_all_server_configs(self) -> List[ServerConfig]:
        return [c.model_copy(deep=True) for c in self._servers.values()]

    def get_all_server_statuses(self) -> List[ServerStatus]:
        return [s.copy() for s in self._statuses.values()]

    def is_server_connected(self, name: str) -> bool:
        return self.client.is_connected(name)

    def get_server_statistics(self) -> Dict[str, int]:
        states = [s.state for s in self._statuses.values()]
        return {
            "total": len(self._servers),
            "enabled": sum(1 for c in self._servers.values() if c.enabled),
            "running": states.count(ServerState.RUNNING),
            "stopped": states.count(ServerState.STOPPED),
            "error": states.count(ServerState.ERROR),
        }
