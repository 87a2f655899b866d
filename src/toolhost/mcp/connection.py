"""
MCPServerConnection - one capability server process and its protocol session.

The session context lives inside a dedicated runner task, so `start()` and
`shutdown()` may be awaited from different tasks. Process exit is observed by
a monitor task and fed into the same guarded state-transition function as the
explicit lifecycle calls.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from mcp import ClientSession

from toolhost.mcp.presets import command_not_found_hint
from toolhost.mcp.transport import process_streams, spawn_process, terminate_process
from toolhost.mcp.types import (
    MCPTool,
    ServerConfig,
    ServerConnectionError,
    ServerState,
    ServerStatus,
    can_transition,
)


StateCallback = Callable[["MCPServerConnection", ServerState, ServerState], None]


class MCPServerConnection:
    def __init__(self, config: ServerConfig, *, on_state_change: Optional[StateCallback] = None) -> None:
        self.config = config
        self.status = ServerStatus(name=config.name)
        self._on_state_change = on_state_change
        self._process: Optional[asyncio.subprocess.Process] = None
        self._session: Optional[ClientSession] = None
        self._runner: Optional[asyncio.Task] = None
        self._monitor: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._closing = asyncio.Event()
        self._stopping = False

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> ServerState:
        return self.status.state

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def transition(self, new_state: ServerState, *, error: Optional[str] = None) -> bool:
        """Apply a state change if it is legal; illegal changes are logged and ignored."""
        old = self.status.state
        if not can_transition(old, new_state):
            logger.debug(f"Ignoring illegal transition for '{self.name}': {old.value} -> {new_state.value}")
            return False

        self.status.state = new_state
        if new_state == ServerState.ERROR:
            self.status.last_error = error
        elif new_state == ServerState.STARTING:
            self.status.last_error = None
        if new_state == ServerState.RUNNING:
            self.status.start_time = datetime.now()
        elif new_state == ServerState.STOPPED:
            self.status.start_time = None
            self.status.tools = []

        if self._on_state_change:
            try:
                self._on_state_change(self, old, new_state)
            except Exception as e:
                logger.warning(f"State listener failed for '{self.name}': {e}")
        return True

    def find_tool(self, tool_name: str) -> Optional[MCPTool]:
        for tool in self.status.tools:
            if tool.tool_name == tool_name:
                return tool
        return None

    async def start(self, command: str, env: Dict[str, str], *, timeout: float) -> None:
        if not self.transition(ServerState.STARTING):
            raise ServerConnectionError(f"Cannot start server '{self.name}' from state {self.state.value}")

        logger.info(f"Starting MCP server '{self.name}': {command} {' '.join(self.config.args)}")
        self._stopping = False
        self._closing = asyncio.Event()
        self._ready = asyncio.get_running_loop().create_future()
        self._runner = asyncio.create_task(self._run(command, env), name=f"mcp-server:{self.name}")

        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=timeout)
        except asyncio.CancelledError:
            await self._teardown(force=True)
            self.transition(ServerState.ERROR, error="start cancelled")
            raise
        except asyncio.TimeoutError:
            message = f"Timed out after {timeout}s waiting for server '{self.name}' to initialize"
            await self._teardown(force=True)
            self.transition(ServerState.ERROR, error=message)
            raise ServerConnectionError(message) from None
        except Exception as e:
            await self._teardown(force=True)
            self.transition(ServerState.ERROR, error=str(e))
            raise

        self.transition(ServerState.RUNNING)

    async def _run(self, command: str, env: Dict[str, str]) -> None:
        assert self._ready is not None
        try:
            try:
                self._process = await spawn_process(
                    command, list(self.config.args), env=env, cwd=self.config.working_directory
                )
            except FileNotFoundError:
                raise ServerConnectionError(
                    f"Command '{self.config.command}' not found for server '{self.name}'. "
                    f"{command_not_found_hint(self.config.command)}"
                ) from None
            except OSError as e:
                raise ServerConnectionError(f"Failed to spawn server '{self.name}': {e}") from e

            self._monitor = asyncio.create_task(self._watch_process(self._process))
            async with process_streams(self._process, name=self.name) as (read_stream, write_stream):
                async with ClientSession(read_stream, write_stream) as session:
                    await session.initialize()
                    self._session = session
                    if not self._ready.done():
                        self._ready.set_result(None)
                    await self._closing.wait()
        except asyncio.CancelledError:
            if not self._ready.done():
                self._ready.cancel()
            raise
        except Exception as e:
            if not self._ready.done():
                self._ready.set_exception(e)
            else:
                logger.warning(f"MCP session for '{self.name}' ended with error: {e}")
                if self._monitor is not None and not self._monitor.done():
                    # The exit code decides between stopped and error when the process is gone.
                    await asyncio.wait({self._monitor}, timeout=1.0)
                if not self._stopping and self.state == ServerState.RUNNING:
                    self.transition(ServerState.ERROR, error=str(e))
        finally:
            self._session = None
            await terminate_process(self._process, name=self.name)

    async def _watch_process(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        if self._stopping:
            return

        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(
                ServerConnectionError(f"Server '{self.name}' exited with code {code} during startup")
            )
            return

        self._closing.set()
        if self.state not in (ServerState.STARTING, ServerState.RUNNING):
            return
        if code == 0:
            logger.warning(f"MCP server '{self.name}' exited")
            self.transition(ServerState.STOPPED)
        else:
            logger.error(f"MCP server '{self.name}' exited unexpectedly with code {code}")
            self.transition(ServerState.ERROR, error=f"process exited with code {code}")

    async def _teardown(self, *, force: bool = False) -> None:
        self._stopping = True
        self._closing.set()
        runner = self._runner
        if runner is not None and not runner.done():
            if force:
                runner.cancel()
            try:
                await asyncio.wait_for(runner, timeout=5.0)
            except asyncio.TimeoutError:
                logger.debug(f"Runner for '{self.name}' did not finish in time, cancelling")
                runner.cancel()
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Runner for '{self.name}' failed during teardown: {e}")
        await terminate_process(self._process, name=self.name)
        if self._monitor is not None and not self._monitor.done():
            self._monitor.cancel()
        self._runner = None
        self._monitor = None

    async def shutdown(self) -> None:
        self.transition(ServerState.STOPPING)
        try:
            await self._teardown()
        finally:
            self.transition(ServerState.STOPPED)

    def _require_session(self) -> ClientSession:
        if self._session is None or self.state != ServerState.RUNNING:
            raise ServerConnectionError(f"Server '{self.name}' is not connected")
        return self._session

    async def list_tools(self) -> List[Any]:
        res = await self._require_session().list_tools()
        return list(getattr(res, "tools", None) or [])

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None, *, timeout: Optional[float] = None) -> Any:
        session = self._require_session()
        read_timeout = timedelta(seconds=timeout) if timeout else None
        return await session.call_tool(name, arguments=arguments or {}, read_timeout_seconds=read_timeout)
