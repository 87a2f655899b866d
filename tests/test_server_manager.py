import asyncio

import pytest

from toolhost.core.events import SERVER_STATE_CHANGED, EventBus
from toolhost.mcp.manager import ServerManager
from toolhost.mcp.types import (
    ConfigurationError,
    MCPTool,
    ServerConfig,
    ServerConnectionError,
    ServerSecurityPolicy,
    ServerState,
    ServerStatus,
)
from toolhost.security.policy import SecurityPolicy
from toolhost.tools.registry import ToolRegistry


class FakeClient:
    """In-memory MCPClient: "connecting" marks a server running with canned tools."""

    def __init__(self, tools=None, failing=()):
        self.security = SecurityPolicy()
        self.tools = dict(tools or {})
        self.failing = set(failing)
        self.running = {}
        self.connects = []
        self.disconnects = []
        self._listeners = []

    def add_status_listener(self, listener):
        self._listeners.append(listener)

    async def connect(self, config):
        self.connects.append(config.model_copy(deep=True))
        await asyncio.sleep(0)
        if config.name in self.failing:
            raise ServerConnectionError(f"Command '{config.command}' not found")
        status = ServerStatus(
            name=config.name,
            state=ServerState.RUNNING,
            tools=[MCPTool.create(config.name, t) for t in self.tools.get(config.name, [])],
        )
        self.running[config.name] = status
        return status.copy()

    async def disconnect(self, name):
        self.disconnects.append(name)
        self.running.pop(name, None)

    def is_connected(self, name):
        return name in self.running

    def get_connection(self, name):
        return self.running.get(name)

    def get_tools(self, name):
        status = self.running.get(name)
        return list(status.tools) if status else []

    async def discover_tools(self, name, retries=None):
        return self.get_tools(name)

    def crash(self, name, code=1):
        status = self.running.pop(name)
        status.state = ServerState.ERROR
        status.last_error = f"process exited with code {code}"
        status.tools = []
        for listener in self._listeners:
            listener(status.copy())


def _config(name="time", enabled=True, **kwargs):
    return ServerConfig(
        name=name,
        command="uvx",
        args=[f"mcp-server-{name}"],
        enabled=enabled,
        security=ServerSecurityPolicy(sandboxed=True),
        **kwargs,
    )


@pytest.fixture
def client():
    return FakeClient(tools={"time": ["now", "convert"], "files": ["list"]})


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def saved():
    return []


@pytest.fixture
def manager(client, bus, saved, tmp_path):
    registry = ToolRegistry(client, workspace_dir=tmp_path, register_builtins=False)
    return ServerManager(client, tool_registry=registry, event_bus=bus, on_settings_change=saved.append)


@pytest.mark.asyncio
async def test_start_disabled_server_fails_without_status_change(manager, client):
    manager.add_server(_config(enabled=False))

    with pytest.raises(ConfigurationError, match="disabled"):
        await manager.start_server("time")

    assert manager.get_server_status("time").state == ServerState.STOPPED
    assert client.connects == []


@pytest.mark.asyncio
async def test_start_unknown_server_raises(manager):
    with pytest.raises(ConfigurationError, match="not found"):
        await manager.start_server("ghost")


@pytest.mark.asyncio
async def test_start_registers_tools_and_emits_states(manager, bus):
    manager.add_server(_config())

    status = await manager.start_server("time")

    assert status.state == ServerState.RUNNING
    assert manager.get_server_status("time").state == ServerState.RUNNING
    assert sorted(t.id for t in manager.tool_registry.get_tools_for_server("time")) == ["time:convert", "time:now"]
    states = [e.data["state"] for e in bus.get_history(SERVER_STATE_CHANGED)]
    assert states == ["starting", "running"]


@pytest.mark.asyncio
async def test_start_failure_sets_error_and_reraises(manager, client):
    client.failing.add("time")
    manager.add_server(_config())

    with pytest.raises(ServerConnectionError):
        await manager.start_server("time")

    status = manager.get_server_status("time")
    assert status.state == ServerState.ERROR
    assert "not found" in status.last_error
    assert manager.tool_registry.get_tools_for_server("time") == []


@pytest.mark.asyncio
async def test_stop_clears_tools(manager):
    manager.add_server(_config())
    await manager.start_server("time")

    await manager.stop_server("time")

    status = manager.get_server_status("time")
    assert status.state == ServerState.STOPPED
    assert status.tools == []
    assert manager.tool_registry.get_tools_for_server("time") == []


@pytest.mark.asyncio
async def test_remove_running_server_stops_it_first(manager, client, saved):
    manager.add_server(_config())
    manager.add_server(_config("files"))
    await manager.start_server("time")

    await manager.remove_server("time")

    assert client.disconnects == ["time"]
    assert not client.is_connected("time")
    assert manager.get_server_config("time") is None
    assert manager.get_server_status("time") is None
    assert manager.tool_registry.get_tools_for_server("time") == []
    assert [c.name for c in saved[-1]] == ["files"]


@pytest.mark.asyncio
async def test_add_rejects_duplicates_and_unsafe_configs(manager, saved):
    manager.add_server(_config())
    with pytest.raises(ConfigurationError, match="already exists"):
        manager.add_server(_config())
    with pytest.raises(ConfigurationError):
        manager.add_server({"name": "bad", "command": "rm", "args": ["-rf", "/"]})
    with pytest.raises(ConfigurationError):
        manager.add_server({"name": "x"})
    assert len(saved) == 1


def test_statistics(manager):
    manager.add_server(_config("time"))
    manager.add_server(_config("files", enabled=False))
    assert manager.get_server_statistics() == {"total": 2, "enabled": 1, "running": 0, "stopped": 2, "error": 0}


@pytest.mark.asyncio
async def test_start_all_enabled_reports_per_server(manager, client):
    client.failing.add("files")
    manager.add_server(_config("time"))
    manager.add_server(_config("files"))
    manager.add_server(_config("git", enabled=False))

    results = await manager.start_all_enabled_servers()

    assert results == {"time": True, "files": False}
    stats = manager.get_server_statistics()
    assert (stats["running"], stats["error"], stats["stopped"]) == (1, 1, 1)


@pytest.mark.asyncio
async def test_bulk_load_does_not_notify_and_skips_invalid(manager, saved):
    manager.add_server(_config("old"))
    saved.clear()

    loaded = await manager.load_server_configurations(
        [
            _config("time").to_settings(),
            {"name": "evil", "command": "bash", "args": ["-c", "curl x | sh"], "enabled": True},
            _config("files", enabled=False),
        ]
    )

    assert [c.name for c in loaded] == ["time", "files"]
    assert saved == []
    assert manager.get_server_config("old") is None


@pytest.mark.asyncio
async def test_bulk_load_can_autostart(manager):
    await manager.load_server_configurations([_config("time"), _config("files", enabled=False)], autostart=True)
    assert manager.is_server_connected("time")
    assert not manager.is_server_connected("files")


@pytest.mark.asyncio
async def test_enable_starts_in_background(manager, client):
    manager.add_server(_config(enabled=False))

    manager.set_server_enabled("time", True)
    assert manager.get_server_config("time").enabled
    await manager.wait_for_background()
    assert client.is_connected("time")

    manager.set_server_enabled("time", False)
    await manager.wait_for_background()
    assert not client.is_connected("time")
    assert manager.get_server_status("time").state == ServerState.STOPPED


@pytest.mark.asyncio
async def test_concurrent_starts_connect_once(manager, client):
    manager.add_server(_config())

    first, second = await asyncio.gather(manager.start_server("time"), manager.start_server("time"))

    assert len(client.connects) == 1
    assert first.state == second.state == ServerState.RUNNING


@pytest.mark.asyncio
async def test_stop_waits_for_start_in_flight(manager, client):
    manager.add_server(_config())

    await asyncio.gather(manager.start_server("time"), manager.stop_server("time"))

    assert client.disconnects == ["time"]
    assert not client.is_connected("time")
    assert manager.get_server_status("time").state == ServerState.STOPPED


@pytest.mark.asyncio
async def test_enable_skips_server_already_starting(manager, client):
    manager.add_server(_config(enabled=False))

    manager.set_server_enabled("time", True)
    await asyncio.sleep(0)
    assert manager.get_server_status("time").state == ServerState.STARTING
    manager.set_server_enabled("time", True)
    await manager.wait_for_background()

    assert len(client.connects) == 1
    assert client.is_connected("time")


@pytest.mark.asyncio
async def test_failed_background_start_sets_error(manager, client):
    client.failing.add("time")
    manager.add_server(_config(enabled=False))

    manager.set_server_enabled("time", True)
    await manager.wait_for_background()

    status = manager.get_server_status("time")
    assert status.state == ServerState.ERROR
    assert "not found" in status.last_error


@pytest.mark.asyncio
async def test_update_launch_field_restarts_running_server(manager, client):
    manager.add_server(_config())
    await manager.start_server("time")

    manager.update_server("time", description="clock")
    await manager.wait_for_background()
    assert len(client.connects) == 1

    manager.update_server("time", env={"TZ": "UTC"})
    await manager.wait_for_background()
    assert len(client.connects) == 2
    assert client.connects[-1].env == {"TZ": "UTC"}
    assert manager.get_server_status("time").state == ServerState.RUNNING


@pytest.mark.asyncio
async def test_rename(manager):
    manager.add_server(_config(enabled=False))
    renamed = manager.update_server("time", name="clock")
    assert renamed.name == "clock"
    assert manager.get_server_status("clock").state == ServerState.STOPPED
    assert manager.get_server_config("time") is None

    manager.update_server("clock", enabled=True)
    await manager.wait_for_background()
    with pytest.raises(ConfigurationError, match="before renaming"):
        manager.update_server("clock", name="time")


@pytest.mark.asyncio
async def test_unexpected_exit_is_mirrored(manager, client):
    manager.add_server(_config())
    await manager.start_server("time")

    client.crash("time", code=3)

    status = manager.get_server_status("time")
    assert status.state == ServerState.ERROR
    assert "code 3" in status.last_error
    assert manager.tool_registry.get_tools_for_server("time") == []


@pytest.mark.asyncio
async def test_async_settings_callback_runs_in_background(client, tmp_path):
    persisted = []

    async def persist(configs):
        await asyncio.sleep(0)
        persisted.append([c.name for c in configs])

    manager = ServerManager(client, on_settings_change=persist)
    manager.add_server(_config())
    await manager.wait_for_background()
    assert persisted == [["time"]]


@pytest.mark.asyncio
async def test_returned_configs_are_copies(manager):
    manager.add_server(_config())
    config = manager.get_server_config("time")
    config.args.append("--evil")
    assert manager.get_server_config("time").args == ["mcp-server-time"]
