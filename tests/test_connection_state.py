import pytest

from toolhost.mcp.connection import MCPServerConnection
from toolhost.mcp.types import (
    LEGAL_TRANSITIONS,
    MCPTool,
    ServerConfig,
    ServerConnectionError,
    ServerState,
    can_transition,
)


def _connection(events=None):
    def on_change(conn, old, new):
        if events is not None:
            events.append((old, new))

    return MCPServerConnection(ServerConfig(name="time", command="uvx"), on_state_change=on_change)


def test_every_state_has_a_transition_entry():
    assert set(LEGAL_TRANSITIONS) == set(ServerState)
    assert not can_transition(ServerState.STOPPED, ServerState.RUNNING)
    assert can_transition(ServerState.RUNNING, ServerState.STOPPED)


def test_normal_lifecycle_notifies_listener():
    events = []
    conn = _connection(events)

    assert conn.transition(ServerState.STARTING)
    assert conn.transition(ServerState.RUNNING)
    assert conn.status.start_time is not None
    assert conn.transition(ServerState.STOPPING)
    assert conn.transition(ServerState.STOPPED)

    assert events == [
        (ServerState.STOPPED, ServerState.STARTING),
        (ServerState.STARTING, ServerState.RUNNING),
        (ServerState.RUNNING, ServerState.STOPPING),
        (ServerState.STOPPING, ServerState.STOPPED),
    ]
    assert conn.status.start_time is None


@pytest.mark.parametrize(
    "path,illegal",
    [
        ([], ServerState.RUNNING),
        ([], ServerState.STOPPING),
        ([ServerState.STARTING, ServerState.RUNNING], ServerState.STARTING),
        ([ServerState.STARTING, ServerState.RUNNING, ServerState.STOPPING], ServerState.RUNNING),
    ],
)
def test_illegal_transition_is_a_noop(path, illegal):
    events = []
    conn = _connection(events)
    for state in path:
        conn.transition(state)
    before = conn.state

    assert conn.transition(illegal) is False
    assert conn.state == before
    assert len(events) == len(path)


def test_error_keeps_message_until_next_start():
    conn = _connection()
    conn.transition(ServerState.STARTING)
    conn.transition(ServerState.ERROR, error="boom")
    assert conn.status.last_error == "boom"

    conn.transition(ServerState.STARTING)
    assert conn.status.last_error is None


def test_stopped_clears_tools():
    conn = _connection()
    conn.transition(ServerState.STARTING)
    conn.transition(ServerState.RUNNING)
    conn.status.tools = [MCPTool.create("time", "now")]
    assert conn.find_tool("now").id == "time:now"
    assert conn.find_tool("later") is None

    conn.transition(ServerState.STOPPED)
    assert conn.status.tools == []


def test_listener_errors_do_not_break_transitions():
    def bad_listener(conn, old, new):
        raise RuntimeError("listener bug")

    conn = MCPServerConnection(ServerConfig(name="time", command="uvx"), on_state_change=bad_listener)
    assert conn.transition(ServerState.STARTING)
    assert conn.state == ServerState.STARTING


@pytest.mark.asyncio
async def test_session_calls_require_running_state():
    conn = _connection()
    with pytest.raises(ServerConnectionError):
        await conn.list_tools()
    with pytest.raises(ServerConnectionError):
        await conn.call_tool("now", {})


@pytest.mark.asyncio
async def test_start_from_running_is_rejected():
    conn = _connection()
    conn.transition(ServerState.STARTING)
    conn.transition(ServerState.RUNNING)
    with pytest.raises(ServerConnectionError, match="Cannot start"):
        await conn.start("uvx", {}, timeout=1)


@pytest.mark.asyncio
async def test_missing_command_fails_start_with_hint(tmp_path):
    conn = _connection()
    with pytest.raises(ServerConnectionError, match="not found") as exc:
        await conn.start(str(tmp_path / "no-such-uvx"), {"PATH": str(tmp_path)}, timeout=5)
    assert "uv" in str(exc.value)
    assert conn.state == ServerState.ERROR
    assert conn.status.last_error
