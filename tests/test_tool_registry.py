import asyncio

import pytest

from toolhost.core.confirmations import ConfirmationBroker
from toolhost.mcp.types import MCPTool, ToolAnnotations
from toolhost.security.policy import SecurityConfig, SecurityPolicy
from toolhost.tools.base import BaseTool, ToolDefinition, ToolResult
from toolhost.tools.registry import ToolRegistry


class EchoFileTool(BaseTool):
    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="echo_file",
            description="Echo a file name back.",
            parameters={"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
        )

    async def execute(self, path: str, **kwargs) -> ToolResult:
        return ToolResult(success=True, data=path)


class BrokenTool(EchoFileTool):
    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(name="broken", description="Always fails.")

    async def execute(self, **kwargs) -> ToolResult:
        raise RuntimeError("disk on fire")


class _FakeRes:
    def __init__(self, *, is_error: bool = False, structured=None, content=None):
        self.isError = is_error
        self.structuredContent = structured
        self.content = content


class _Text:
    def __init__(self, text):
        self.text = text


class FakeClient:
    """Stands in for MCPClient: fixed tool lists per server and canned results."""

    def __init__(self):
        self.security = SecurityPolicy()
        self.tools = {}
        self.results = []
        self.calls = []

    def is_connected(self, name):
        return name in self.tools

    def get_tools(self, name):
        return list(self.tools.get(name, []))

    async def discover_tools(self, name, retries=None):
        return self.get_tools(name)

    async def invoke(self, server_name, tool_name, args=None, timeout=None):
        self.calls.append((server_name, tool_name, dict(args or {}), timeout))
        if not self.results:
            raise RuntimeError("no more results")
        return self.results.pop(0)


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def registry(client, tmp_path):
    return ToolRegistry(client, workspace_dir=tmp_path, memory_file=tmp_path / "memory.md")


def test_builtins_are_registered_once(registry):
    ids = {t["id"] for t in registry.get_all_tools()}
    assert {
        "list_files",
        "read_file",
        "write_file",
        "insert_content",
        "search_and_replace",
        "manage_files",
        "write_to_memory",
        "read_memory",
    } <= ids
    assert all(t["origin"] == "builtin" for t in registry.get_all_tools())

    with pytest.raises(ValueError):
        registry.register_builtin(registry.get_tool("read_file"))


@pytest.mark.asyncio
async def test_builtin_missing_required_arg_returns_error_envelope(registry):
    registry.register_builtin(EchoFileTool())

    res = await registry.call_tool("echo_file", {})
    assert res.success is False
    assert res.to_dict()["type"] == "error"
    assert "path" in res.error

    ok = await registry.call_tool("echo_file", {"path": "notes.md"})
    assert ok.to_dict() == {"type": "success", "data": "notes.md", "execution_time_ms": ok.execution_time_ms, "metadata": {}}


@pytest.mark.asyncio
async def test_builtin_exception_becomes_error_envelope(registry):
    registry.register_builtin(BrokenTool())
    res = await registry.call_tool("broken", {})
    assert res.type == "error"
    assert "disk on fire" in res.error


@pytest.mark.asyncio
async def test_unknown_tool_returns_error(registry):
    res = await registry.call_tool("nope:missing", {"a": 1})
    assert res.success is False
    assert "nope:missing" in res.error


@pytest.mark.asyncio
async def test_same_tool_name_on_two_servers_does_not_collide(registry, client):
    client.tools["time"] = [MCPTool.create("time", "list", "Time list")]
    client.tools["files"] = [MCPTool.create("files", "list", "File list")]

    await registry.update_tools_for_server("time")
    await registry.update_tools_for_server("files")

    assert registry.get_tool("time:list") is not None
    assert registry.get_tool("files:list") is not None
    assert registry.get_tool("time:list") is not registry.get_tool("files:list")
    assert [t.id for t in registry.get_tools_for_server("files")] == ["files:list"]

    descriptors = {t["id"]: t for t in registry.get_all_tools()}
    assert descriptors["time:list"]["origin"] == "external"
    assert descriptors["time:list"]["server_name"] == "time"
    assert descriptors["time:list"]["name"] == "list"


@pytest.mark.asyncio
async def test_update_swaps_tools_without_leftovers(registry, client):
    client.tools["time"] = [MCPTool.create("time", "now"), MCPTool.create("time", "convert")]
    await registry.update_tools_for_server("time")
    rev = registry.revision

    client.tools["time"] = [MCPTool.create("time", "now"), MCPTool.create("time", "zones")]
    await registry.update_tools_for_server("time")

    ids = sorted(t.id for t in registry.get_tools_for_server("time"))
    assert ids == ["time:now", "time:zones"]
    assert registry.revision > rev

    assert registry.remove_tools_for_server("time") == 2
    assert registry.get_tools_for_server("time") == []
    assert registry.get_tool("read_file") is not None


@pytest.mark.asyncio
async def test_external_schema_is_sanitized(registry, client):
    client.tools["crm"] = [
        MCPTool.create(
            "crm",
            "add_contact",
            input_schema={"type": "object", "properties": {"email": {"type": "string", "format": "email"}}},
        )
    ]
    await registry.update_tools_for_server("crm")
    schema = registry.get_tool("crm:add_contact").input_schema
    assert schema["properties"]["email"] == {"type": "string"}


@pytest.mark.asyncio
async def test_external_call_maps_results(registry, client):
    client.tools["time"] = [MCPTool.create("time", "now")]
    await registry.update_tools_for_server("time")

    client.results = [
        _FakeRes(structured={"iso": "2024-01-01T00:00:00Z"}),
        _FakeRes(content=[_Text("plain answer")]),
        _FakeRes(is_error=True, content=[_Text("bad timezone")]),
    ]
    first = await registry.call_tool("time:now", {"tz": "UTC"}, timeout=5)
    second = await registry.call_tool("time:now", {})
    third = await registry.call_tool("time:now", {"tz": "Mars/Base"})
    fourth = await registry.call_tool("time:now", {})

    assert first.success and first.data == {"iso": "2024-01-01T00:00:00Z"}
    assert client.calls[0] == ("time", "now", {"tz": "UTC"}, 5)
    assert second.success and second.data == "plain answer"
    assert third.type == "error" and third.error == "bad timezone"
    # Client failures never escape as exceptions.
    assert fourth.type == "error" and "no more results" in fourth.error


@pytest.mark.asyncio
async def test_builtin_id_cannot_be_shadowed_by_external(registry, client):
    tool = MCPTool.create("x", "y")
    tool.id = "read_file"
    client.tools["x"] = [tool]
    added = await registry.update_tools_for_server("x")
    assert added == []
    assert registry.get_tool("read_file").origin.value == "builtin"


@pytest.mark.asyncio
async def test_destructive_tool_denied_by_confirmation(client, tmp_path):
    broker = ConfirmationBroker(default_timeout=5)
    registry = ToolRegistry(client, workspace_dir=tmp_path, confirmations=broker)
    client.tools["files"] = [MCPTool.create("files", "delete", annotations=ToolAnnotations(destructive_hint=True))]
    await registry.update_tools_for_server("files")

    call = asyncio.create_task(registry.call_tool("files:delete", {"path": "a.txt"}))
    for _ in range(20):
        await asyncio.sleep(0)
        if broker.pending():
            break
    [pending] = broker.pending()
    assert pending.tool_id == "files:delete"
    broker.reject(pending.call_id, reason="no")

    res = await call
    assert res.type == "error"
    assert res.metadata.get("denied") is True
    assert client.calls == []


@pytest.mark.asyncio
async def test_confirmation_skipped_when_policy_disables_it(client, tmp_path):
    client.security = SecurityPolicy(SecurityConfig(require_confirmation=False))
    registry = ToolRegistry(client, workspace_dir=tmp_path, confirmations=ConfirmationBroker(default_timeout=0.01))

    res = await registry.call_tool("write_file", {"path": "a.txt", "content": "hi"})
    assert res.success, res.error
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "hi"


@pytest.mark.asyncio
async def test_approved_write_goes_through(client, tmp_path):
    registry = ToolRegistry(client, workspace_dir=tmp_path, confirmations=ConfirmationBroker(auto_approve=True))
    res = await registry.call_tool("write_file", {"path": "sub/b.txt", "content": "x"})
    assert res.success
    assert (tmp_path / "sub" / "b.txt").exists()


def test_openai_export_uses_valid_function_names(registry, client):
    client.tools["time"] = [MCPTool.create("time", "list")]
    asyncio.run(registry.update_tools_for_server("time"))

    names = {t["function"]["name"] for t in registry.to_openai_tools()}
    assert "time__list" in names
    assert "read_file" in names
    assert registry.get_tool_by_function_name("time__list").id == "time:list"


@pytest.mark.asyncio
async def test_langchain_export_dispatches_through_registry(registry):
    registry.register_builtin(EchoFileTool())
    lc_tools = {t.name: t for t in registry.to_langchain_tools()}
    out = await lc_tools["echo_file"].ainvoke({"path": "x.md"})
    assert out == "x.md"
