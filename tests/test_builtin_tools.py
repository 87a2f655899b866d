import pytest

from toolhost.tools.builtin.files import Workspace, create_file_tools
from toolhost.tools.builtin.memory import create_memory_tools


@pytest.fixture
def tools(tmp_path):
    return {t.name: t for t in create_file_tools(tmp_path)}


def test_workspace_rejects_escapes(tmp_path):
    ws = Workspace(tmp_path)
    assert ws.resolve("") == ws.root
    assert ws.resolve("a/b.txt") == ws.root / "a" / "b.txt"
    with pytest.raises(ValueError):
        ws.resolve("../outside.txt")
    with pytest.raises(ValueError):
        ws.resolve("/etc/hosts")


@pytest.mark.asyncio
async def test_escape_becomes_error_result(tools):
    res = await tools["read_file"].safe_execute({"path": "../../etc/hosts"})
    assert res.type == "error"
    assert "escapes" in res.error


@pytest.mark.asyncio
async def test_write_read_and_list(tools, tmp_path):
    res = await tools["write_file"].safe_execute({"path": "notes/todo.md", "content": "one\ntwo"})
    assert res.success and res.data == "Created notes/todo.md"

    read = await tools["read_file"].safe_execute({"path": "notes/todo.md"})
    assert read.data == "1 | one\n2 | two"
    assert read.metadata["lines"] == 2

    listing = await tools["list_files"].safe_execute({"recursive": True})
    assert listing.data == [{"path": "notes", "type": "folder"}, {"path": "notes/todo.md", "type": "file"}]
    only_files = await tools["list_files"].safe_execute({"recursive": True, "type": "file", "search": "TODO"})
    assert [e["path"] for e in only_files.data] == ["notes/todo.md"]

    missing = await tools["read_file"].safe_execute({"path": "nope.md"})
    assert missing.type == "error"


@pytest.mark.asyncio
async def test_insert_content_applies_bottom_up(tools, tmp_path):
    (tmp_path / "f.txt").write_text("a\nb\nc", encoding="utf-8")
    res = await tools["insert_content"].safe_execute(
        {
            "path": "f.txt",
            "operations": [{"start_line": 1, "content": "top"}, {"start_line": 3, "content": "before c"}, {"start_line": 0, "content": "end"}],
        }
    )
    assert res.success
    assert (tmp_path / "f.txt").read_text(encoding="utf-8") == "top\na\nb\nbefore c\nc\nend"


@pytest.mark.asyncio
async def test_search_and_replace(tools, tmp_path):
    (tmp_path / "f.txt").write_text("Foo foo\nfoo\nbar foo", encoding="utf-8")
    res = await tools["search_and_replace"].safe_execute(
        {
            "path": "f.txt",
            "operations": [
                {"search": "foo", "replace": "baz", "start_line": 2, "end_line": 3},
                {"search": "^foo", "replace": "X", "use_regex": True, "ignore_case": True},
            ],
        }
    )
    assert res.metadata["replacements"] == 3
    assert (tmp_path / "f.txt").read_text(encoding="utf-8") == "X foo\nbaz\nbar baz"


@pytest.mark.asyncio
async def test_manage_files(tools, tmp_path):
    (tmp_path / "a.txt").write_text("x", encoding="utf-8")
    res = await tools["manage_files"].safe_execute(
        {
            "operations": [
                {"action": "create_folder", "path": "archive"},
                {"action": "move", "source_path": "a.txt", "destination_path": "archive/a.txt"},
            ]
        }
    )
    assert res.success
    assert (tmp_path / "archive" / "a.txt").exists()

    bad = await tools["manage_files"].safe_execute({"operations": [{"action": "delete", "path": ""}]})
    assert bad.type == "error"
    assert tmp_path.exists()

    gone = await tools["manage_files"].safe_execute({"operations": [{"action": "delete", "path": "archive"}]})
    assert gone.data == ["Deleted archive"]
    assert not (tmp_path / "archive").exists()


@pytest.mark.asyncio
async def test_memory_tools(tmp_path):
    write, read = create_memory_tools(tmp_path / "mem" / "memory.md")

    assert (await read.safe_execute()).data == "(memory is empty)"
    assert (await write.safe_execute({"content": "  "})).type == "error"

    await write.safe_execute({"content": "The user prefers UTC."})
    assert "The user prefers UTC." in (await read.safe_execute()).data


@pytest.mark.asyncio
@pytest.mark.parametrize("op", [{"start_line": 10}, {"start_line": 2, "end_line": 1}])
async def test_search_and_replace_with_empty_range_leaves_file_alone(tools, tmp_path, op):
    (tmp_path / "f.txt").write_text("one\ntwo", encoding="utf-8")
    res = await tools["search_and_replace"].safe_execute(
        {"path": "f.txt", "operations": [{"search": "zzz", "replace": "y", **op}]}
    )
    assert res.metadata["replacements"] == 0
    assert (tmp_path / "f.txt").read_text(encoding="utf-8") == "one\ntwo"
