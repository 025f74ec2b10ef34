"""Tests for the tool execution engine and its handlers."""

import asyncio
import json

import pytest

import tools.external_ops as external_ops
from cancellation import CancellationToken
from git_sync import CliGitBackend, GitStatus, GitSyncCoordinator
from tools import BuildPipeline, BuildResult, ToolCall, ToolContext, ToolExecutor
from tools.schemas import TOOL_DEFINITIONS


def call(id, name, **arguments):
    return ToolCall(id=id, name=name, arguments=arguments)


@pytest.mark.asyncio
async def test_calls_run_in_order_with_one_result_each(executor, vfs):
    calls = [
        call("c1", "write_file", path="a.txt", content="1"),
        call("c2", "edit_file", path="a.txt", old_string="1", new_string="2"),
        call("c3", "read_file", path="a.txt"),
    ]
    results = await executor.execute_all(calls)
    assert [r.call_id for r in results] == ["c1", "c2", "c3"]
    assert not any(r.is_error for r in results)
    assert results[2].payload["content"] == "2"


@pytest.mark.asyncio
async def test_write_payload_describes_change(executor, vfs):
    result = await executor.execute(call("w", "write_file", path="src/a.txt", content="héllo"))
    assert result.payload == {"path": "/src/a.txt", "bytes": 6, "created": True}
    assert await vfs.read_text("src/a.txt") == "héllo"


@pytest.mark.asyncio
async def test_invalid_arguments_are_a_tool_error(executor):
    result = await executor.execute(call("v", "write_file", path="a.txt"))
    assert result.is_error
    assert result.call_id == "v"
    assert "Invalid arguments for write_file" in result.payload["error"]
    assert "content" in result.payload["error"]


@pytest.mark.asyncio
async def test_arguments_as_json_string(executor, vfs):
    ok = await executor.execute(ToolCall("j", "write_file", json.dumps({"path": "b.txt", "content": "x"})))
    assert not ok.is_error
    bad = await executor.execute(ToolCall("k", "write_file", "{not json"))
    assert bad.is_error
    assert "not valid JSON" in bad.payload["error"]


@pytest.mark.asyncio
async def test_unknown_tool(executor):
    result = await executor.execute(call("u", "teleport"))
    assert result.is_error
    assert result.payload["error"] == "Unknown tool: teleport"


@pytest.mark.asyncio
async def test_missing_file_is_a_tool_error(executor):
    result = await executor.execute(call("r", "read_file", path="missing.txt"))
    assert result.is_error
    assert result.payload["not_found"] is True
    assert "missing.txt" in result.payload["error"]


@pytest.mark.asyncio
async def test_edit_requires_unique_match(executor, vfs):
    await vfs.write_text("dup.txt", "x x")
    result = await executor.execute(call("e", "edit_file", path="dup.txt", old_string="x", new_string="y"))
    assert result.is_error
    assert "2 occurrences" in result.payload["error"]
    result = await executor.execute(
        call("e2", "edit_file", path="dup.txt", old_string="x", new_string="y", replace_all=True),
    )
    assert result.payload["replacements"] == 2
    assert await vfs.read_text("dup.txt") == "y y"


@pytest.mark.asyncio
async def test_read_window(executor, vfs):
    await vfs.write_text("lines.txt", "a\nb\nc\nd\n")
    result = await executor.execute(call("r", "read_file", path="lines.txt", offset=2, limit=2))
    assert result.payload["content"] == "b\nc\n"
    assert result.payload["total_lines"] == 4


@pytest.mark.asyncio
async def test_list_files_honours_gitignore(executor, vfs):
    await vfs.write_text(".gitignore", "dist/\n*.log\n")
    await vfs.write_text("src/app.py", "")
    await vfs.write_text("dist/bundle.js", "")
    await vfs.write_text("debug.log", "")
    await vfs.write_text("node_modules/x/index.js", "")
    result = await executor.execute(call("l", "list_files", path="/", recursive=True))
    assert result.payload["files"] == ["/.gitignore", "/src/app.py"]

    shallow = await executor.execute(call("l2", "list_files"))
    names = {e["name"]: e["type"] for e in shallow.payload["entries"]}
    assert names["src"] == "directory"
    assert names["debug.log"] == "file"


@pytest.mark.asyncio
async def test_delete_and_make_directory(executor, vfs):
    await executor.execute(call("m", "make_directory", path="build/out"))
    assert await vfs.is_dir("build/out")
    await vfs.write_text("build/out/x.js", "")
    refused = await executor.execute(call("d", "delete_file", path="build"))
    assert refused.is_error
    removed = await executor.execute(call("d2", "delete_file", path="build", recursive=True))
    assert removed.payload["deleted"] is True
    assert not await vfs.exists("build")


@pytest.mark.asyncio
async def test_run_shell_payload(executor, vfs):
    await vfs.write_text("a.txt", "hi\n")
    result = await executor.execute(call("s", "run_shell", command="cat a.txt"))
    assert result.payload == {"stdout": "hi\n", "stderr": "", "exit_code": 0}
    assert not result.is_error

    failed = await executor.execute(call("s2", "run_shell", command="nosuchcmd"))
    assert failed.is_error
    assert failed.payload["exit_code"] == 127


@pytest.mark.asyncio
async def test_no_side_effects_after_cancellation(executor, vfs):
    token = CancellationToken()

    def cancel_after_first(tool_call, result):
        token.cancel()

    calls = [
        call("c1", "write_file", path="first.txt", content="1"),
        call("c2", "write_file", path="second.txt", content="2"),
        call("c3", "run_shell", command="touch third.txt"),
    ]
    results = await executor.execute_all(calls, token, on_result=cancel_after_first)
    assert [r.call_id for r in results] == ["c1", "c2", "c3"]
    assert not results[0].is_error
    assert all(r.is_error and r.payload.get("cancelled") for r in results[1:])
    assert await vfs.exists("first.txt")
    assert not await vfs.exists("second.txt")
    assert not await vfs.exists("third.txt")


@pytest.mark.asyncio
async def test_git_commit_reports_clean_tree(executor, git_backend):
    result = await executor.execute(call("g", "git_commit", message="nothing"))
    assert not result.is_error
    assert result.payload["committed"] is False
    assert "Working tree is clean" in result.payload["message"]


@pytest.mark.asyncio
async def test_git_commit_counts_changes(executor, git_backend):
    git_backend.status_result.changed_files = {"a.py": "M", "b.py": "U", "c.py": "D", "d.py": "A"}
    result = await executor.execute(call("g", "git_commit", message="Update files"))
    assert result.payload["committed"] is True
    assert result.payload["branch"] == "main"
    assert (result.payload["added"], result.payload["modified"], result.payload["deleted"]) == (2, 1, 1)
    assert len(result.payload["short_sha"]) == 7


@pytest.mark.asyncio
async def test_git_commit_errors(executor, git_backend):
    empty = await executor.execute(call("g1", "git_commit", message="   "))
    assert empty.is_error

    git_backend.status_result = GitStatus(branch=None, changed_files={"a.py": "M"})
    detached = await executor.execute(call("g2", "git_commit", message="x"))
    assert detached.is_error
    assert "detached HEAD" in detached.payload["error"]

    git_backend.repository = False
    not_repo = await executor.execute(call("g3", "git_commit", message="x"))
    assert not_repo.payload["error"] == "Tool error: Not a git repository"


@pytest.mark.asyncio
async def test_disk_git_refuses_in_memory_project(vfs, shell):
    ctx = ToolContext(vfs=vfs, shell=shell, git=GitSyncCoordinator(CliGitBackend()), project_dir="/proj")
    result = await ToolExecutor(ctx).execute(call("g1", "git_status"))
    assert result.is_error
    assert "not on disk" in result.payload["error"]


@pytest.mark.asyncio
async def test_git_push_during_pull_is_a_tool_error(executor, git, git_backend):
    gate = git_backend.gate("pull")
    pull = asyncio.create_task(git.pull("/proj"))
    for _ in range(100):
        if git.active_operation("/proj"):
            break
        await asyncio.sleep(0)
    result = await executor.execute(call("p", "git_push"))
    assert result.is_error
    assert result.payload["active_operation"] == "pull"
    gate.set()
    await pull
    retry = await executor.execute(call("p2", "git_push"))
    assert not retry.is_error


@pytest.mark.asyncio
async def test_build_project(executor, tool_context):
    missing = await executor.execute(call("b", "build_project", entry_points=["index.ts"]))
    assert missing.is_error

    class Builder(BuildPipeline):
        async def build(self, entry_points, vfs):
            return BuildResult(errors=[], output_files=[f"dist/{e}.js" for e in entry_points])

    tool_context.builder = Builder()
    built = await executor.execute(call("b2", "build_project", entry_points=["index"]))
    assert built.payload == {"errors": [], "output_files": ["dist/index.js"]}


@pytest.mark.asyncio
async def test_web_search(executor, monkeypatch):
    monkeypatch.setattr(
        external_ops, "_ddgs_text",
        lambda query, max_results: [{"title": "Docs", "href": "https://docs.example.com", "body": "Hello"}],
    )
    result = await executor.execute(call("w", "web_search", query="asyncio"))
    assert result.payload["results"] == [
        {"title": "Docs", "url": "https://docs.example.com", "snippet": "Hello"},
    ]


def test_definitions(executor):
    defs = {d["name"]: d for d in executor.definitions()}
    assert set(defs) == {d["name"] for d in TOOL_DEFINITIONS}
    assert "Available commands:" in defs["run_shell"]["description"]
    assert defs["write_file"]["input_schema"]["required"] == ["path", "content"]


def test_definitions_follow_registered_handlers(tool_context):
    executor = ToolExecutor(tool_context, handlers={"read_file": lambda args, ctx: None})
    assert [d["name"] for d in executor.definitions()] == ["read_file"]
