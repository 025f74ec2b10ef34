"""Tests for the session state machine: turns, queueing, cancellation and recovery."""

import asyncio

import pytest

from agent.history import ConversationHistory, assistant_message, user_message
from agent.session import SessionBusyError, SessionDisposedError
from bedrock_service import Completion, ModelError
from conftest import tool_turn
from message_queue import Attachment
from sessions import SessionStore
from tools import BuildPipeline, BuildResult, ToolCall


def roles(session):
    return [m.role for m in session.history]


def record_states(session):
    states = []
    session.subscribe(lambda e: states.append(e.data["state"]) if e.type == "state_changed" else None)
    return states


class HangingBuilder(BuildPipeline):
    """Build that never finishes on its own."""

    def __init__(self):
        self.entered = asyncio.Event()

    async def build(self, entry_points, vfs):
        self.entered.set()
        await asyncio.Event().wait()
        return BuildResult()


@pytest.mark.asyncio
async def test_tool_turn_writes_file(make_session, provider, vfs):
    provider.add(
        tool_turn(ToolCall("c1", "write_file", {"path": "a.txt", "content": "hi"})),
        Completion(text="Created a.txt"),
    )
    session = make_session()
    states = record_states(session)

    assert session.submit("Create a.txt containing hi") is True
    await session.wait_idle()

    assert await vfs.read_text("a.txt") == "hi"
    assert roles(session) == ["user", "assistant", "tool", "assistant"]
    assert session.history[2].tool_result.call_id == "c1"
    assert session.history[-1].content == "Created a.txt"
    assert states == ["running", "idle"]
    assert session.state.value == "idle"


@pytest.mark.asyncio
async def test_messages_sent_while_running_are_queued(make_session, provider):
    provider.add(Completion(text="first answer"), Completion(text="second answer"))
    provider.block()
    session = make_session()

    assert session.submit("m1") is True
    await provider.wait_entered()
    assert session.submit("m2") is False
    assert session.queue.size == 1

    provider.release()
    await session.wait_idle()

    assert [m.content for m in session.history] == ["m1", "first answer", "m2", "second answer"]
    assert [d["content"] for d in provider.requests[1]] == ["m1", "first answer", "m2"]
    assert session.queue.size == 0


@pytest.mark.asyncio
async def test_merged_backlog_becomes_one_turn(make_session, provider):
    provider.block()
    session = make_session(merge_queued_messages=True)
    session.submit("m1")
    await provider.wait_entered()
    session.submit("m2")
    session.submit("m3")
    provider.release()
    await session.wait_idle()

    user_contents = [m.content for m in session.history if m.role == "user"]
    assert user_contents == ["m1", "m2\n\nm3"]


@pytest.mark.asyncio
async def test_cancel_during_model_call(make_session, provider):
    provider.add(Completion(text="never seen"))
    provider.block()
    session = make_session()
    states = record_states(session)

    session.submit("go")
    await provider.wait_entered()
    session.submit("later")

    assert await session.cancel() is True
    assert session.state.value == "idle"
    assert not session.is_running
    assert roles(session) == ["user", "cancelled"]
    assert states == ["running", "cancelling", "idle"]
    # the backlog waits for an explicit resume
    assert session.queue.size == 1
    await asyncio.sleep(0)
    assert not session.is_running

    provider.release()
    assert session.resume() is True
    await session.wait_idle()
    assert [m.content for m in session.history if m.role == "user"] == ["go", "later"]
    assert session.history[-1].content == "never seen"


@pytest.mark.asyncio
async def test_cancel_during_tool_stops_remaining_calls(make_session, provider, tool_context, vfs):
    builder = HangingBuilder()
    tool_context.builder = builder
    provider.add(tool_turn(
        ToolCall("b1", "build_project", {"entry_points": ["index.ts"]}),
        ToolCall("w1", "write_file", {"path": "after.txt", "content": "x"}),
    ))
    session = make_session()

    session.submit("build it")
    await asyncio.wait_for(builder.entered.wait(), timeout=2)
    await session.cancel()

    assert roles(session) == ["user", "assistant", "tool", "tool", "cancelled"]
    results = [m.tool_result for m in session.history if m.role == "tool"]
    assert [r.call_id for r in results] == ["b1", "w1"]
    assert all(r.payload["cancelled"] for r in results)
    assert not await vfs.exists("after.txt")
    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_cancel_when_idle_is_a_no_op(make_session):
    session = make_session()
    assert await session.cancel() is False
    assert session.resume() is False


@pytest.mark.asyncio
async def test_empty_completion_is_an_error_then_queue_continues(make_session, provider):
    provider.add(Completion(), Completion(text="second ok"))
    provider.block()
    session = make_session()
    states = record_states(session)

    session.submit("a")
    await provider.wait_entered()
    session.submit("b")
    provider.release()
    await session.wait_idle()

    assert roles(session) == ["user", "error", "user", "assistant"]
    assert "empty response" in session.history[1].content
    assert states == ["running", "error", "idle", "running", "idle"]


@pytest.mark.asyncio
async def test_failed_tool_result_goes_back_to_the_model(make_session, provider):
    provider.add(
        tool_turn(ToolCall("r1", "read_file", {"path": "missing.txt"})),
        Completion(text="That file does not exist."),
    )
    session = make_session()
    session.submit("read missing.txt")
    await session.wait_idle()

    assert roles(session) == ["user", "assistant", "tool", "assistant"]
    sent = provider.requests[1][-1]
    assert sent["role"] == "tool"
    assert sent["tool_result"]["is_error"] is True
    assert sent["tool_result"]["payload"]["not_found"] is True


@pytest.mark.asyncio
async def test_model_error_is_reported(make_session, provider):
    provider.add(ModelError("ThrottlingException", kind="rate_limit"))
    session = make_session()
    session.submit("hello")
    await session.wait_idle()

    assert roles(session) == ["user", "error"]
    assert session.history[-1].content.startswith("Rate limit exceeded")
    assert session.state.value == "idle"


@pytest.mark.asyncio
async def test_model_timeout(make_session, provider):
    provider.block()
    session = make_session(model_timeout=0.05)
    session.submit("hello")
    await session.wait_idle()

    assert roles(session) == ["user", "error"]
    assert session.history[-1].content == "The model did not respond within 0.05 seconds"


@pytest.mark.asyncio
async def test_step_limit(make_session, provider):
    provider.add(*[tool_turn(ToolCall(f"l{i}", "list_files", {})) for i in range(5)])
    session = make_session(max_steps=2)
    session.submit("loop forever")
    await session.wait_idle()

    assert roles(session) == ["user", "assistant", "tool", "assistant", "tool", "error"]
    assert "2 model steps" in session.history[-1].content


@pytest.mark.asyncio
async def test_attachments_are_saved_to_tmp(make_session, provider, vfs):
    session = make_session()
    session.submit("see attached", [Attachment("notes.txt", b"hello")])
    await session.wait_idle()

    assert await vfs.read_file("/tmp/notes.txt") == b"hello"
    first = session.history[0]
    assert first.content == "see attached\nAdded file: /tmp/notes.txt"
    assert first.attachments == ["/tmp/notes.txt"]


@pytest.mark.asyncio
async def test_attachment_names_are_sanitized_and_deduplicated(make_session, vfs):
    await vfs.write_text("/tmp/notes.txt", "from an earlier turn")
    session = make_session()
    session.submit("files", [
        Attachment("..", b"a"),
        Attachment(".", b"b"),
        Attachment("dir/notes.txt", b"c"),
        Attachment("notes.txt", b"d"),
    ])
    await session.wait_idle()

    first = session.history[0]
    assert first.attachments == [
        "/tmp/attachment", "/tmp/attachment_1", "/tmp/notes_1.txt", "/tmp/notes_2.txt",
    ]
    assert await vfs.read_file("/tmp/attachment_1") == b"b"
    assert await vfs.read_text("/tmp/notes.txt") == "from an earlier turn"
    assert await vfs.read_file("/tmp/notes_2.txt") == b"d"
    assert session.history[-1].content == "done"


@pytest.mark.asyncio
async def test_failed_attachment_write_keeps_the_user_message(make_session, vfs):
    await vfs.write_text("/tmp", "not a directory")
    session = make_session()
    session.submit("see attached", [Attachment("notes.txt", b"hello")])
    await session.wait_idle()

    first = session.history[0]
    assert first.role == "user"
    assert first.content.startswith("see attached\nCould not save attachment 'notes.txt'")
    assert first.attachments == []
    assert [m.role for m in session.history] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_empty_submit_is_ignored(make_session):
    session = make_session()
    assert session.submit("   ") is False
    assert not session.is_running
    assert len(session.history) == 0


@pytest.mark.asyncio
async def test_rollback_and_reset(make_session, provider):
    session = make_session()
    for text in ("one", "two"):
        session.submit(text)
        await session.wait_idle()
    assert len(session.history) == 4

    assert session.rollback() == 2
    assert [m.content for m in session.history] == ["one", "done"]

    assert session.reset() is None
    assert len(session.history) == 0


@pytest.mark.asyncio
async def test_reset_archives_previous_history(make_session, tmp_path):
    store = SessionStore(str(tmp_path))
    session = make_session(store=store)
    session.submit("first conversation")
    await session.wait_idle()

    name = session.reset()
    assert name is not None
    assert store.list_archives("proj") == [name]
    assert [m["content"] for m in store.load_archive("proj", name)] == ["first conversation", "done"]
    assert store.load_history("proj") == []
    # nothing to archive the second time
    assert session.reset() is None
    assert store.list_archives("proj") == [name]


@pytest.mark.asyncio
async def test_activity_timestamp_advances(make_session):
    session = make_session()
    session.last_activity = 0
    session.submit("hello")
    assert session.last_activity > 0
    await session.wait_idle()


@pytest.mark.asyncio
async def test_rollback_refused_while_running(make_session, provider):
    provider.block()
    session = make_session()
    session.submit("busy")
    await provider.wait_entered()
    with pytest.raises(SessionBusyError):
        session.rollback()
    await session.cancel()


@pytest.mark.asyncio
async def test_unanswered_tool_calls_are_repaired(make_session, provider):
    history = ConversationHistory([
        user_message("earlier"),
        assistant_message("", [ToolCall("old", "read_file", {"path": "x"})]),
    ])
    session = make_session(history=history)
    session.submit("again")
    await session.wait_idle()

    sent = provider.requests[0]
    assert [d["role"] for d in sent] == ["user", "assistant", "tool", "user"]
    assert sent[2]["tool_result"]["call_id"] == "old"
    assert sent[2]["tool_result"]["payload"]["cancelled"] is True


@pytest.mark.asyncio
async def test_history_and_queue_are_persisted(make_session, provider, tmp_path):
    store = SessionStore(str(tmp_path))
    provider.block()
    session = make_session(store=store)

    session.submit("first")
    await provider.wait_entered()
    session.submit("second")
    assert [d["content"] for d in store.load_queue("proj")] == ["second"]

    provider.release()
    await session.wait_idle()
    assert store.load_queue("proj") == []
    assert [d["content"] for d in store.load_history("proj")] == ["first", "done", "second", "done"]

    session.rollback()
    assert len(store.load_history("proj")) == 2


@pytest.mark.asyncio
async def test_disposed_session_rejects_commands(make_session, provider):
    provider.block()
    session = make_session()
    session.submit("work")
    await provider.wait_entered()

    await session.dispose()
    assert session.disposed
    assert not session.is_running
    with pytest.raises(SessionDisposedError):
        session.submit("more")
