"""Tests for conversation history bookkeeping."""

from agent.history import (
    ConversationHistory, Message, assistant_message, tool_message, user_message,
)
from tools import ToolCall, ToolResult


def _history():
    return ConversationHistory([
        user_message("one"),
        assistant_message("", [ToolCall("a", "read_file", {}), ToolCall("b", "read_file", {})]),
        tool_message(ToolResult("a", False, {})),
        assistant_message("answer"),
        user_message("two"),
        assistant_message("", [ToolCall("c", "list_files", {})]),
    ])


def test_repaired_inserts_missing_results_in_place():
    history = _history()
    repaired = history.repaired()
    assert repaired is not history
    assert [m.role for m in repaired] == [
        "user", "assistant", "tool", "tool", "assistant", "user", "assistant", "tool",
    ]
    assert repaired[3].tool_result.call_id == "b"
    assert repaired[3].tool_result.payload["cancelled"] is True
    assert repaired[-1].tool_result.call_id == "c"
    # the original is left untouched
    assert len(history) == 6


def test_repaired_returns_self_when_consistent():
    history = ConversationHistory([user_message("hi"), assistant_message("hello")])
    assert history.repaired() is history


def test_unanswered_tool_calls_looks_at_last_assistant():
    assert [c.id for c in _history().unanswered_tool_calls()] == ["c"]


def test_rollback_turns():
    history = _history()
    assert [m.content for m in history.rollback_turns(1)][-1] == "answer"
    assert len(history.rollback_turns(5)) == 0
    assert len(history.rollback_turns(0)) == 6


def test_dict_round_trip_keeps_tool_data():
    history = _history()
    restored = ConversationHistory.from_dicts(history.to_dicts())
    assert restored[1].tool_calls[1] == ToolCall("b", "read_file", {})
    assert restored[2].tool_result == ToolResult("a", False, {})
    assert isinstance(restored[0], Message)
