"""Tests for the Cursor agent adapter and command line."""

from edge_orchestrator.backends.cursor import CursorAdapter, CursorHandle, extract_text
from edge_orchestrator.models.messages import AssistantMessage, SystemInitMessage, TextBlock


def test_extract_text():
    assert extract_text("plain") == "plain"
    assert extract_text([{"type": "text", "text": "a"}, {"type": "image"}, {"type": "text", "text": "b"}]) == "ab"
    assert extract_text(None) == ""


def test_system_init():
    message = CursorAdapter(cwd="/ws", model="sonnet-4").translate(
        {"type": "system", "subtype": "init", "session_id": "cur-1", "permissionMode": "default"}, None
    )

    assert isinstance(message, SystemInitMessage)
    assert message.session_id == "cur-1"
    assert message.model == "sonnet-4"
    assert message.permission_mode == "default"


def test_assistant_and_user_messages():
    adapter = CursorAdapter()

    assistant = adapter.translate(
        {"type": "assistant", "message": {"role": "assistant", "content": [{"type": "text", "text": "Looking"}]}},
        "cur-1",
    )
    user = adapter.translate(
        {"type": "user", "message": {"role": "user", "content": [{"type": "text", "text": "go"}]}}, "cur-1"
    )
    empty = adapter.translate({"type": "assistant", "message": {"content": []}}, "cur-1")

    assert assistant.text == "Looking"
    assert user.content == "go"
    assert empty is None


def test_tool_call_started_then_completed():
    adapter = CursorAdapter()
    call = {"shellToolCall": {"args": {"command": "npm test"}}}

    started = adapter.translate_many({"type": "tool_call", "subtype": "started", "call_id": "c1", "tool_call": call}, "s")
    completed = adapter.translate_many(
        {
            "type": "tool_call",
            "subtype": "completed",
            "call_id": "c1",
            "tool_call": {"shellToolCall": {**call["shellToolCall"], "result": {"success": {"stdout": "ok"}}}},
        },
        "s",
    )

    assert [m.type for m in started] == ["assistant"]
    assert [m.type for m in completed] == ["user"]
    assert completed[0].tool_result.content == "ok"


def test_failed_tool_call_is_error():
    messages = CursorAdapter().translate_many(
        {"type": "tool_call", "subtype": "failed", "call_id": "c2", "tool_call": {"editToolCall": {"args": {"path": "a"}}}},
        "s",
    )

    assert [m.type for m in messages] == ["assistant", "user"]
    assert messages[1].tool_result.is_error is True


def test_result_prefers_result_text_then_last_text():
    adapter = CursorAdapter()
    adapter.translate({"type": "assistant", "message": {"content": "Implemented the fix"}}, "s")

    explicit = adapter.translate({"type": "result", "result": "Summary", "duration_ms": 900}, "s")
    implicit = adapter.translate({"type": "result"}, "s")

    assert explicit.final_text == "Summary"
    assert explicit.duration_ms == 900
    assert implicit.final_text == "Implemented the fix"


def test_result_falls_back_to_last_assistant():
    last = AssistantMessage(content=[TextBlock(text="From history")])

    result = CursorAdapter().translate({"type": "turn.completed"}, "s", last)

    assert result.final_text == "From history"


def test_error_results():
    adapter = CursorAdapter()

    max_turns = adapter.translate({"type": "result", "stop_reason": "max_turns"}, "s")
    failed = adapter.translate({"type": "result", "is_error": True, "result": "crashed"}, "s")
    error = adapter.translate({"type": "error"}, "s")

    assert max_turns.subtype == "error_max_turns"
    assert failed.errors == ["crashed"]
    assert error.errors == ["Cursor execution failed"]


def test_command_line():
    handle = CursorHandle("cursor-agent", "/ws", "fix it", resume_session_id="cur-1", model="sonnet-4")

    assert handle.build_command() == [
        "cursor-agent", "--print", "--output-format", "stream-json", "--trust",
        "--model", "sonnet-4", "--resume", "cur-1", "--workspace", "/ws", "fix it",
    ]
