"""Tests for the OpenCode adapter and SSE handle."""

import json

import httpx
import pytest

from edge_orchestrator.backends.opencode import OpenCodeAdapter, OpenCodeHandle, event_session_id
from edge_orchestrator.exceptions import BackendFatalError, BackendUnavailableError
from edge_orchestrator.models.messages import AssistantMessage, TextBlock, accumulate_assistant


def text_part(session_id, message_id, text, delta=None):
    properties = {
        "part": {"type": "text", "sessionID": session_id, "messageID": message_id, "text": text}
    }
    if delta is not None:
        properties["delta"] = delta
    return {"type": "message.part.updated", "properties": properties}


def tool_part(session_id, call_id, status, **state):
    return {
        "type": "message.part.updated",
        "properties": {
            "part": {
                "type": "tool",
                "sessionID": session_id,
                "callID": call_id,
                "tool": "bash",
                "state": {"status": status, **state},
            }
        },
    }


def idle(session_id):
    return {"type": "session.idle", "properties": {"sessionID": session_id}}


def test_event_session_id():
    assert event_session_id(text_part("ses_1", "msg_1", "hi")) == "ses_1"
    assert event_session_id(idle("ses_2")) == "ses_2"
    assert (
        event_session_id({"type": "message.updated", "properties": {"info": {"sessionID": "ses_3"}}})
        == "ses_3"
    )


def test_idle_synthesizes_result_from_last_assistant_text():
    adapter = OpenCodeAdapter()
    last = None
    for event in (
        text_part("ses_1", "msg_1", "Done", delta="Done"),
        text_part("ses_1", "msg_1", "Done implementing X", delta=" implementing X"),
    ):
        last = accumulate_assistant(last, adapter.translate(event, "ses_1"))

    result = adapter.translate(idle("ses_1"), "ses_1", last)

    assert result.subtype == "success"
    assert result.final_text == "Done implementing X"


def test_idle_uses_last_metrics_snapshot():
    adapter = OpenCodeAdapter()
    adapter.translate(
        {
            "type": "message.updated",
            "properties": {
                "info": {
                    "role": "assistant",
                    "sessionID": "ses_1",
                    "cost": 0.042,
                    "tokens": {"input": 1200, "output": 300, "cache": {"read": 900, "write": 50}},
                    "time": {"created": 1000, "completed": 4500},
                }
            },
        },
        "ses_1",
    )

    result = adapter.translate(idle("ses_1"), "ses_1")

    assert result.cost_usd == pytest.approx(0.042)
    assert result.usage.input_tokens == 1200
    assert result.usage.cache_read_input_tokens == 900
    assert result.usage.cache_creation_input_tokens == 50
    assert result.duration_ms == 3500
    assert result.final_text == "Session completed successfully"


def test_tool_states():
    adapter = OpenCodeAdapter()

    pending = adapter.translate(tool_part("s", "call_1", "pending"), "s")
    running = adapter.translate(tool_part("s", "call_1", "running", input={"command": "ls"}), "s")
    completed = adapter.translate(tool_part("s", "call_1", "completed", output="a.txt"), "s")
    failed = adapter.translate(tool_part("s", "call_2", "error", error="boom"), "s")

    assert pending is None
    assert running.tool_use.input == {"command": "ls"}
    assert completed.tool_result.content == "a.txt"
    assert failed.tool_result.is_error is True


def test_session_error():
    result = OpenCodeAdapter().translate(
        {
            "type": "session.error",
            "properties": {
                "sessionID": "s",
                "error": {"name": "APIError", "data": {"message": "rate limited", "statusCode": 429}},
            },
        },
        "s",
    )

    assert result.subtype == "error_during_execution"
    assert result.errors == ["APIError: rate limited (status: 429)"]


def test_user_message_title():
    message = OpenCodeAdapter().translate(
        {"type": "message.updated", "properties": {"info": {"role": "user", "summary": {"title": "Fix bug"}}}},
        "s",
    )

    assert message.content == "Fix bug"


# ----------------------------------------------------------------------
# Handle
# ----------------------------------------------------------------------


def sse(*events):
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events).encode()


def make_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://opencode")


@pytest.mark.asyncio
async def test_handle_streams_until_idle():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path))
        if request.url.path == "/session":
            return httpx.Response(200, json={"id": "ses_1"})
        if request.url.path == "/event":
            return httpx.Response(
                200,
                content=sse(
                    {"type": "server.connected", "properties": {}},
                    text_part("ses_other", "m0", "not ours"),
                    text_part("ses_1", "m1", "Working"),
                    idle("ses_1"),
                    text_part("ses_1", "m2", "after idle"),
                ),
                headers={"content-type": "text/event-stream"},
            )
        if request.url.path == "/session/ses_1/message":
            assert json.loads(request.content)["model"] == {
                "providerID": "anthropic",
                "modelID": "claude-sonnet-4",
            }
            return httpx.Response(200, json={})
        return httpx.Response(404)

    client = make_client(handler)
    handle = OpenCodeHandle(
        "http://opencode", "/ws", "fix it", model="anthropic/claude-sonnet-4", client=client
    )

    events = [event async for event in handle.events()]

    assert [e["type"] for e in events] == ["message.part.updated", "session.idle"]
    assert handle.backend_session_id == "ses_1"
    assert not handle.is_running
    assert ("POST", "/session") in requests
    await client.aclose()


@pytest.mark.asyncio
async def test_handle_resumes_existing_session():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/session":
            raise AssertionError("should not create a session when resuming")
        if request.url.path == "/event":
            return httpx.Response(200, content=sse(idle("ses_9")))
        return httpx.Response(200, json={})

    client = make_client(handler)
    handle = OpenCodeHandle("http://opencode", "/ws", "more", resume_session_id="ses_9", client=client)

    events = [event async for event in handle.events()]

    assert [e["type"] for e in events] == ["session.idle"]
    await client.aclose()


@pytest.mark.asyncio
async def test_handle_unreachable_server():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)
    handle = OpenCodeHandle("http://opencode", "/ws", "fix it", client=client)

    with pytest.raises(BackendUnavailableError):
        async for _ in handle.events():
            pass
    await client.aclose()


@pytest.mark.asyncio
async def test_handle_stream_closed_before_idle():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/session":
            return httpx.Response(200, json={"id": "ses_1"})
        if request.url.path == "/event":
            return httpx.Response(200, content=sse(text_part("ses_1", "m1", "partial")))
        return httpx.Response(200, json={})

    client = make_client(handler)
    handle = OpenCodeHandle("http://opencode", "/ws", "fix it", client=client)

    received = []
    with pytest.raises(BackendFatalError):
        async for event in handle.events():
            received.append(event)
    assert len(received) == 1
    await client.aclose()


def test_message_body_without_provider():
    handle = OpenCodeHandle("http://opencode/", "/ws", "fix it", model="sonnet")

    assert handle.base_url == "http://opencode"
    assert handle._message_body() == {"parts": [{"type": "text", "text": "fix it"}]}
