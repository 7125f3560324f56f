"""Unit tests for the Claude Agent SDK backend."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from claude_agent_sdk import CLINotFoundError, ClaudeSDKError
from claude_agent_sdk.types import (
    AssistantMessage,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from edge_orchestrator.backends.claude import ClaudeAdapter, ClaudeHandle, tool_result_text
from edge_orchestrator.exceptions import BackendFatalError, BackendUnavailableError
from edge_orchestrator.models.messages import SystemInitMessage


def init_message(session_id="claude-1"):
    return SystemMessage(
        subtype="init",
        data={
            "session_id": session_id,
            "model": "claude-sonnet-4",
            "tools": ["Read", "Bash"],
            "permissionMode": "bypassPermissions",
        },
    )


def result_message(**overrides):
    data = {
        "subtype": "success",
        "duration_ms": 1500,
        "duration_api_ms": 1200,
        "is_error": False,
        "num_turns": 3,
        "session_id": "claude-1",
        "total_cost_usd": 0.05,
        "usage": {"input_tokens": 100, "output_tokens": 40, "cache_read_input_tokens": 20},
        "result": "Fixed the login button",
    }
    data.update(overrides)
    return ResultMessage(**data)


@pytest.fixture
def adapter():
    return ClaudeAdapter(cwd="/tmp/test-project")


def test_system_init(adapter):
    msg = init_message()

    message = adapter.translate(msg, None)

    assert adapter.extract_session_id(msg) == "claude-1"
    assert isinstance(message, SystemInitMessage)
    assert message.tools == ["Read", "Bash"]
    assert message.permission_mode == "bypassPermissions"
    assert message.cwd == "/tmp/test-project"


def test_assistant_text_and_tool_use(adapter):
    msg = AssistantMessage(
        content=[
            TextBlock(text="Let me look"),
            ToolUseBlock(id="toolu_1", name="Read", input={"file_path": "app.py"}),
        ],
        model="claude-sonnet-4",
    )

    message = adapter.translate(msg, "claude-1")

    assert message.text == "Let me look"
    assert message.tool_use.id == "toolu_1"
    assert message.session_id == "claude-1"


def test_tool_result(adapter):
    msg = UserMessage(
        content=[
            ToolResultBlock(
                tool_use_id="toolu_1",
                content=[{"type": "text", "text": "line 1"}, {"type": "text", "text": "line 2"}],
                is_error=False,
            )
        ]
    )

    message = adapter.translate(msg, "claude-1")

    assert message.tool_result.tool_use_id == "toolu_1"
    assert message.tool_result.content == "line 1\nline 2"


def test_tool_result_text():
    assert tool_result_text(None) == ""
    assert tool_result_text("plain") == "plain"
    assert tool_result_text({"key": 1}) == '{\n  "key": 1\n}'


def test_success_result(adapter):
    message = adapter.translate(result_message(), "claude-1")

    assert message.subtype == "success"
    assert message.final_text == "Fixed the login button"
    assert message.cost_usd == pytest.approx(0.05)
    assert message.usage.cache_read_input_tokens == 20
    assert message.num_turns == 3


def test_error_result(adapter):
    message = adapter.translate(
        result_message(subtype="error_max_turns", is_error=True, result=None), "claude-1"
    )

    assert message.subtype == "error_max_turns"
    assert message.final_text is None
    assert message.errors == ["Claude run failed (error_max_turns)"]


def test_unknown_message_is_ignored(adapter):
    assert adapter.translate(SystemMessage(subtype="compact_boundary", data={}), "claude-1") is None


# ----------------------------------------------------------------------
# Handle
# ----------------------------------------------------------------------


def mock_client(messages=None, receive_error=None):
    client = MagicMock()
    client.connect = AsyncMock()
    client.query = AsyncMock()
    client.interrupt = AsyncMock()
    client.disconnect = AsyncMock()

    async def receive_response():
        for msg in messages or []:
            yield msg
        if receive_error is not None:
            raise receive_error

    client.receive_response = receive_response
    return client


@pytest.mark.asyncio
async def test_handle_establishes_session():
    client = mock_client([init_message("claude-7"), result_message(session_id="claude-7")])

    with patch("edge_orchestrator.backends.claude.ClaudeSDKClient", return_value=client):
        handle = ClaudeHandle("/tmp/test-project", "fix it", allowed_tools=["Read"])
        received = [msg async for msg in handle.events()]

    assert len(received) == 2
    assert handle.backend_session_id == "claude-7"
    client.query.assert_awaited_once_with("fix it")
    client.disconnect.assert_awaited_once()
    assert not handle.is_running


def test_agent_options_resume():
    handle = ClaudeHandle(
        "/tmp/test-project", "more", resume_session_id="claude-1", model="claude-opus-4"
    )

    options = handle._create_agent_options()

    assert options.resume == "claude-1"
    assert options.model == "claude-opus-4"
    assert options.cwd == "/tmp/test-project"
    assert options.permission_mode == "bypassPermissions"


@pytest.mark.asyncio
async def test_handle_cli_not_found():
    client = mock_client()
    client.connect.side_effect = CLINotFoundError("Claude Code not found")

    with patch("edge_orchestrator.backends.claude.ClaudeSDKClient", return_value=client):
        handle = ClaudeHandle("/tmp/test-project", "fix it")
        with pytest.raises(BackendUnavailableError):
            async for _ in handle.events():
                pass


@pytest.mark.asyncio
async def test_handle_sdk_error_is_fatal():
    client = mock_client([init_message()], receive_error=ClaudeSDKError("process died"))

    with patch("edge_orchestrator.backends.claude.ClaudeSDKClient", return_value=client):
        handle = ClaudeHandle("/tmp/test-project", "fix it")
        with pytest.raises(BackendFatalError, match="process died"):
            async for _ in handle.events():
                pass


@pytest.mark.asyncio
async def test_send_requires_running_client():
    handle = ClaudeHandle("/tmp/test-project", "fix it")

    assert handle.supports_streaming_input
    with pytest.raises(BackendFatalError):
        await handle.send("follow up")


@pytest.mark.asyncio
async def test_stop_interrupts_and_disconnects():
    client = mock_client()
    handle = ClaudeHandle("/tmp/test-project", "fix it")
    handle._client = client

    await handle.stop()
    await handle.stop()

    client.interrupt.assert_awaited_once()
    client.disconnect.assert_awaited_once()
    assert not handle.is_running
