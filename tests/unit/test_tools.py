"""Tests for tool-call projection helpers."""

import pytest

from edge_orchestrator.backends.tools import (
    infer_command_tool_name,
    normalize_file_path,
    project_item,
    project_tool_call,
    summarize_todo_list,
)


@pytest.mark.parametrize(
    "command,expected",
    [
        ("rg -n TODO src", "Grep"),
        ("grep -r foo .", "Grep"),
        ("find . -name '*.py'", "Glob"),
        ("cat README.md", "Read"),
        ("cat <<'EOF' > notes.txt", "Write"),
        ("echo hi > out.txt", "Write"),
        ("pytest -q", "Bash"),
    ],
)
def test_infer_command_tool_name(command, expected):
    assert infer_command_tool_name(command) == expected


def test_normalize_file_path():
    assert normalize_file_path("/ws/src/app.py", "/ws") == "src/app.py"
    assert normalize_file_path("/other/app.py", "/ws") == "/other/app.py"
    assert normalize_file_path("/ws", "/ws") == "/ws"
    assert normalize_file_path("src/app.py", None) == "src/app.py"


def test_summarize_todo_list():
    todos = [
        {"content": "write tests", "status": "completed"},
        {"text": "ship it", "status": "in_progress"},
        "garbage",
    ]

    assert summarize_todo_list(todos) == "- [x] write tests\n- [ ] ship it (in progress)\n- [ ] task"
    assert summarize_todo_list(None) == "No todos"


def test_project_command_execution():
    projection = project_item(
        {
            "id": "item_1",
            "type": "command_execution",
            "command": "rg foo",
            "aggregated_output": "a.py:1:foo\n",
            "exit_code": 0,
            "status": "completed",
        }
    )

    assert projection.tool_name == "Grep"
    assert projection.tool_input == {"command": "rg foo"}
    assert projection.result == "a.py:1:foo"
    assert projection.is_error is False


def test_project_failed_command_without_output():
    projection = project_item(
        {"id": "item_1", "type": "command_execution", "command": "make", "exit_code": 2}
    )

    assert projection.is_error is True
    assert projection.result == "Command failed (exit code 2)"


def test_project_file_change_is_relative_to_workspace():
    projection = project_item(
        {
            "id": "item_2",
            "type": "file_change",
            "changes": [{"kind": "update", "path": "/ws/src/app.py"}],
            "status": "completed",
        },
        "/ws",
    )

    assert projection.tool_name == "Edit"
    assert projection.tool_input["file_path"] == "src/app.py"
    assert projection.result == "update src/app.py"


def test_project_mcp_tool_call():
    projection = project_item(
        {
            "id": "item_3",
            "type": "mcp_tool_call",
            "server": "linear",
            "tool": "get_issue",
            "arguments": {"id": "ENG-1"},
            "result": {"content": [{"type": "text", "text": "Issue ENG-1"}]},
        }
    )

    assert projection.tool_name == "mcp__linear__get_issue"
    assert projection.result == "Issue ENG-1"


def test_project_item_ignores_messages():
    assert project_item({"id": "item_4", "type": "agent_message", "text": "hi"}) is None
    assert project_item({"type": "command_execution"}) is None


def test_project_tool_call_shell():
    projection = project_tool_call(
        {
            "type": "tool_call",
            "call_id": "call_1",
            "tool_call": {
                "shellToolCall": {
                    "args": {"command": "ls -la"},
                    "result": {"success": {"stdout": "total 0"}},
                }
            },
        }
    )

    assert projection.tool_use_id == "call_1"
    assert projection.tool_name == "Bash"
    assert projection.result == "total 0"


def test_project_tool_call_failure():
    projection = project_tool_call(
        {
            "call_id": "call_2",
            "tool_call": {
                "readToolCall": {
                    "args": {"path": "/ws/missing.txt"},
                    "result": {"failure": {"message": "No such file"}},
                }
            },
        },
        "/ws",
    )

    assert projection.tool_name == "Read"
    assert projection.tool_input["path"] == "missing.txt"
    assert projection.is_error is True
    assert projection.result == "No such file"


def test_project_unknown_tool_call_variant():
    projection = project_tool_call(
        {"call_id": "call_3", "tool_call": {"fancyToolCall": {"args": {"x": 1}}}}
    )

    assert projection.tool_name == "fancy"
    assert projection.tool_input == {"x": 1}
    assert projection.result == "Tool completed"
