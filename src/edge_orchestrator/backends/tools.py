"""Tool-call projection helpers shared by the subprocess backend adapters.

Codex and Cursor describe tool activity as "items" or "tool calls" rather than
tool_use/tool_result pairs. These helpers project them onto a common shape
with Claude-style tool names so transcripts read the same for every backend.
"""

import json
import os
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..types import NativeEvent


class ToolProjection(BaseModel):
    """One tool invocation and (once finished) its result."""

    tool_use_id: str
    tool_name: str
    tool_input: Dict[str, Any] = Field(default_factory=dict)
    result: str = "Tool completed"
    is_error: bool = False


_GREP = re.compile(r"\brg\b|\bgrep\b")
_GLOB = re.compile(r"\bglob\.glob\b|\bfind\b.+\s-name\s")
_CAT = re.compile(r"\bcat\b")
_HEREDOC_WRITE = re.compile(r"<<\s*['\"]?eof['\"]?\s*>", re.IGNORECASE)
_ECHO_WRITE = re.compile(r"\becho\b.+>")


def infer_command_tool_name(command: str) -> str:
    """Name a shell command after the dedicated tool it stands in for."""
    normalized = command.lower()
    if _GREP.search(normalized):
        return "Grep"
    if _GLOB.search(normalized):
        return "Glob"
    if _CAT.search(normalized) and ">" not in normalized:
        return "Read"
    if _HEREDOC_WRITE.search(command) or _ECHO_WRITE.search(normalized):
        return "Write"
    return "Bash"


def normalize_file_path(path: str, working_directory: Optional[str] = None) -> str:
    """Make ``path`` relative to the workspace when it lies inside it."""
    if not path or not working_directory or not path.startswith(working_directory):
        return path
    relative = os.path.relpath(path, working_directory)
    return path if relative in ("", ".") else relative


def safe_stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, indent=2, default=str)
    except (TypeError, ValueError):
        return str(value)


def get_string(obj: Dict[str, Any], *keys: str) -> Optional[str]:
    """First non-blank string value among ``keys``."""
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def to_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def summarize_file_changes(item: NativeEvent, working_directory: Optional[str] = None) -> str:
    changes = [c for c in item.get("changes") or [] if isinstance(c, dict)]
    if not changes:
        return "Patch failed" if item.get("status") == "failed" else "No file changes"
    return "\n".join(
        f"{change.get('kind') or 'update'} {normalize_file_path(change.get('path') or '', working_directory)}"
        for change in changes
    )


def summarize_todo_list(todos: Any) -> str:
    items: List[Any] = todos if isinstance(todos, list) else []
    if not items:
        return "No todos"

    lines = []
    for todo in items:
        if not isinstance(todo, dict):
            lines.append("- [ ] task")
            continue
        text = get_string(todo, "content", "text", "description") or "task"
        status = (todo.get("status") or "").lower()
        done = todo.get("completed") is True or status in ("completed", "todo_status_completed")
        marker = "[x]" if done else "[ ]"
        suffix = " (in progress)" if status in ("in_progress", "todo_status_in_progress") else ""
        lines.append(f"- {marker} {text}{suffix}")
    return "\n".join(lines)


def _mcp_result(item: NativeEvent) -> str:
    error = as_dict(item.get("error"))
    if get_string(error, "message"):
        return error["message"]

    result = item.get("result")
    if isinstance(result, str) and result.strip():
        return result
    result = as_dict(result)
    texts = [
        block["text"]
        for block in result.get("content") or []
        if isinstance(block, dict) and isinstance(block.get("text"), str) and block["text"].strip()
    ]
    if texts:
        return "\n".join(texts)
    if result.get("structured_content") is not None:
        return safe_stringify(result["structured_content"])
    return "MCP tool call failed" if item.get("status") == "failed" else "MCP tool call completed"


def project_item(
    item: NativeEvent, working_directory: Optional[str] = None
) -> Optional[ToolProjection]:
    """
    Project a thread item (``item.started`` / ``item.completed`` payload).

    Returns None for item kinds that are not tool activity, such as agent
    messages and reasoning.
    """
    item_id = get_string(item, "id", "tool_id", "item_id")
    if not item_id:
        return None

    item_type = item.get("type")
    failed = item.get("status") == "failed"

    if item_type == "command_execution":
        command = get_string(item, "command") or ""
        exit_code = item.get("exit_code")
        is_error = failed or (isinstance(exit_code, int) and exit_code != 0)
        output = (get_string(item, "aggregated_output", "output") or "").strip()
        if not output:
            output = (
                f"Command failed (exit code {exit_code if exit_code is not None else 'unknown'})"
                if is_error
                else "Command completed with no output"
            )
        return ToolProjection(
            tool_use_id=item_id,
            tool_name=infer_command_tool_name(command),
            tool_input={"command": command},
            result=output,
            is_error=is_error,
        )

    if item_type == "file_change":
        changes = [c for c in item.get("changes") or [] if isinstance(c, dict)]
        tool_input: Dict[str, Any] = {
            "changes": [
                {"kind": c.get("kind"), "path": normalize_file_path(c.get("path") or "", working_directory)}
                for c in changes
            ]
        }
        if changes and changes[0].get("path"):
            tool_input["file_path"] = normalize_file_path(changes[0]["path"], working_directory)
        return ToolProjection(
            tool_use_id=item_id,
            tool_name="Edit",
            tool_input=tool_input,
            result=summarize_file_changes(item, working_directory),
            is_error=failed,
        )

    if item_type == "web_search":
        query = get_string(item, "query") or "web search"
        action = as_dict(item.get("action"))
        if action.get("type") == "open_page":
            url = get_string(action, "url") or get_string(item, "url") or query
            return ToolProjection(
                tool_use_id=item_id,
                tool_name="WebFetch",
                tool_input={"url": url},
                result=safe_stringify(action),
                is_error=failed,
            )
        return ToolProjection(
            tool_use_id=item_id,
            tool_name="WebSearch",
            tool_input={"query": query},
            result=safe_stringify(action) if action else f"Search completed for query: {query}",
            is_error=failed,
        )

    if item_type == "mcp_tool_call":
        server = get_string(item, "server") or "mcp"
        tool = get_string(item, "tool") or "tool"
        arguments = item.get("arguments")
        return ToolProjection(
            tool_use_id=item_id,
            tool_name=f"mcp__{server}__{tool}",
            tool_input=arguments if isinstance(arguments, dict) else {"arguments": arguments},
            result=_mcp_result(item),
            is_error=failed or bool(item.get("error")),
        )

    if item_type == "todo_list":
        todos = item.get("items") or []
        return ToolProjection(
            tool_use_id=item_id,
            tool_name="TodoWrite",
            tool_input={"todos": todos},
            result=summarize_todo_list(todos),
            is_error=failed,
        )

    return None


def _tool_call_result(payload: Dict[str, Any]) -> ToolProjection:
    """Result half of a tool call payload; only the text and error flag are set."""
    result = as_dict(payload.get("result"))
    if not result:
        return ToolProjection(tool_use_id="", tool_name="")

    success = result.get("success")
    if isinstance(success, dict):
        text = get_string(success, "interleavedOutput", "stdout", "markdown", "text")
        return ToolProjection(tool_use_id="", tool_name="", result=text or safe_stringify(success))

    failure = result.get("failure")
    if isinstance(failure, dict):
        text = get_string(failure, "message", "stderr")
        return ToolProjection(
            tool_use_id="", tool_name="", result=text or safe_stringify(failure), is_error=True
        )

    return ToolProjection(tool_use_id="", tool_name="", result=safe_stringify(result))


def project_tool_call(
    event: NativeEvent, working_directory: Optional[str] = None
) -> Optional[ToolProjection]:
    """
    Project a ``tool_call`` event. The payload is keyed by its variant, e.g.
    ``{"tool_call": {"shellToolCall": {"args": {...}, "result": {...}}}}``.
    """
    call_id = get_string(event, "call_id")
    tool_call = as_dict(event.get("tool_call"))
    if not call_id or not tool_call:
        return None

    variant = next(iter(tool_call))
    payload = as_dict(tool_call[variant])
    if not payload:
        return None
    args = as_dict(payload.get("args"))

    def path_arg(key: str = "path") -> str:
        return normalize_file_path(get_string(args, key) or "", working_directory)

    result_text: Optional[str] = None
    if variant == "shellToolCall":
        command = get_string(args, "command") or ""
        name, tool_input = infer_command_tool_name(command), {"command": command, "description": command}
    elif variant == "readToolCall":
        name, tool_input = "Read", {"path": path_arg(), "limit": args.get("limit")}
    elif variant == "grepToolCall":
        name, tool_input = "Grep", {"pattern": get_string(args, "pattern") or "", "path": path_arg()}
    elif variant == "globToolCall":
        name, tool_input = "Glob", {
            "glob": get_string(args, "globPattern") or "",
            "path": path_arg("targetDirectory"),
        }
    elif variant == "editToolCall":
        name, tool_input = "Edit", {"path": path_arg()}
    elif variant == "deleteToolCall":
        name, tool_input = "Edit", {"description": f"delete {path_arg()}"}
    elif variant == "semSearchToolCall":
        name, tool_input = "ToolSearch", {"query": get_string(args, "query") or ""}
    elif variant == "readLintsToolCall":
        name, tool_input = "Read", {"paths": args.get("paths")}
    elif variant == "mcpToolCall":
        provider = get_string(args, "providerIdentifier") or "mcp"
        tool = get_string(args, "toolName", "name") or "tool"
        name, tool_input = f"mcp__{provider}__{tool}", as_dict(args.get("args"))
    elif variant == "listMcpResourcesToolCall":
        name, tool_input = "mcp__list_resources", {}
    elif variant == "webFetchToolCall":
        name, tool_input = "WebFetch", {"url": get_string(args, "url") or ""}
    elif variant == "updateTodosToolCall":
        name, tool_input = "TodoWrite", {"todos": args.get("todos")}
        result_text = summarize_todo_list(args.get("todos"))
    else:
        name, tool_input = re.sub(r"ToolCall$", "", variant), args

    extracted = _tool_call_result(payload)
    if result_text is None or extracted.is_error:
        result_text = extracted.result

    return ToolProjection(
        tool_use_id=call_id,
        tool_name=name,
        tool_input=tool_input,
        result=result_text,
        is_error=extracted.is_error,
    )
