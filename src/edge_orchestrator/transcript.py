"""Canonical message -> transcript entry -> tracker activity conversions."""

from typing import Any, Dict, List, Optional

from .backends.tools import safe_stringify
from .models.messages import (
    AssistantMessage,
    CanonicalMessage,
    ResultMessage,
    SystemInitMessage,
    ToolUseBlock,
    UserMessage,
)
from .models.repository import ActivityContent
from .models.session import EntryMetadata, SessionEntry

SUMMARY_LENGTH = 100


def summarize_tool_input(tool_name: str, input_dict: Dict[str, Any]) -> str:
    """
    Create human-readable summary of tool input.

    Args:
        tool_name: Name of the tool being executed
        input_dict: Tool input parameters

    Returns:
        Abbreviated summary string
    """
    path = input_dict.get("file_path") or input_dict.get("path") or "file"
    if tool_name == "Read":
        return f"Reading {path}"
    elif tool_name == "Write":
        return f"Writing {path}"
    elif tool_name == "Edit":
        return f"Editing {path}"
    elif tool_name == "Bash":
        cmd = str(input_dict.get("command", ""))
        return f"Running: {cmd[:50]}{'...' if len(cmd) > 50 else ''}"
    elif tool_name == "Grep":
        return f"Searching for \"{input_dict.get('pattern', '')}\""
    elif tool_name == "Glob":
        return f"Finding files: {input_dict.get('pattern') or input_dict.get('glob') or '*'}"
    elif tool_name in ("WebFetch", "WebSearch"):
        return str(input_dict.get("url") or input_dict.get("query") or tool_name)
    else:
        return f"{tool_name} operation"


def summarize_tool_output(content: Optional[str]) -> Optional[str]:
    if not content:
        return None
    if len(content) > SUMMARY_LENGTH:
        return content[:SUMMARY_LENGTH] + "..."
    return content


def message_to_entries(
    message: CanonicalMessage, backend_session_id: Optional[str] = None
) -> List[SessionEntry]:
    """
    Transcript entries for a canonical message.

    An assistant message yields its text first, then one entry per tool
    call, so parallel tool calls each keep their own id and input. Assistant
    messages carrying neither text nor a tool call produce no entries.
    """
    if isinstance(message, SystemInitMessage):
        return [
            SessionEntry(
                type="system",
                content=f"Session initialized (model: {message.model or 'default'})",
                backend_session_id=backend_session_id,
            )
        ]

    if isinstance(message, UserMessage):
        tool_result = message.tool_result
        if tool_result is not None:
            return [
                SessionEntry(
                    type="user",
                    content=tool_result.content,
                    metadata=EntryMetadata(
                        tool_use_id=tool_result.tool_use_id,
                        tool_result_error=tool_result.is_error,
                        parent_tool_use_id=message.parent_tool_use_id,
                    ),
                    backend_session_id=backend_session_id,
                )
            ]
        content = message.content if isinstance(message.content, str) else safe_stringify(
            [block.model_dump() for block in message.content]
        )
        return [SessionEntry(type="user", content=content, backend_session_id=backend_session_id)]

    if isinstance(message, AssistantMessage):
        return _assistant_entries(message, backend_session_id)

    if isinstance(message, ResultMessage):
        if message.is_error:
            content = "; ".join(message.errors) or message.subtype
        else:
            content = message.final_text or ""
        return [
            SessionEntry(
                type="result",
                content=content,
                metadata=EntryMetadata(is_error=message.is_error, duration_ms=message.duration_ms),
                backend_session_id=backend_session_id,
            )
        ]

    return []


def _assistant_entries(
    message: AssistantMessage, backend_session_id: Optional[str]
) -> List[SessionEntry]:
    tool_uses = [block for block in message.content if isinstance(block, ToolUseBlock)]
    entries: List[SessionEntry] = []

    if message.text or (message.backend_error and not tool_uses):
        metadata = None
        if message.parent_tool_use_id or message.backend_error:
            metadata = EntryMetadata(
                parent_tool_use_id=message.parent_tool_use_id,
                backend_error=message.backend_error,
            )
        entries.append(
            SessionEntry(
                type="assistant",
                content=message.text,
                metadata=metadata,
                backend_session_id=backend_session_id,
            )
        )

    for tool_use in tool_uses:
        entries.append(
            SessionEntry(
                type="assistant",
                content=safe_stringify(tool_use.input),
                metadata=EntryMetadata(
                    tool_use_id=tool_use.id,
                    tool_name=tool_use.name,
                    tool_input=tool_use.input,
                    parent_tool_use_id=message.parent_tool_use_id,
                    backend_error=message.backend_error,
                ),
                backend_session_id=backend_session_id,
            )
        )
    return entries


def entry_to_activity(
    entry: SessionEntry, tool_use: Optional[SessionEntry] = None
) -> Optional[ActivityContent]:
    """
    Tracker activity for a transcript entry.

    Tool results are posted as the completed action of their tool_use entry
    (``tool_use``), so each tool call shows up once. Plain user prompts and
    system entries are not posted.
    """
    metadata = entry.metadata or EntryMetadata()

    if entry.type == "assistant":
        if metadata.tool_name:
            return None
        if metadata.backend_error and not entry.content:
            return ActivityContent(type="error", body=metadata.backend_error)
        return ActivityContent(type="thought", body=entry.content)

    if entry.type == "user" and metadata.tool_use_id:
        tool_meta = tool_use.metadata if tool_use and tool_use.metadata else EntryMetadata()
        tool_name = tool_meta.tool_name or "Tool"
        tool_input = tool_meta.tool_input if isinstance(tool_meta.tool_input, dict) else {}
        return ActivityContent(
            type="action",
            action=f"{tool_name} (error)" if metadata.tool_result_error else tool_name,
            parameter=summarize_tool_input(tool_name, tool_input),
            result=summarize_tool_output(entry.content),
        )

    if entry.type == "result":
        if metadata.is_error:
            return ActivityContent(type="error", body=entry.content)
        return ActivityContent(type="response", body=entry.content)

    return None
