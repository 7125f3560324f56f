"""Cursor agent CLI backend (``cursor-agent --print --output-format stream-json``)."""

from typing import Any, List, Optional, Set

from .base import BackendAdapter
from .codex import parse_usage, tool_use_message
from .subprocess_runner import SubprocessHandle
from .tools import ToolProjection, as_dict, get_string, project_item, project_tool_call, to_int
from ..models.messages import (
    PENDING_SESSION_ID,
    AssistantMessage,
    CanonicalMessage,
    ResultMessage,
    SystemInitMessage,
    TextBlock,
    UserMessage,
    make_error_result,
    make_tool_result,
)
from ..models.session import BackendKind
from ..types import NativeEvent


def extract_text(content: Any) -> str:
    """Plain text of a message ``content`` that is either a string or a block list."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "".join(parts)
    return ""


class CursorAdapter(BackendAdapter):
    kind = BackendKind.CURSOR

    def __init__(self, cwd: Optional[str] = None, model: Optional[str] = None):
        self.cwd = cwd
        self.model = model
        self._announced: Set[str] = set()
        self._last_text: Optional[str] = None

    def extract_session_id(self, event: NativeEvent) -> Optional[str]:
        return get_string(event, "session_id")

    def translate(
        self,
        event: NativeEvent,
        session_id: Optional[str],
        last_assistant: Optional[AssistantMessage] = None,
    ) -> Optional[CanonicalMessage]:
        messages = self.translate_many(event, session_id, last_assistant)
        return messages[-1] if messages else None

    def translate_many(
        self,
        event: NativeEvent,
        session_id: Optional[str],
        last_assistant: Optional[AssistantMessage] = None,
    ) -> List[CanonicalMessage]:
        sid = session_id or PENDING_SESSION_ID
        event_type = event.get("type")

        if event_type == "init" or (event_type == "system" and event.get("subtype") == "init"):
            return [
                SystemInitMessage(
                    session_id=get_string(event, "session_id") or sid,
                    model=get_string(event, "model") or self.model,
                    cwd=get_string(event, "cwd") or self.cwd,
                    permission_mode=get_string(event, "permissionMode"),
                )
            ]

        if event_type in ("message", "assistant", "user"):
            return self._message(event, sid)

        if event_type in ("item.started", "item.completed"):
            projection = project_item(as_dict(event.get("item")), self.cwd)
            return self._tool_messages(projection, sid, completed=event_type == "item.completed")

        if event_type == "tool_call":
            subtype = get_string(event, "subtype") or "started"
            projection = project_tool_call(event, self.cwd)
            if projection is not None and subtype == "failed":
                projection = projection.model_copy(update={"is_error": True})
            return self._tool_messages(
                projection, sid, completed=subtype in ("completed", "failed")
            )

        if event_type in ("result", "turn.completed"):
            return [self._result(event, sid, last_assistant)]

        if event_type == "error":
            return [make_error_result(get_string(event, "message") or "Cursor execution failed", sid)]

        return []

    def _message(self, event: NativeEvent, session_id: str) -> List[CanonicalMessage]:
        if event.get("type") == "message":
            role = get_string(event, "role")
            text = extract_text(event.get("content"))
        else:
            message = as_dict(event.get("message"))
            role = get_string(message, "role") or event.get("type")
            text = extract_text(message.get("content"))

        if not text:
            return []
        if role == "user":
            return [UserMessage(content=text, session_id=session_id)]
        self._last_text = text
        return [AssistantMessage(content=[TextBlock(text=text)], session_id=session_id)]

    def _tool_messages(
        self, projection: Optional[ToolProjection], session_id: str, completed: bool
    ) -> List[CanonicalMessage]:
        if projection is None:
            return []

        messages: List[CanonicalMessage] = []
        if projection.tool_use_id not in self._announced:
            self._announced.add(projection.tool_use_id)
            messages.append(tool_use_message(projection, session_id))
        if completed:
            messages.append(
                make_tool_result(
                    projection.tool_use_id, projection.result, projection.is_error, session_id
                )
            )
        return messages

    def _result(
        self,
        event: NativeEvent,
        session_id: str,
        last_assistant: Optional[AssistantMessage],
    ) -> ResultMessage:
        usage = parse_usage(as_dict(event.get("usage")))
        duration_ms = to_int(event.get("duration_ms"))

        stop_reason = get_string(event, "stop_reason")
        if stop_reason and "max" in stop_reason.lower():
            return ResultMessage(
                subtype="error_max_turns",
                session_id=session_id,
                usage=usage,
                duration_ms=duration_ms,
                num_turns=1,
                errors=[f"Cursor turn limit reached: {stop_reason}"],
            )

        if event.get("is_error") is True:
            reason = get_string(event, "result") or "Cursor execution failed"
            return make_error_result(reason, session_id, usage=usage, duration_ms=duration_ms, num_turns=1)

        final_text = (
            get_string(event, "result")
            or self._last_text
            or (last_assistant.text if last_assistant else None)
        )
        return ResultMessage(
            subtype="success",
            session_id=session_id,
            usage=usage,
            duration_ms=duration_ms,
            num_turns=1,
            final_text=final_text or "Cursor session completed successfully",
        )


class CursorHandle(SubprocessHandle):
    kind = BackendKind.CURSOR

    def is_terminal_event(self, event: NativeEvent) -> bool:
        return event.get("type") in ("result", "turn.completed")

    def build_command(self) -> List[str]:
        args = [self.executable, "--print", "--output-format", "stream-json", "--trust"]
        if self.model:
            args.extend(["--model", self.model])
        if self.resume_session_id:
            args.extend(["--resume", self.resume_session_id])
        args.extend(["--workspace", self.workspace_path, self.prompt])
        return args
