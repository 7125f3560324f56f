"""Gemini CLI backend (``gemini --output-format stream-json``)."""

import uuid
from typing import List, Optional

from .base import BackendAdapter
from .subprocess_runner import SubprocessHandle
from .tools import as_dict, get_string, to_int
from ..models.messages import (
    PENDING_SESSION_ID,
    AssistantMessage,
    CanonicalMessage,
    ResultMessage,
    SystemInitMessage,
    TextBlock,
    ToolUseBlock,
    Usage,
    UserMessage,
    describe_error,
    make_error_result,
    make_tool_result,
)
from ..models.session import BackendKind
from ..types import NativeEvent

DEFAULT_MODEL = "gemini-2.5-pro"


class GeminiAdapter(BackendAdapter):
    """
    Maps Gemini stream-json events.

    ``message`` events flagged ``delta: true`` are emitted one per delta and
    share a message id until any other event arrives.
    """

    kind = BackendKind.GEMINI

    def __init__(self, cwd: Optional[str] = None):
        self.cwd = cwd
        self._delta_message_id: Optional[str] = None

    def extract_session_id(self, event: NativeEvent) -> Optional[str]:
        if event.get("type") == "init":
            return get_string(event, "session_id")
        return None

    def translate(
        self,
        event: NativeEvent,
        session_id: Optional[str],
        last_assistant: Optional[AssistantMessage] = None,
    ) -> Optional[CanonicalMessage]:
        sid = session_id or PENDING_SESSION_ID
        event_type = event.get("type")

        is_delta = event_type == "message" and event.get("delta") is True
        if not is_delta:
            self._delta_message_id = None

        if event_type == "init":
            return SystemInitMessage(
                session_id=get_string(event, "session_id") or sid,
                model=get_string(event, "model"),
                cwd=self.cwd,
            )

        if event_type == "message":
            content = event.get("content") or ""
            if event.get("role") == "user":
                return UserMessage(content=content, session_id=sid)
            if not is_delta:
                return AssistantMessage(content=[TextBlock(text=content)], session_id=sid)
            if self._delta_message_id is None:
                self._delta_message_id = str(uuid.uuid4())
            return AssistantMessage(
                content=[TextBlock(text=content)],
                session_id=sid,
                message_id=self._delta_message_id,
            )

        if event_type == "tool_use":
            return AssistantMessage(
                content=[
                    ToolUseBlock(
                        id=get_string(event, "tool_id") or str(uuid.uuid4()),
                        name=get_string(event, "tool_name") or "tool",
                        input=as_dict(event.get("parameters")),
                    )
                ],
                session_id=sid,
            )

        if event_type == "tool_result":
            return self._tool_result(event, sid)

        if event_type == "result":
            return self._result(event, sid, last_assistant)

        if event_type == "error":
            # Gemini keeps running after a standalone error event
            return make_error_result(
                describe_error(
                    name=get_string(event, "severity"), message=get_string(event, "message")
                ),
                sid,
                fatal=False,
            )

        return None

    def _tool_result(self, event: NativeEvent, session_id: str) -> UserMessage:
        error = as_dict(event.get("error"))
        if event.get("status") == "error" and error:
            content = f"Error: {error.get('message') or 'Unknown error'}"
            if error.get("code"):
                content += f" (code: {error['code']})"
            if error.get("type"):
                content += f" [{error['type']}]"
            is_error = True
        elif event.get("output") is not None:
            content, is_error = str(event["output"]), False
        else:
            content, is_error = "Success", False
        return make_tool_result(get_string(event, "tool_id") or "", content, is_error, session_id)

    def _result(
        self,
        event: NativeEvent,
        session_id: str,
        last_assistant: Optional[AssistantMessage],
    ) -> ResultMessage:
        stats = as_dict(event.get("stats"))
        usage = Usage(
            input_tokens=to_int(stats.get("input_tokens")),
            output_tokens=to_int(stats.get("output_tokens")),
        )
        duration_ms = to_int(stats.get("duration_ms"))
        num_turns = to_int(stats.get("tool_calls"))

        if event.get("status") == "success":
            final_text = last_assistant.text if last_assistant and last_assistant.text else None
            return ResultMessage(
                subtype="success",
                session_id=session_id,
                usage=usage,
                duration_ms=duration_ms,
                num_turns=num_turns,
                final_text=final_text or "Session completed successfully",
            )

        error = as_dict(event.get("error"))
        return make_error_result(
            describe_error(
                name=get_string(error, "type"),
                message=get_string(error, "message"),
                status_code=error.get("code"),
            ),
            session_id,
            usage=usage,
            duration_ms=duration_ms,
            num_turns=num_turns,
        )


class GeminiHandle(SubprocessHandle):
    kind = BackendKind.GEMINI

    def extract_session_id(self, event: NativeEvent) -> Optional[str]:
        return get_string(event, "session_id") if event.get("type") == "init" else None

    def build_command(self) -> List[str]:
        args = [self.executable, "--output-format", "stream-json", "--model", self.model or DEFAULT_MODEL]
        if self.resume_session_id:
            args.extend(["-r", self.resume_session_id])
        args.extend(["--yolo", "-p", self.prompt])
        return args
