"""Codex CLI backend (``codex exec --json``)."""

from typing import Any, List, Mapping, Optional, Set

from .base import BackendAdapter
from .subprocess_runner import SubprocessHandle
from .tools import ToolProjection, as_dict, get_string, project_item, to_int
from ..models.messages import (
    PENDING_SESSION_ID,
    AssistantMessage,
    CanonicalMessage,
    ResultMessage,
    SystemInitMessage,
    TextBlock,
    ToolUseBlock,
    Usage,
    make_error_result,
    make_tool_result,
)
from ..models.session import BackendKind
from ..types import NativeEvent


def parse_usage(usage: Optional[Mapping[str, Any]]) -> Usage:
    """Codex-style usage: ``input_tokens``, ``output_tokens``, ``cached_input_tokens``."""
    if not usage:
        return Usage()
    return Usage(
        input_tokens=to_int(usage.get("input_tokens")),
        output_tokens=to_int(usage.get("output_tokens")),
        cache_read_input_tokens=to_int(usage.get("cached_input_tokens")),
    )


def tool_use_message(projection: ToolProjection, session_id: str) -> AssistantMessage:
    return AssistantMessage(
        content=[
            ToolUseBlock(
                id=projection.tool_use_id,
                name=projection.tool_name,
                input=projection.tool_input,
            )
        ],
        session_id=session_id,
    )


class CodexAdapter(BackendAdapter):
    """
    Maps Codex JSON events.

    Thread items become tool_use on ``item.started`` and tool_use + tool_result
    on ``item.completed``; a completion whose start was never seen yields both
    messages from ``translate_many``.
    """

    kind = BackendKind.CODEX

    def __init__(self, cwd: Optional[str] = None, model: Optional[str] = None):
        self.cwd = cwd
        self.model = model
        self._announced: Set[str] = set()
        self._last_text: Optional[str] = None
        self._errors: List[str] = []

    def extract_session_id(self, event: NativeEvent) -> Optional[str]:
        if event.get("type") == "thread.started":
            return get_string(event, "thread_id")
        return None

    def translate(
        self,
        event: NativeEvent,
        session_id: Optional[str],
        last_assistant: Optional[AssistantMessage] = None,
    ) -> Optional[CanonicalMessage]:
        """Single-message view of ``translate_many``: the last message produced."""
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

        if event_type == "thread.started":
            return [
                SystemInitMessage(
                    session_id=get_string(event, "thread_id") or sid,
                    model=self.model,
                    cwd=self.cwd,
                )
            ]

        if event_type in ("item.started", "item.completed"):
            item = as_dict(event.get("item"))
            if item.get("type") == "agent_message":
                if event_type == "item.started":
                    return []
                text = (get_string(item, "text") or "").strip()
                if not text:
                    return []
                self._last_text = text
                return [AssistantMessage(content=[TextBlock(text=text)], session_id=sid)]
            return self._tool_messages(item, sid, completed=event_type == "item.completed")

        if event_type == "turn.completed":
            final_text = self._last_text or (last_assistant.text if last_assistant else None)
            return [
                ResultMessage(
                    subtype="success",
                    session_id=sid,
                    usage=parse_usage(event.get("usage")),
                    num_turns=1,
                    final_text=final_text or "Codex session completed successfully",
                )
            ]

        if event_type == "turn.failed":
            error = as_dict(event.get("error"))
            reason = get_string(error, "message") or (self._errors[-1] if self._errors else None)
            return [make_error_result(reason or "Codex execution failed", sid)]

        if event_type == "error":
            reason = get_string(event, "message") or "Codex reported an error"
            self._errors.append(reason)
            return [make_error_result(reason, sid, fatal=False)]

        return []

    def _tool_messages(
        self, item: NativeEvent, session_id: str, completed: bool
    ) -> List[CanonicalMessage]:
        projection = project_item(item, self.cwd)
        if projection is None:
            return []

        messages: List[CanonicalMessage] = []
        if projection.tool_use_id not in self._announced:
            self._announced.add(projection.tool_use_id)
            messages.append(tool_use_message(projection, session_id))

        if completed:
            self._announced.discard(projection.tool_use_id)
            messages.append(
                make_tool_result(
                    projection.tool_use_id, projection.result, projection.is_error, session_id
                )
            )
        return messages


class CodexHandle(SubprocessHandle):
    kind = BackendKind.CODEX

    def extract_session_id(self, event: NativeEvent) -> Optional[str]:
        return get_string(event, "thread_id") if event.get("type") == "thread.started" else None

    def is_terminal_event(self, event: NativeEvent) -> bool:
        return event.get("type") in ("turn.completed", "turn.failed")

    def build_command(self) -> List[str]:
        args = [self.executable, "exec", "--json", "--skip-git-repo-check", "-C", self.workspace_path]
        if self.model:
            args.extend(["--model", self.model])
        if self.resume_session_id:
            args.extend(["resume", self.resume_session_id])
        args.append(self.prompt)
        return args
