"""Canonical message protocol shared by every agent backend.

Each backend adapter translates its native stream into these messages, so the
orchestrator, transcript and activity posting only ever see one format.
"""

import uuid
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field
from typing_extensions import Annotated

# Session id used before a backend has announced its own
PENDING_SESSION_ID = "pending"


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str = Field(..., description="Tool invocation id, shared with its result")
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str = ""
    is_error: bool = False


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ToolResultBlock], Field(discriminator="type")
]
AssistantBlock = Annotated[Union[TextBlock, ToolUseBlock], Field(discriminator="type")]


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0


class SystemInitMessage(BaseModel):
    """First message of a run; announces the backend session id."""

    type: Literal["system"] = "system"
    subtype: Literal["init"] = "init"
    session_id: str = PENDING_SESSION_ID
    model: Optional[str] = None
    tools: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    permission_mode: Optional[str] = None


class UserMessage(BaseModel):
    """User input, or a tool result when content holds a tool_result block."""

    type: Literal["user"] = "user"
    content: Union[str, List[ContentBlock]]
    session_id: str = PENDING_SESSION_ID
    parent_tool_use_id: Optional[str] = None

    @property
    def tool_result(self) -> Optional[ToolResultBlock]:
        if isinstance(self.content, list):
            for block in self.content:
                if isinstance(block, ToolResultBlock):
                    return block
        return None


class AssistantMessage(BaseModel):
    type: Literal["assistant"] = "assistant"
    content: List[AssistantBlock] = Field(default_factory=list)
    session_id: str = PENDING_SESSION_ID
    parent_tool_use_id: Optional[str] = None
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    backend_error: Optional[str] = Field(
        None, description="Error class reported alongside the message (e.g. rate_limit)"
    )

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    @property
    def tool_use(self) -> Optional[ToolUseBlock]:
        for block in self.content:
            if isinstance(block, ToolUseBlock):
                return block
        return None


ResultSubtype = Literal["success", "error_during_execution", "error_max_turns"]


class ResultMessage(BaseModel):
    """Terminal (or error) outcome of a run."""

    type: Literal["result"] = "result"
    subtype: ResultSubtype
    session_id: str = PENDING_SESSION_ID
    usage: Usage = Field(default_factory=Usage)
    cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0
    final_text: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    is_fatal: bool = Field(
        True, description="False for errors the backend recovered from"
    )

    @property
    def is_error(self) -> bool:
        return self.subtype != "success"


CanonicalMessage = Annotated[
    Union[SystemInitMessage, UserMessage, AssistantMessage, ResultMessage],
    Field(discriminator="type"),
]


def make_tool_result(
    tool_use_id: str,
    content: str,
    is_error: bool,
    session_id: Optional[str],
    parent_tool_use_id: Optional[str] = None,
) -> UserMessage:
    """Build a tool_result carried as a user-typed message."""
    return UserMessage(
        content=[ToolResultBlock(tool_use_id=tool_use_id, content=content, is_error=is_error)],
        session_id=session_id or PENDING_SESSION_ID,
        parent_tool_use_id=parent_tool_use_id,
    )


def make_error_result(
    reason: str,
    session_id: Optional[str],
    *,
    fatal: bool = True,
    usage: Optional[Usage] = None,
    duration_ms: int = 0,
    num_turns: int = 0,
) -> ResultMessage:
    """Build an error_during_execution result."""
    return ResultMessage(
        subtype="error_during_execution",
        session_id=session_id or PENDING_SESSION_ID,
        usage=usage or Usage(),
        duration_ms=duration_ms,
        num_turns=num_turns,
        errors=[reason],
        is_fatal=fatal,
    )


def describe_error(
    name: Optional[str] = None,
    message: Optional[str] = None,
    status_code: Optional[Any] = None,
) -> str:
    """
    Assemble a human-readable reason from whatever error fields a backend sent.

    Any combination may be missing; the result is never empty.
    """
    reason = message or name or "Unknown error"
    if name and message and name not in message:
        reason = f"{name}: {message}"
    if status_code is not None:
        reason += f" (status: {status_code})"
    return reason


def accumulate_assistant(
    previous: Optional[AssistantMessage], delta: AssistantMessage
) -> AssistantMessage:
    """
    Fold a streamed delta into the assistant turn it belongs to.

    Deltas sharing ``message_id`` with ``previous`` extend its last text block;
    anything else starts a new turn.
    """
    if previous is None or previous.message_id != delta.message_id:
        return delta

    content = list(previous.content)
    for block in delta.content:
        if isinstance(block, TextBlock) and content and isinstance(content[-1], TextBlock):
            content[-1] = TextBlock(text=content[-1].text + block.text)
        else:
            content.append(block)
    return previous.model_copy(update={"content": content, "session_id": delta.session_id})
