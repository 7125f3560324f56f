"""Session state models."""

import time
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class SessionStatus(str, Enum):
    """Agent session status."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETE, SessionStatus.ERROR)


class BackendKind(str, Enum):
    """Interchangeable agent backends."""

    CLAUDE = "claude"
    GEMINI = "gemini"
    CODEX = "codex"
    CURSOR = "cursor"
    OPENCODE = "opencode"


class BackendSession(BaseModel):
    """Session id assigned by the backend that produced the run."""

    model_config = ConfigDict(frozen=True)

    backend: BackendKind = Field(..., description="Backend that owns the session id")
    session_id: str = Field(..., min_length=1, description="Backend-native session id")


class IssueContext(BaseModel):
    """Issue a session is attached to. Standalone sessions have none."""

    tracker_id: str = Field(..., description="Issue tracker identifier (e.g. 'linear')")
    issue_id: str = Field(..., description="Tracker-assigned issue id")
    issue_identifier: str = Field(..., description="Human-readable id (e.g. 'ENG-123')")


class Workspace(BaseModel):
    """Working directory an agent run operates in."""

    path: str
    is_git_worktree: bool = False
    history_path: Optional[str] = None


class ValidationAttempt(BaseModel):
    iteration: int
    passed: bool
    reason: str = ""
    timestamp: int = Field(default_factory=now_ms)


class ValidationLoopState(BaseModel):
    """Nested validate/fix loop within a procedure step."""

    iteration: int = 1
    in_fixer_mode: bool = False
    attempts: List[ValidationAttempt] = Field(default_factory=list)


class StepRecord(BaseModel):
    step: str
    completed_at: int = Field(default_factory=now_ms)
    backend_session: Optional[BackendSession] = None


class ProcedureState(BaseModel):
    """Progress through a multi-step procedure."""

    procedure_name: str
    current_step_index: int = 0
    step_history: List[StepRecord] = Field(default_factory=list)
    validation_loop: Optional[ValidationLoopState] = None


class SessionMetadata(BaseModel):
    model: Optional[str] = None
    tools: List[str] = Field(default_factory=list)
    permission_mode: Optional[str] = None
    total_cost_usd: float = 0.0
    usage: Optional[Dict[str, Any]] = None
    procedure: Optional[ProcedureState] = None


class AgentSession(BaseModel):
    """One active or historical unit of agent work."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(..., description="Internal session identifier")
    external_session_id: Optional[str] = Field(
        None, description="Session id assigned by the issue tracker"
    )
    status: SessionStatus = SessionStatus.ACTIVE
    issue_context: Optional[IssueContext] = None
    workspace: Workspace
    repository_id: Optional[str] = None
    backend_session: Optional[BackendSession] = None
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    # Live process/connection handle; never serialized
    runner: Optional[Any] = Field(default=None, exclude=True, repr=False)

    @property
    def issue_id(self) -> Optional[str]:
        return self.issue_context.issue_id if self.issue_context else None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


EntryType = Literal["user", "assistant", "system", "result"]


class EntryMetadata(BaseModel):
    tool_use_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Optional[Any] = None
    parent_tool_use_id: Optional[str] = None
    tool_result_error: Optional[bool] = None
    is_error: Optional[bool] = None
    duration_ms: Optional[int] = None
    backend_error: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)


class SessionEntry(BaseModel):
    """Append-only transcript item belonging to a session."""

    model_config = ConfigDict(frozen=True)

    type: EntryType
    content: str
    metadata: Optional[EntryMetadata] = None
    backend_session_id: Optional[str] = None
    external_activity_id: Optional[str] = None
