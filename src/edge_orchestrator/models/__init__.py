"""Data models for Edge Orchestrator."""

from .messages import (
    PENDING_SESSION_ID,
    AssistantMessage,
    CanonicalMessage,
    ResultMessage,
    SystemInitMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
    UserMessage,
)
from .repository import (
    ActivityContent,
    InboundEvent,
    IssueRef,
    PendingSelection,
    ProjectInfo,
    RepositoryConfig,
    RoutingNeedsSelection,
    RoutingNone,
    RoutingRequest,
    RoutingResult,
    RoutingSelected,
)
from .session import (
    AgentSession,
    BackendKind,
    BackendSession,
    EntryMetadata,
    IssueContext,
    SessionEntry,
    SessionMetadata,
    SessionStatus,
    Workspace,
)

__all__ = [
    "PENDING_SESSION_ID",
    "AssistantMessage",
    "CanonicalMessage",
    "ResultMessage",
    "SystemInitMessage",
    "TextBlock",
    "ToolResultBlock",
    "ToolUseBlock",
    "Usage",
    "UserMessage",
    "ActivityContent",
    "InboundEvent",
    "IssueRef",
    "PendingSelection",
    "ProjectInfo",
    "RepositoryConfig",
    "RoutingNeedsSelection",
    "RoutingNone",
    "RoutingRequest",
    "RoutingResult",
    "RoutingSelected",
    "AgentSession",
    "BackendKind",
    "BackendSession",
    "EntryMetadata",
    "IssueContext",
    "SessionEntry",
    "SessionMetadata",
    "SessionStatus",
    "Workspace",
]
