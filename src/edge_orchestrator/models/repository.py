"""Repository configuration and routing models."""

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .session import BackendKind


class RepositoryConfig(BaseModel):
    """Static configuration for one repository the orchestrator can work in."""

    id: str = Field(..., description="Unique repository id")
    name: str = Field(..., description="Display name")
    repository_path: str = Field(..., description="Path to the main checkout")
    workspace_base_dir: str = Field(..., description="Directory holding per-issue worktrees")
    base_branch: str = "main"
    workspace_id: str = Field(..., description="Issue tracker organization/workspace id")
    github_url: Optional[str] = None
    is_active: bool = True

    # Routing hints
    routing_labels: List[str] = Field(default_factory=list)
    team_keys: List[str] = Field(default_factory=list)
    project_keys: List[str] = Field(default_factory=list)

    # Backend defaults for sessions in this repository
    backend: Optional[BackendKind] = None
    model: Optional[str] = None
    allowed_tools: Optional[List[str]] = None

    @property
    def has_routing_config(self) -> bool:
        return bool(self.routing_labels or self.team_keys or self.project_keys)

    @property
    def selection_value(self) -> str:
        """Value offered to the user when asking which repository to use."""
        return self.github_url or self.name


class IssueRef(BaseModel):
    """Issue data carried by an inbound event."""

    id: str
    identifier: str
    title: str = ""
    team_key: Optional[str] = None
    branch_name: Optional[str] = None


class ProjectInfo(BaseModel):
    name: str


class InboundEvent(BaseModel):
    """Work-item event produced by the upstream webhook/CLI surface."""

    kind: Literal["session_created", "prompted", "unassigned"]
    workspace_id: Optional[str] = None
    tracker_id: str = "linear"
    external_session_id: Optional[str] = None
    issue: Optional[IssueRef] = None
    prompt: str = ""
    parent_session_id: Optional[str] = Field(
        None, description="Internal id of the delegating session, for sub-agent runs"
    )


class RoutingRequest(BaseModel):
    workspace_id: Optional[str] = None
    issue_id: Optional[str] = None
    team_key: Optional[str] = None
    issue_identifier: Optional[str] = None

    @classmethod
    def from_event(cls, event: InboundEvent) -> "RoutingRequest":
        issue = event.issue
        return cls(
            workspace_id=event.workspace_id,
            issue_id=issue.id if issue else None,
            team_key=issue.team_key if issue else None,
            issue_identifier=issue.identifier if issue else None,
        )


RoutingMethod = Literal[
    "cached",
    "existing-session",
    "description-tag",
    "label-based",
    "project-based",
    "team-based",
    "team-prefix",
    "catch-all",
    "user-selected",
    "workspace-fallback",
]


class RoutingSelected(BaseModel):
    type: Literal["selected"] = "selected"
    repository: RepositoryConfig
    routing_method: RoutingMethod


class RoutingNeedsSelection(BaseModel):
    type: Literal["needs_selection"] = "needs_selection"
    candidates: List[RepositoryConfig]


class RoutingNone(BaseModel):
    type: Literal["none"] = "none"


RoutingResult = Union[RoutingSelected, RoutingNeedsSelection, RoutingNone]


class PendingSelection(BaseModel):
    """Ambiguous route awaiting the user's choice."""

    issue_id: str
    candidates: List[RepositoryConfig]


class ActivityContent(BaseModel):
    """Activity posted to the issue tracker on behalf of a session."""

    type: Literal["thought", "action", "response", "error", "elicitation"]
    body: str = ""
    action: Optional[str] = None
    parameter: Optional[str] = None
    result: Optional[str] = None
