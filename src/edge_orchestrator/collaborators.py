"""Interfaces of the services the orchestrator depends on but does not own.

Issue tracker clients, worktree creation and backend process construction live
outside this package; the orchestrator only talks to them through these
protocols. Every method is async and reports failure by raising.
"""

from typing import TYPE_CHECKING, List, Optional, Protocol

from .models.repository import ActivityContent, IssueRef, ProjectInfo, RepositoryConfig
from .models.session import BackendKind, Workspace

if TYPE_CHECKING:
    from .backends.base import BackendHandle


class IssueTracker(Protocol):
    """Issue tracker API client (Linear, GitHub, ...)."""

    async def fetch_issue_labels(self, issue_id: str) -> List[str]: ...

    async def fetch_issue_description(self, issue_id: str) -> Optional[str]: ...

    async def fetch_issue_project(self, issue_id: str) -> Optional[ProjectInfo]: ...

    async def post_activity(
        self,
        external_session_id: str,
        content: ActivityContent,
        signal: Optional[str] = None,
    ) -> Optional[str]:
        """Post an activity and return its tracker-assigned id, if any."""
        ...

    async def post_selection_prompt(
        self, external_session_id: str, options: List[str]
    ) -> None:
        """Ask the user to choose one of ``options``."""
        ...


class WorkspaceProvisioner(Protocol):
    """Creates the isolated working directory for an issue."""

    async def create_workspace(
        self, issue: IssueRef, repository: RepositoryConfig
    ) -> Workspace: ...


class BackendFactory(Protocol):
    """Builds a running backend handle for one agent run."""

    def __call__(
        self,
        kind: BackendKind,
        repository: Optional[RepositoryConfig],
        workspace: Workspace,
        resume_session_id: Optional[str],
        prompt: str,
    ) -> "BackendHandle": ...
