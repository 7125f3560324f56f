"""Shared fixtures: repository configs and in-memory collaborator fakes."""

import asyncio
from typing import Any, AsyncIterator, List, Optional
from unittest.mock import AsyncMock

import pytest

from edge_orchestrator.backends.base import BackendHandle
from edge_orchestrator.models.repository import IssueRef, RepositoryConfig
from edge_orchestrator.models.session import BackendKind, Workspace


def make_repo(repo_id: str, **overrides: Any) -> RepositoryConfig:
    data = {
        "id": repo_id,
        "name": repo_id,
        "repository_path": f"/repos/{repo_id}",
        "workspace_base_dir": f"/worktrees/{repo_id}",
        "workspace_id": "ws-1",
    }
    data.update(overrides)
    return RepositoryConfig(**data)


class ScriptedHandle(BackendHandle):
    """
    Backend handle replaying a fixed list of native events.

    With ``hold=True`` the stream blocks after the scripted events until
    ``release`` is set or the handle is stopped.
    """

    def __init__(
        self,
        events: List[Any],
        kind: BackendKind = BackendKind.GEMINI,
        resume_session_id: Optional[str] = None,
        hold: bool = False,
        fail_with: Optional[BaseException] = None,
        streaming: bool = False,
    ):
        super().__init__("/tmp/ws", resume_session_id)
        self.kind = kind
        self.supports_streaming_input = streaming
        self.scripted = list(events)
        self.hold = hold
        self.fail_with = fail_with
        self.release = asyncio.Event()
        self.sent: List[str] = []
        self.stopped = False

    async def events(self) -> AsyncIterator[Any]:
        try:
            for event in self.scripted:
                await asyncio.sleep(0)
                yield event
            if self.fail_with is not None:
                raise self.fail_with
            if self.hold:
                await self.release.wait()
        finally:
            self.mark_ended()

    async def send(self, prompt: str) -> None:
        if not self.supports_streaming_input:
            await super().send(prompt)
        self.sent.append(prompt)

    async def stop(self) -> None:
        self.stopped = True
        self.release.set()
        self.mark_ended()


class HandleFactory:
    """Backend factory returning queued ScriptedHandles and recording calls."""

    def __init__(self) -> None:
        self.handles: List[ScriptedHandle] = []
        self.calls: List[dict] = []

    def queue(self, handle: ScriptedHandle) -> ScriptedHandle:
        self.handles.append(handle)
        return handle

    def __call__(self, kind, repository, workspace, resume_session_id, prompt):
        self.calls.append(
            {
                "kind": kind,
                "repository": repository,
                "workspace": workspace,
                "resume_session_id": resume_session_id,
                "prompt": prompt,
            }
        )
        return self.handles.pop(0)


@pytest.fixture
def issue_tracker():
    """Issue tracker fake; every lookup returns nothing by default."""
    tracker = AsyncMock()
    tracker.fetch_issue_labels.return_value = []
    tracker.fetch_issue_description.return_value = None
    tracker.fetch_issue_project.return_value = None
    tracker.post_activity.return_value = "activity-1"
    tracker.post_selection_prompt.return_value = None
    return tracker


@pytest.fixture
def workspace_provisioner(tmp_path):
    provisioner = AsyncMock()

    async def create_workspace(issue: IssueRef, repository: RepositoryConfig) -> Workspace:
        path = tmp_path / repository.id / issue.identifier
        return Workspace(path=str(path), is_git_worktree=True)

    provisioner.create_workspace.side_effect = create_workspace
    return provisioner


@pytest.fixture
def handle_factory():
    return HandleFactory()
