"""Agent backend strategies: one adapter + one handle per supported agent."""

from typing import Optional

from .base import BackendAdapter, BackendHandle, SessionState
from .claude import ClaudeAdapter, ClaudeHandle
from .codex import CodexAdapter, CodexHandle
from .cursor import CursorAdapter, CursorHandle
from .gemini import GeminiAdapter, GeminiHandle
from .opencode import OpenCodeAdapter, OpenCodeHandle
from ..config import settings
from ..models.repository import RepositoryConfig
from ..models.session import BackendKind, Workspace


def resolve_backend_kind(repository: Optional[RepositoryConfig]) -> BackendKind:
    """Backend configured for ``repository``, else the global default."""
    if repository is not None and repository.backend:
        return repository.backend
    return BackendKind(settings.DEFAULT_BACKEND)


def create_adapter(
    kind: BackendKind, cwd: Optional[str] = None, model: Optional[str] = None
) -> BackendAdapter:
    """Fresh adapter for one run. Adapters keep per-run state and are not shared."""
    if kind == BackendKind.CLAUDE:
        return ClaudeAdapter(cwd)
    if kind == BackendKind.GEMINI:
        return GeminiAdapter(cwd)
    if kind == BackendKind.CODEX:
        return CodexAdapter(cwd, model)
    if kind == BackendKind.CURSOR:
        return CursorAdapter(cwd, model)
    if kind == BackendKind.OPENCODE:
        return OpenCodeAdapter(cwd)
    raise ValueError(f"Unknown backend: {kind}")


def create_backend(
    kind: BackendKind,
    repository: Optional[RepositoryConfig],
    workspace: Workspace,
    resume_session_id: Optional[str],
    prompt: str,
) -> BackendHandle:
    """
    Build the handle for one run using executable paths from settings.

    Args:
        kind: Which agent to run
        repository: Repository config supplying model/tool overrides, if routed
        workspace: Working directory of the session
        resume_session_id: Backend session to continue, None for a new one
        prompt: Initial prompt of the run

    Returns:
        Handle whose ``events()`` starts the run
    """
    model = repository.model if repository else None

    if kind == BackendKind.CLAUDE:
        allowed_tools = (repository.allowed_tools if repository else None) or settings.DEFAULT_ALLOWED_TOOLS
        return ClaudeHandle(
            workspace.path,
            prompt,
            resume_session_id=resume_session_id,
            model=model,
            allowed_tools=list(allowed_tools),
            permission_mode=settings.PERMISSION_MODE,
            cli_path=settings.CLAUDE_PATH if settings.CLAUDE_PATH != "claude" else None,
            connect_timeout=settings.BACKEND_STARTUP_TIMEOUT,
        )
    if kind == BackendKind.GEMINI:
        return GeminiHandle(settings.GEMINI_PATH, workspace.path, prompt, resume_session_id, model)
    if kind == BackendKind.CODEX:
        return CodexHandle(settings.CODEX_PATH, workspace.path, prompt, resume_session_id, model)
    if kind == BackendKind.CURSOR:
        return CursorHandle(settings.CURSOR_PATH, workspace.path, prompt, resume_session_id, model)
    if kind == BackendKind.OPENCODE:
        return OpenCodeHandle(
            settings.OPENCODE_URL,
            workspace.path,
            prompt,
            resume_session_id=resume_session_id,
            model=model,
            connect_timeout=settings.BACKEND_STARTUP_TIMEOUT,
        )
    raise ValueError(f"Unknown backend: {kind}")


__all__ = [
    "BackendAdapter",
    "BackendHandle",
    "SessionState",
    "ClaudeAdapter",
    "ClaudeHandle",
    "CodexAdapter",
    "CodexHandle",
    "CursorAdapter",
    "CursorHandle",
    "GeminiAdapter",
    "GeminiHandle",
    "OpenCodeAdapter",
    "OpenCodeHandle",
    "create_adapter",
    "create_backend",
    "resolve_backend_kind",
]
