"""Resolves inbound work items to a configured repository."""

import logging
import re
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .collaborators import IssueTracker
from .exceptions import RoutingCollaboratorError, SelectionPostingError
from .models.repository import (
    ActivityContent,
    PendingSelection,
    RepositoryConfig,
    RoutingNeedsSelection,
    RoutingNone,
    RoutingRequest,
    RoutingResult,
    RoutingSelected,
)

logger = logging.getLogger(__name__)

# [repo=org/name], also in the markdown-escaped form \[repo=org/name\]
REPO_TAG_PATTERN = re.compile(r"\\?\[repo=([a-zA-Z0-9_\-/.]+)\\?\]")

SELECTION_PROMPT = "Which repository should I work in for this issue?"

ActiveSessionCheck = Callable[[str, str], bool]


def parse_repo_tag(description: str) -> Optional[str]:
    """Return the value of the first ``[repo=...]`` tag in ``description``."""
    match = REPO_TAG_PATTERN.search(description)
    return match.group(1) if match else None


class RepositoryRouter:
    """
    Multi-tier repository routing with an issue -> repository cache.

    Tiers, first match wins:
        0. session affinity (an active session already owns the issue)
        1. workspace filter
        2. ``[repo=...]`` tag in the issue description
        3. routing labels
        4. project name
        5. team key, then the identifier prefix as a team key
        6. catch-all repository without any routing configuration
        7. ask the user when several candidates remain
        8. first repository of the workspace

    Every tier that talks to the issue tracker is an independent probe: a
    failing lookup is logged and the cascade moves on.
    """

    def __init__(
        self,
        repositories: List[RepositoryConfig],
        issue_tracker: IssueTracker,
        has_active_session: ActiveSessionCheck,
    ):
        self.repositories = list(repositories)
        self.issue_tracker = issue_tracker
        self.has_active_session = has_active_session
        self._cache: Dict[str, str] = {}
        self._pending: Dict[str, PendingSelection] = {}
        self._resolved: Set[str] = set()

    @property
    def repositories_by_id(self) -> Dict[str, RepositoryConfig]:
        return {repo.id: repo for repo in self.repositories}

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def get_cached_repository(self, issue_id: str) -> Optional[RepositoryConfig]:
        repository_id = self._cache.get(issue_id)
        if repository_id is None:
            return None

        repository = self.repositories_by_id.get(repository_id)
        if repository is None:
            logger.warning(
                f"Cached repository {repository_id} no longer exists, removing from cache"
            )
            self._cache.pop(issue_id, None)
            return None
        return repository

    def cache_repository(self, issue_id: str, repository: RepositoryConfig) -> None:
        self._cache[issue_id] = repository.id

    def dump_cache(self) -> Dict[str, str]:
        return dict(self._cache)

    def restore_cache(self, cache: Dict[str, str]) -> None:
        self._cache = dict(cache)

    # ------------------------------------------------------------------
    # Cascade
    # ------------------------------------------------------------------

    async def determine_repository(self, request: RoutingRequest) -> RoutingResult:
        """Run the routing cascade for one inbound event."""
        if request.issue_id:
            cached = self.get_cached_repository(request.issue_id)
            if cached is not None:
                logger.debug(f"Using cached repository {cached.name} for issue {request.issue_id}")
                return RoutingSelected(repository=cached, routing_method="cached")

        result = await self._route(request)
        if isinstance(result, RoutingSelected) and request.issue_id:
            self.cache_repository(request.issue_id, result.repository)
        return result

    async def _route(self, request: RoutingRequest) -> RoutingResult:
        repos = self.repositories

        if not request.workspace_id:
            if repos:
                return RoutingSelected(repository=repos[0], routing_method="workspace-fallback")
            return RoutingNone()

        issue_id = request.issue_id

        if issue_id:
            for repo in repos:
                if self.has_active_session(issue_id, repo.id):
                    logger.info(f"Repository selected: {repo.name} (existing active session)")
                    return RoutingSelected(repository=repo, routing_method="existing-session")

        workspace_repos = [r for r in repos if r.workspace_id == request.workspace_id]
        if not workspace_repos:
            logger.info(f"No repositories configured for workspace {request.workspace_id}")
            return RoutingNone()

        probes = [
            ("description-tag", self._probe_description_tag),
            ("label-based", self._probe_labels),
            ("project-based", self._probe_project),
        ]
        if issue_id:
            for method, probe in probes:
                repo = await self._run_probe(method, probe, issue_id, workspace_repos)
                if repo is not None:
                    logger.info(f"Repository selected: {repo.name} ({method} routing)")
                    return RoutingSelected(repository=repo, routing_method=method)

        if request.team_key:
            repo = _find_by_team_key(request.team_key, workspace_repos)
            if repo is not None:
                logger.info(f"Repository selected: {repo.name} (team-based routing)")
                return RoutingSelected(repository=repo, routing_method="team-based")

        if request.issue_identifier and "-" in request.issue_identifier:
            prefix = request.issue_identifier.split("-", 1)[0]
            repo = _find_by_team_key(prefix, workspace_repos) if prefix else None
            if repo is not None:
                logger.info(f"Repository selected: {repo.name} (team prefix routing)")
                return RoutingSelected(repository=repo, routing_method="team-prefix")

        for repo in workspace_repos:
            if not repo.has_routing_config:
                logger.info(f"Repository selected: {repo.name} (workspace catch-all)")
                return RoutingSelected(repository=repo, routing_method="catch-all")

        if len(workspace_repos) > 1:
            logger.info(
                f"Multiple repositories ({len(workspace_repos)}) found with no routing match"
                " - requesting user selection"
            )
            return RoutingNeedsSelection(candidates=workspace_repos)

        logger.info(f"Repository selected: {workspace_repos[0].name} (workspace fallback)")
        return RoutingSelected(repository=workspace_repos[0], routing_method="workspace-fallback")

    async def _run_probe(
        self,
        tier: str,
        probe: Callable[[str, List[RepositoryConfig]], Awaitable[Optional[RepositoryConfig]]],
        issue_id: str,
        repos: List[RepositoryConfig],
    ) -> Optional[RepositoryConfig]:
        try:
            return await probe(issue_id, repos)
        except Exception as e:
            error = RoutingCollaboratorError(tier, e)
            logger.error(f"{error.message} for issue {issue_id}, trying next tier")
            return None

    async def _probe_description_tag(
        self, issue_id: str, repos: List[RepositoryConfig]
    ) -> Optional[RepositoryConfig]:
        description = await self.issue_tracker.fetch_issue_description(issue_id)
        if not description:
            return None

        tag = parse_repo_tag(description)
        if not tag:
            return None
        logger.debug(f"Found [repo={tag}] tag in issue description")

        for repo in repos:
            if repo.github_url and tag in repo.github_url:
                return repo
            if repo.name.lower() == tag.lower():
                return repo
            if repo.id == tag:
                return repo

        logger.debug(f"No repository matched [repo={tag}] tag")
        return None

    async def _probe_labels(
        self, issue_id: str, repos: List[RepositoryConfig]
    ) -> Optional[RepositoryConfig]:
        labelled = [r for r in repos if r.routing_labels]
        if not labelled:
            return None

        labels = set(await self.issue_tracker.fetch_issue_labels(issue_id))
        for repo in labelled:
            if labels.intersection(repo.routing_labels):
                return repo
        return None

    async def _probe_project(
        self, issue_id: str, repos: List[RepositoryConfig]
    ) -> Optional[RepositoryConfig]:
        keyed = [r for r in repos if r.project_keys]
        if not keyed:
            return None

        project = await self.issue_tracker.fetch_issue_project(issue_id)
        if project is None or not project.name:
            logger.debug(f"No project found for issue {issue_id}")
            return None

        for repo in keyed:
            if project.name in repo.project_keys:
                return repo
        return None

    # ------------------------------------------------------------------
    # Interactive selection
    # ------------------------------------------------------------------

    async def elicit_user_repository_selection(
        self,
        external_session_id: str,
        issue_id: str,
        candidates: List[RepositoryConfig],
    ) -> bool:
        """
        Ask the user to pick a repository.

        Stores the pending selection and posts the choice. If posting fails an
        error activity is posted instead and the pending selection is cleared.

        Returns:
            True if the user is now being asked
        """
        if not candidates:
            logger.error("No repositories available for selection elicitation")
            return False

        self._pending[external_session_id] = PendingSelection(
            issue_id=issue_id, candidates=candidates
        )
        self._resolved.discard(external_session_id)

        options = [repo.selection_value for repo in candidates]
        try:
            await self.issue_tracker.post_selection_prompt(external_session_id, options)
        except Exception as e:
            error = SelectionPostingError(external_session_id, e)
            logger.error(f"{error.message} (session {external_session_id})")
            self._pending.pop(external_session_id, None)
            await self._post_selection_error(external_session_id, error)
            return False

        logger.info(
            f"Posted repository selection with {len(options)} options for issue {issue_id}"
        )
        return True

    async def _post_selection_error(
        self, external_session_id: str, error: SelectionPostingError
    ) -> None:
        try:
            await self.issue_tracker.post_activity(
                external_session_id, ActivityContent(type="error", body=error.message)
            )
        except Exception as post_error:
            logger.error(
                f"Failed to post error activity (may be due to same underlying issue): {post_error}"
            )

    def select_repository_from_response(
        self, external_session_id: str, choice: str
    ) -> Optional[RepositoryConfig]:
        """
        Resolve a pending selection with the user's answer.

        Consumes the pending entry, so a repeated response returns None. An
        answer matching no candidate falls back to the first one.
        """
        pending = self._pending.pop(external_session_id, None)
        if pending is None:
            logger.debug(f"No pending repository selection for session {external_session_id}")
            return None

        self._resolved.add(external_session_id)
        choice = choice.strip()
        selected = next(
            (r for r in pending.candidates if choice in (r.github_url, r.name)),
            None,
        )
        repository = selected or pending.candidates[0]
        if selected is None:
            logger.info(f'Repository "{choice}" not found, falling back to {repository.name}')
        else:
            logger.info(f"User selected repository: {repository.name}")

        self.cache_repository(pending.issue_id, repository)
        return repository

    def has_pending_selection(self, external_session_id: str) -> bool:
        return external_session_id in self._pending

    def get_pending_selection(self, external_session_id: str) -> Optional[PendingSelection]:
        return self._pending.get(external_session_id)

    def selection_state(self, external_session_id: str) -> str:
        """One of ``unresolved``, ``awaiting_user_input`` or ``resolved``."""
        if external_session_id in self._pending:
            return "awaiting_user_input"
        if external_session_id in self._resolved:
            return "resolved"
        return "unresolved"


def _find_by_team_key(
    team_key: str, repos: List[RepositoryConfig]
) -> Optional[RepositoryConfig]:
    return next((r for r in repos if team_key in r.team_keys), None)
