"""Inbound event handling, agent run lifecycle and background maintenance."""

import asyncio
import logging
import uuid
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

from .backends import create_adapter, create_backend, resolve_backend_kind
from .backends.base import BackendAdapter, BackendHandle
from .collaborators import BackendFactory, IssueTracker, WorkspaceProvisioner
from .config import settings
from .exceptions import BackendError, RoutingError, SessionError, SessionNotFoundError
from .logging_config import session_logger
from .models.messages import (
    AssistantMessage,
    CanonicalMessage,
    ResultMessage,
    SystemInitMessage,
    accumulate_assistant,
    make_error_result,
)
from .models.repository import (
    ActivityContent,
    InboundEvent,
    RepositoryConfig,
    RoutingNeedsSelection,
    RoutingNone,
    RoutingRequest,
    RoutingSelected,
)
from .models.session import (
    AgentSession,
    BackendKind,
    BackendSession,
    IssueContext,
    SessionEntry,
    SessionStatus,
)
from .persistence import SnapshotStore
from .repository_router import RepositoryRouter
from .run_controller import RunController
from .session_registry import RegistryEvent, SessionRegistry
from .transcript import entry_to_activity, message_to_entries

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[BackendKind, Optional[str], Optional[str]], BackendAdapter]


class Orchestrator:
    """
    Composes registry, router and backends.

    Features:
    - Routes inbound work-item events to a repository and session
    - One asyncio task per agent run, messages applied in backend order
    - Stop/unassign handling; children stop when their parent completes
    - Fire-and-forget feedback delivery into child sessions
    - Periodic cleanup and snapshot persistence
    """

    def __init__(
        self,
        registry: SessionRegistry,
        router: RepositoryRouter,
        issue_tracker: IssueTracker,
        workspace_provisioner: WorkspaceProvisioner,
        backend_factory: BackendFactory = create_backend,
        adapter_factory: AdapterFactory = create_adapter,
        snapshot_store: Optional[SnapshotStore] = None,
        run_controller: Optional[RunController] = None,
        retention_ms: Optional[int] = None,
    ):
        self.registry = registry
        self.router = router
        self.issue_tracker = issue_tracker
        self.workspace_provisioner = workspace_provisioner
        self.backend_factory = backend_factory
        self.adapter_factory = adapter_factory
        self.snapshot_store = snapshot_store
        self.runs = run_controller or RunController()
        self.retention_ms = retention_ms if retention_ms is not None else settings.retention_ms

        # Events waiting for the user to pick a repository, by external session id
        self._deferred: Dict[str, InboundEvent] = {}
        self._detached: Set[asyncio.Task] = set()
        self._cleanup_task: Optional[asyncio.Task[None]] = None
        self._snapshot_task: Optional[asyncio.Task[None]] = None

        self._unsubscribe = self.registry.events.subscribe(self._on_registry_event)
        logger.info(f"Initialized Orchestrator with {len(router.repositories)} repositories")

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def handle_event(self, event: InboundEvent) -> Optional[AgentSession]:
        """
        Entry point for the upstream surface.

        Registry, routing and backend errors are logged here with issue
        context and never propagate to the caller.
        """
        issue = event.issue.identifier if event.issue else "-"
        try:
            if event.kind == "session_created":
                return await self._on_session_created(event)
            if event.kind == "prompted":
                return await self._on_prompted(event)
            if event.kind == "unassigned":
                await self._on_unassigned(event)
            return None
        except (SessionError, RoutingError, BackendError) as e:
            logger.error(
                f"Failed to handle {event.kind} for issue {issue} "
                f"(session {event.external_session_id}): [{e.code}] {e.message}"
            )
            return None

    async def _on_session_created(self, event: InboundEvent) -> Optional[AgentSession]:
        if event.issue is None or event.external_session_id is None:
            logger.warning(f"Ignoring {event.kind} event without issue or session id")
            return None

        existing = self.registry.get_session_by_external_id(event.external_session_id)
        if existing is not None:
            logger.info(f"Session for {event.external_session_id} already exists: {existing.id}")
            return existing

        result = await self.router.determine_repository(RoutingRequest.from_event(event))

        if isinstance(result, RoutingNeedsSelection):
            self._deferred[event.external_session_id] = event
            asked = await self.router.elicit_user_repository_selection(
                event.external_session_id, event.issue.id, result.candidates
            )
            if not asked:
                self._deferred.pop(event.external_session_id, None)
            return None

        if isinstance(result, RoutingNone):
            logger.warning(f"No repository matches issue {event.issue.identifier}")
            await self._post_activity(
                event.external_session_id,
                ActivityContent(
                    type="error",
                    body=f"No repository is configured for issue {event.issue.identifier}",
                ),
            )
            return None

        assert isinstance(result, RoutingSelected)
        logger.info(
            f"Routed issue {event.issue.identifier} to {result.repository.name} "
            f"({result.routing_method})"
        )
        return await self._create_and_start(event, result.repository, event.prompt)

    async def _on_prompted(self, event: InboundEvent) -> Optional[AgentSession]:
        external_id = event.external_session_id
        if external_id is None:
            logger.warning("Ignoring prompted event without session id")
            return None

        if self.router.has_pending_selection(external_id):
            repository = self.router.select_repository_from_response(external_id, event.prompt)
            deferred = self._deferred.pop(external_id, None)
            if repository is None:
                # Another response consumed the selection first
                return None
            original = deferred or event
            if original.issue is None:
                logger.warning(f"Repository selected for {external_id} but the issue is unknown")
                return None
            return await self._create_and_start(original, repository, original.prompt)

        session = self.registry.get_session_by_external_id(external_id)
        if session is None:
            return await self._on_session_created(event)

        await self.prompt_session(session.id, event.prompt)
        return self.registry.get_session(session.id)

    async def _on_unassigned(self, event: InboundEvent) -> None:
        sessions: List[AgentSession] = []
        if event.external_session_id:
            session = self.registry.get_session_by_external_id(event.external_session_id)
            if session is not None:
                sessions.append(session)
        if event.issue is not None:
            sessions.extend(
                s for s in self.registry.get_sessions_by_issue_id(event.issue.id) if s not in sessions
            )

        for session in sessions:
            if not session.is_terminal:
                await self.stop_session(session.id)

    async def _create_and_start(
        self, event: InboundEvent, repository: RepositoryConfig, prompt: str
    ) -> Optional[AgentSession]:
        assert event.issue is not None
        try:
            workspace = await self.workspace_provisioner.create_workspace(event.issue, repository)
        except Exception as e:
            logger.error(
                f"Failed to create workspace for issue {event.issue.identifier} "
                f"in {repository.name}: {e}",
                exc_info=True,
            )
            if event.external_session_id:
                await self._post_activity(
                    event.external_session_id,
                    ActivityContent(
                        type="error",
                        body=f"Could not create a workspace for {event.issue.identifier}: {e}",
                    ),
                )
            return None

        session = AgentSession(
            id=uuid.uuid4().hex,
            external_session_id=event.external_session_id,
            issue_context=IssueContext(
                tracker_id=event.tracker_id,
                issue_id=event.issue.id,
                issue_identifier=event.issue.identifier,
            ),
            workspace=workspace,
            repository_id=repository.id,
        )
        await self.registry.create_session(session)
        if event.parent_session_id:
            self.registry.set_parent_session(session.id, event.parent_session_id)

        await self.start_run(session.id, prompt)
        return session

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _repository_for(self, session: AgentSession) -> Optional[RepositoryConfig]:
        if session.repository_id is None:
            return None
        return self.router.repositories_by_id.get(session.repository_id)

    async def start_run(self, session_id: str, prompt: str) -> Optional[asyncio.Task]:
        """
        Start (or resume) a backend run for the session.

        Resumes the backend session recorded on the session, if any; otherwise
        the backend is chosen from the routed repository. If the backend
        cannot be constructed the prompt is still recorded, followed by an
        error result, and None is returned.

        Raises:
            SessionNotFoundError: If the session is not registered
        """
        session = self.registry.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        log = session_logger(logger, session_id)
        repository = self._repository_for(session)
        resume_session_id: Optional[str] = None
        failure: Optional[str] = None
        try:
            if session.backend_session is not None:
                kind = session.backend_session.backend
                resume_session_id = session.backend_session.session_id
            else:
                kind = resolve_backend_kind(repository)

            handle = self.backend_factory(kind, repository, session.workspace, resume_session_id, prompt)
            adapter = self.adapter_factory(
                kind, session.workspace.path, repository.model if repository else None
            )
        except BackendError as e:
            log.error(f"Could not start backend: [{e.code}] {e.message}")
            failure = e.message
        except Exception as e:
            log.error(f"Could not start backend: {e}", exc_info=True)
            failure = f"{type(e).__name__}: {e}"

        if failure is not None:
            self.runs.clear_stopped(session_id)
            await self.registry.add_entry(
                session_id,
                SessionEntry(type="user", content=prompt, backend_session_id=resume_session_id),
            )
            await self._apply_run_error(session_id, failure)
            return None

        await self.registry.update_session(session_id, runner=handle, status=SessionStatus.ACTIVE)
        await self.registry.add_entry(
            session_id,
            SessionEntry(type="user", content=prompt, backend_session_id=resume_session_id),
        )

        task = asyncio.create_task(self._run(session_id, handle, adapter))
        self.runs.register_run(session_id, handle, task)
        task.add_done_callback(lambda t: self.runs.finish_run(session_id, t))
        return task

    async def _run(self, session_id: str, handle: BackendHandle, adapter: BackendAdapter) -> None:
        log = session_logger(logger, session_id)
        last_assistant: Optional[AssistantMessage] = None
        pending: Optional[AssistantMessage] = None
        got_result = False

        async def flush() -> None:
            nonlocal pending
            if pending is not None:
                message, pending = pending, None
                await self.apply_message(session_id, message)

        try:
            async for native in handle.events():
                if self.runs.is_stopped(session_id):
                    log.debug("Dropping backend event after stop")
                    break

                backend_session_id = adapter.extract_session_id(native)
                if backend_session_id:
                    await self._record_backend_session(session_id, adapter.kind, backend_session_id)

                current = self._backend_session_id(session_id)
                for message in adapter.translate_many(native, current, last_assistant):
                    if isinstance(message, AssistantMessage) and message.text:
                        last_assistant = accumulate_assistant(last_assistant, message)
                    if isinstance(message, AssistantMessage) and message.tool_use is None:
                        # Text deltas sharing a message id are folded into one entry
                        if pending is not None and pending.message_id == message.message_id:
                            pending = accumulate_assistant(pending, message)
                        else:
                            await flush()
                            pending = message
                        continue

                    await flush()
                    await self.apply_message(session_id, message)
                    if isinstance(message, ResultMessage) and (message.is_fatal or not message.is_error):
                        got_result = True
            await flush()

            if not got_result and not self.runs.is_stopped(session_id):
                log.warning("Backend finished without a result, synthesizing one")
                final_text = last_assistant.text if last_assistant else None
                await self.apply_message(
                    session_id,
                    ResultMessage(
                        subtype="success",
                        session_id=self._backend_session_id(session_id) or "pending",
                        final_text=final_text or "Session completed successfully",
                    ),
                )
        except asyncio.CancelledError:
            log.info("Run cancelled")
            raise
        except (BackendError, SessionError) as e:
            if not self.runs.is_stopped(session_id):
                log.error(f"Backend run failed: [{e.code}] {e.message}")
                await flush()
                await self._apply_run_error(session_id, e.message)
        except Exception as e:
            if not self.runs.is_stopped(session_id):
                log.error(f"Unexpected error in backend run: {e}", exc_info=True)
                await flush()
                await self._apply_run_error(session_id, f"{type(e).__name__}: {e}")
        finally:
            session = self.registry.get_session(session_id)
            if session is not None and session.runner is handle:
                await self.registry.update_session(session_id, runner=None)

    async def _apply_run_error(self, session_id: str, reason: str) -> None:
        try:
            await self.apply_message(
                session_id, make_error_result(reason, self._backend_session_id(session_id))
            )
        except SessionNotFoundError:
            logger.debug(f"Session {session_id} disappeared before its error could be recorded")

    def _backend_session_id(self, session_id: str) -> Optional[str]:
        session = self.registry.get_session(session_id)
        if session is None or session.backend_session is None:
            return None
        return session.backend_session.session_id

    async def _record_backend_session(
        self, session_id: str, kind: BackendKind, backend_session_id: str
    ) -> None:
        session = self.registry.get_session(session_id)
        if session is None:
            return
        current = session.backend_session
        if current is not None and current.session_id == backend_session_id:
            return
        session_logger(logger, session_id).info(
            f"Backend session established: {kind.value} {backend_session_id}"
        )
        await self.registry.update_session(
            session_id, backend_session=BackendSession(backend=kind, session_id=backend_session_id)
        )

    async def apply_message(self, session_id: str, message: CanonicalMessage) -> List[int]:
        """
        Apply one canonical message to the session.

        Appends the transcript entries, updates status/metadata, and posts the
        matching tracker activities. Messages for stopped sessions are dropped.

        Returns:
            Indices of the appended entries, empty if nothing was appended
        """
        if self.runs.is_stopped(session_id):
            session_logger(logger, session_id).debug(f"Dropping {message.type} message after stop")
            return []

        session = self.registry.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        if isinstance(message, SystemInitMessage):
            await self.registry.update_session(
                session_id,
                metadata=session.metadata.model_copy(
                    update={
                        "model": message.model or session.metadata.model,
                        "tools": message.tools or session.metadata.tools,
                        "permission_mode": message.permission_mode or session.metadata.permission_mode,
                    }
                ),
            )

        entries = message_to_entries(message, self._backend_session_id(session_id))
        indices = [await self.registry.add_entry(session_id, entry) for entry in entries]

        if isinstance(message, ResultMessage):
            await self._apply_result(session_id, message)

        for entry, index in zip(entries, indices):
            await self._post_entry_activity(session, entry, index)
        return indices

    async def _apply_result(self, session_id: str, message: ResultMessage) -> None:
        session = self.registry.get_session(session_id)
        if session is None:
            return

        metadata = session.metadata.model_copy(
            update={
                "total_cost_usd": session.metadata.total_cost_usd + message.cost_usd,
                "usage": message.usage.model_dump(),
            }
        )
        log = session_logger(logger, session_id)
        if not message.is_error:
            log.info(f"Run completed ({message.num_turns} turns, {message.duration_ms}ms)")
            await self.registry.update_session(session_id, metadata=metadata, status=SessionStatus.COMPLETE)
        elif message.is_fatal:
            log.error(f"Run failed: {'; '.join(message.errors)}")
            await self.registry.update_session(session_id, metadata=metadata, status=SessionStatus.ERROR)
        else:
            log.warning(f"Backend reported a recoverable error: {'; '.join(message.errors)}")
            await self.registry.update_session(session_id, metadata=metadata)

    async def _post_entry_activity(self, session: AgentSession, entry: SessionEntry, index: int) -> None:
        if not session.external_session_id:
            return

        tool_use = None
        if entry.type == "user" and entry.metadata and entry.metadata.tool_use_id:
            tool_use = self._find_tool_use(session.id, entry.metadata.tool_use_id)
        activity = entry_to_activity(entry, tool_use)
        if activity is None:
            return

        activity_id = await self._post_activity(session.external_session_id, activity)
        if activity_id:
            try:
                await self.registry.update_entry(session.id, index, external_activity_id=activity_id)
            except SessionError as e:
                logger.warning(f"Could not attach activity {activity_id}: {e.message}")

    def _find_tool_use(self, session_id: str, tool_use_id: str) -> Optional[SessionEntry]:
        for entry in reversed(self.registry.get_entries(session_id)):
            if entry.type == "assistant" and entry.metadata and entry.metadata.tool_use_id == tool_use_id:
                return entry
        return None

    async def _post_activity(self, external_session_id: str, content: ActivityContent) -> Optional[str]:
        try:
            return await self.issue_tracker.post_activity(external_session_id, content)
        except Exception as e:
            logger.error(f"Failed to post {content.type} activity to {external_session_id}: {e}")
            return None

    # ------------------------------------------------------------------
    # Prompting, stopping, feedback
    # ------------------------------------------------------------------

    async def prompt_session(self, session_id: str, prompt: str) -> None:
        """
        Deliver a follow-up prompt.

        Streams it into the running turn when the backend accepts input
        mid-run; otherwise any running turn is stopped and the backend
        session is resumed with the new prompt.
        """
        session = self.registry.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        handle = self.runs.get_handle(session_id)
        if handle is not None and self.runs.is_running(session_id):
            if handle.supports_streaming_input:
                await self.registry.add_entry(
                    session_id,
                    SessionEntry(type="user", content=prompt, backend_session_id=handle.backend_session_id),
                )
                await handle.send(prompt)
                return
            session_logger(logger, session_id).info(
                f"{handle.kind.value} does not accept input mid-run, restarting with resume"
            )
            await self.runs.stop(session_id)

        await self.start_run(session_id, prompt)

    async def stop_session(self, session_id: str) -> bool:
        """
        Terminate the session's backend and mark it stopped (status ``error``).

        Returns:
            True if a run was active
        """
        was_running = await self.runs.stop(session_id)
        session = self.registry.get_session(session_id)
        if session is not None:
            changes: Dict[str, Any] = {"runner": None}
            if not session.is_terminal:
                changes["status"] = SessionStatus.ERROR
            await self.registry.update_session(session_id, **changes)
        session_logger(logger, session_id).info("Session stopped")
        return was_running

    async def deliver_feedback(self, child_session_id: str, feedback: str) -> bool:
        """
        Hand feedback to a child session and return immediately.

        The child is resumed in a detached task; failures are logged against
        the child and never reach the caller.

        Returns:
            True if the feedback was handed off, False if the child is unknown
        """
        if self.registry.get_session(child_session_id) is None:
            logger.warning(f"Cannot deliver feedback: child session {child_session_id} not found")
            return False

        self._spawn(self._deliver_feedback(child_session_id, feedback), child_session_id)
        return True

    async def _deliver_feedback(self, child_session_id: str, feedback: str) -> None:
        log = session_logger(logger, child_session_id)
        try:
            await self.prompt_session(child_session_id, feedback)
            log.info(f"Feedback delivered ({len(feedback)} chars)")
        except Exception as e:
            log.error(f"Failed to resume child session with feedback: {e}", exc_info=True)

    def _spawn(self, coro: Coroutine[Any, Any, None], session_id: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"session-{session_id}")
        self._detached.add(task)
        task.add_done_callback(self._detached.discard)
        return task

    def _on_registry_event(self, event: RegistryEvent) -> None:
        if event.kind != "session_completed":
            return
        for child_id in self.registry.get_child_session_ids(event.session_id):
            if self.runs.is_running(child_id):
                logger.info(f"Parent {event.session_id} completed, stopping child {child_id}")
                self._spawn(self._stop_child(child_id), child_id)

    async def _stop_child(self, child_id: str) -> None:
        try:
            await self.stop_session(child_id)
        except Exception as e:
            session_logger(logger, child_id).error(f"Failed to stop child session: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Maintenance & persistence
    # ------------------------------------------------------------------

    async def cleanup(self, max_age_ms: Optional[int] = None) -> int:
        """Drop sessions idle longer than the retention window."""
        before = set(self.registry.sessions)
        removed = await self.registry.cleanup(self.retention_ms if max_age_ms is None else max_age_ms)
        for session_id in before - set(self.registry.sessions):
            if self.runs.is_running(session_id):
                await self.runs.stop(session_id)
            self.runs.forget(session_id)
        return removed

    async def save_snapshot(self) -> Optional[int]:
        if self.snapshot_store is None:
            return None
        return await self.snapshot_store.save(self.registry.serialize_state(), self.router.dump_cache())

    async def restore_snapshot(self) -> bool:
        """Replace in-memory state with the persisted snapshot, if one exists."""
        if self.snapshot_store is None:
            return False
        document = await self.snapshot_store.load()
        if not document or "registry" not in document:
            return False
        self.registry.restore_state(document["registry"])
        self.router.restore_cache(document.get("routing_cache", {}))
        logger.info(f"Restored {len(self.registry.sessions)} session(s) from snapshot")
        return True

    def start_background_tasks(self) -> None:
        """Start background cleanup and snapshot tasks."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(
                self._periodic(settings.CLEANUP_INTERVAL_SECONDS, self.cleanup, "cleanup")
            )
        if self._snapshot_task is None and self.snapshot_store is not None:
            self._snapshot_task = asyncio.create_task(
                self._periodic(settings.SNAPSHOT_INTERVAL_SECONDS, self.save_snapshot, "snapshot")
            )
        logger.info("Background tasks started")

    async def _periodic(
        self, interval: float, action: Callable[[], Coroutine[Any, Any, Any]], name: str
    ) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                await action()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in {name} loop: {e}", exc_info=True)

    async def shutdown(self) -> None:
        """Stop background loops and runs, then persist the final state."""
        logger.info("Shutting down orchestrator...")
        for task in (self._cleanup_task, self._snapshot_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._cleanup_task = self._snapshot_task = None

        await self.runs.stop_all()
        for task in list(self._detached):
            task.cancel()
        await asyncio.gather(*self._detached, return_exceptions=True)

        await self.save_snapshot()
        self._unsubscribe()
