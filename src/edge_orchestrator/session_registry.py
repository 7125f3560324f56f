"""Central registry of agent sessions, transcripts and parent/child links."""

import asyncio
import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict

from .exceptions import (
    DuplicateSessionError,
    EntryIndexOutOfBoundsError,
    SessionNotFoundError,
    SnapshotVersionError,
)
from .models.session import AgentSession, SessionEntry, SessionStatus, now_ms
from .types import RegistryListener, RegistrySnapshot, Unsubscribe

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "3.0"

# Entry fields fixed at append time
_IMMUTABLE_ENTRY_FIELDS = frozenset({"type", "content"})


class RegistryEvent(BaseModel):
    """Lifecycle notification published by the registry."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: Literal["session_created", "session_updated", "session_completed"]
    session_id: str
    session: AgentSession
    changes: Dict[str, Any] = {}


class RegistryEvents:
    """
    Ordered list of registry listeners.

    Listeners run synchronously, in subscription order, inside the mutation
    that published the event. A listener that raises is logged and skipped;
    the remaining listeners still run.
    """

    def __init__(self) -> None:
        self._listeners: List[RegistryListener] = []

    def subscribe(self, listener: RegistryListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: RegistryEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    f"Registry listener failed on {event.kind} for session {event.session_id}: {e}",
                    exc_info=True,
                )

    def __len__(self) -> int:
        return len(self._listeners)


class SessionRegistry:
    """
    Holds every session across all repositories.

    Features:
    - Session and transcript storage keyed by internal session id
    - Child -> parent links for delegated (sub-agent) sessions
    - Lifecycle notifications through ``events``
    - Versioned snapshot for persistence
    - Age-based cleanup

    Mutations of one session are serialized by a per-session lock. Reads never
    block.
    """

    def __init__(self) -> None:
        self.sessions: Dict[str, AgentSession] = {}
        self.entries: Dict[str, List[SessionEntry]] = {}
        self.child_to_parent: Dict[str, str] = {}
        self.events = RegistryEvents()
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        """Per-session lock. Callers check the session exists first, except on create."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _require(self, session_id: str) -> AgentSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _touch(self, session: AgentSession) -> None:
        session.updated_at = max(now_ms(), session.updated_at)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, session: AgentSession) -> AgentSession:
        async with self._lock(session.id):
            if session.id in self.sessions:
                raise DuplicateSessionError(session.id)
            self.sessions[session.id] = session
            self.entries[session.id] = []

        logger.debug(f"Registered session {session.id}")
        self.events.publish(
            RegistryEvent(kind="session_created", session_id=session.id, session=session)
        )
        return session

    def get_session(self, session_id: str) -> Optional[AgentSession]:
        return self.sessions.get(session_id)

    def get_all_sessions(self) -> List[AgentSession]:
        return list(self.sessions.values())

    def get_session_by_external_id(self, external_session_id: str) -> Optional[AgentSession]:
        for session in self.sessions.values():
            if session.external_session_id == external_session_id:
                return session
        return None

    def get_sessions_by_issue_id(self, issue_id: str) -> List[AgentSession]:
        return [s for s in self.sessions.values() if s.issue_id == issue_id]

    def has_active_session(self, issue_id: str, repository_id: str) -> bool:
        """True if a non-terminal session for the issue runs in the repository."""
        return any(
            s.repository_id == repository_id and not s.is_terminal
            for s in self.get_sessions_by_issue_id(issue_id)
        )

    async def update_session(self, session_id: str, **changes: Any) -> AgentSession:
        """
        Shallow-merge ``changes`` into a session.

        Publishes ``session_updated``, then ``session_completed`` when the
        merge moves a non-terminal status into complete or error.

        Raises:
            SessionNotFoundError: If the session is not registered
            ValueError: On unknown fields or an attempt to change the id
        """
        if "id" in changes:
            raise ValueError("Session id cannot be changed")
        unknown = set(changes) - set(AgentSession.model_fields)
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        if "status" in changes:
            changes["status"] = SessionStatus(changes["status"])

        self._require(session_id)
        async with self._lock(session_id):
            session = self._require(session_id)
            old_status = session.status
            updated = session.model_copy(update=changes)
            self._touch(updated)
            self.sessions[session_id] = updated

        self.events.publish(
            RegistryEvent(
                kind="session_updated", session_id=session_id, session=updated, changes=changes
            )
        )
        if not old_status.is_terminal and updated.status.is_terminal:
            self.events.publish(
                RegistryEvent(kind="session_completed", session_id=session_id, session=updated)
            )
        return updated

    async def delete_session(self, session_id: str) -> None:
        """Remove a session, its entries and every parent/child link touching it."""
        async with self._lock(session_id):
            self._delete(session_id)
        self._locks.pop(session_id, None)

    def _delete(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)
        self.entries.pop(session_id, None)
        self.child_to_parent.pop(session_id, None)
        for child_id in self.get_child_session_ids(session_id):
            del self.child_to_parent[child_id]

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------

    async def add_entry(self, session_id: str, entry: SessionEntry) -> int:
        """Append an entry and return its index."""
        self._require(session_id)
        async with self._lock(session_id):
            session = self._require(session_id)
            session_entries = self.entries.setdefault(session_id, [])
            session_entries.append(entry)
            self._touch(session)
            return len(session_entries) - 1

    async def update_entry(self, session_id: str, index: int, **changes: Any) -> SessionEntry:
        """
        Merge ``changes`` into an existing entry.

        Only metadata, backend_session_id and external_activity_id may change;
        type and content are fixed once appended.

        Raises:
            SessionNotFoundError: If the session is not registered
            EntryIndexOutOfBoundsError: If ``index`` addresses no entry
            ValueError: On an attempt to change type or content
        """
        forbidden = _IMMUTABLE_ENTRY_FIELDS & set(changes)
        if forbidden:
            raise ValueError(f"Entry fields are immutable: {sorted(forbidden)}")

        self._require(session_id)
        async with self._lock(session_id):
            session = self._require(session_id)
            session_entries = self.entries.get(session_id, [])
            if index < 0 or index >= len(session_entries):
                raise EntryIndexOutOfBoundsError(session_id, index, len(session_entries))

            updated = session_entries[index].model_copy(update=changes)
            session_entries[index] = updated
            self._touch(session)
            return updated

    def get_entries(self, session_id: str) -> List[SessionEntry]:
        return list(self.entries.get(session_id, []))

    # ------------------------------------------------------------------
    # Parent / child
    # ------------------------------------------------------------------

    def set_parent_session(self, child_session_id: str, parent_session_id: str) -> None:
        """Link a child to its parent, replacing any previous parent."""
        if child_session_id == parent_session_id:
            raise ValueError("A session cannot be its own parent")
        self.child_to_parent[child_session_id] = parent_session_id

    def get_parent_session_id(self, child_session_id: str) -> Optional[str]:
        return self.child_to_parent.get(child_session_id)

    def get_child_session_ids(self, parent_session_id: str) -> List[str]:
        return [
            child_id
            for child_id, parent_id in self.child_to_parent.items()
            if parent_id == parent_session_id
        ]

    # ------------------------------------------------------------------
    # Persistence and maintenance
    # ------------------------------------------------------------------

    def serialize_state(self) -> RegistrySnapshot:
        """Snapshot sessions, entries and links. Live runner handles are excluded."""
        return {
            "version": SNAPSHOT_VERSION,
            "sessions": {
                sid: session.model_dump(mode="json") for sid, session in self.sessions.items()
            },
            "entries": {
                sid: [entry.model_dump(mode="json") for entry in session_entries]
                for sid, session_entries in self.entries.items()
            },
            "child_to_parent_map": dict(self.child_to_parent),
        }

    def restore_state(self, snapshot: RegistrySnapshot) -> None:
        """
        Replace all in-memory state with a snapshot.

        Raises:
            SnapshotVersionError: If the snapshot is not in the current format
        """
        version = snapshot.get("version")
        if version != SNAPSHOT_VERSION:
            raise SnapshotVersionError(version)

        sessions = {
            sid: AgentSession.model_validate(data)
            for sid, data in snapshot.get("sessions", {}).items()
        }
        entries = {
            sid: [SessionEntry.model_validate(item) for item in items]
            for sid, items in snapshot.get("entries", {}).items()
        }

        self.sessions.clear()
        self.entries.clear()
        self.child_to_parent.clear()
        self._locks.clear()

        self.sessions.update(sessions)
        self.entries.update(entries)
        for sid in sessions:
            self.entries.setdefault(sid, [])
        self.child_to_parent.update(snapshot.get("child_to_parent_map", {}))

        logger.info(
            f"Restored {len(self.sessions)} session(s) and "
            f"{len(self.child_to_parent)} parent link(s) from snapshot"
        )

    async def cleanup(self, max_age_ms: int) -> int:
        """Delete sessions not updated within ``max_age_ms``. Returns the count."""
        cutoff = now_ms() - max_age_ms
        stale = [sid for sid, s in self.sessions.items() if s.updated_at < cutoff]

        for sid in stale:
            await self.delete_session(sid)

        if stale:
            logger.info(f"Cleaned up {len(stale)} stale session(s)")
        return len(stale)
