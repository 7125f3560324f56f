"""Run lifecycle management and cancellation support."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from .backends.base import BackendHandle

logger = logging.getLogger(__name__)


class RunController:
    """
    Tracks the live agent run of each session.

    Each run has:
    - The backend handle producing its events
    - The asyncio task applying those events
    - A start timestamp for listing

    Sessions that were stopped are remembered so that messages still in
    flight from their backend can be dropped.
    """

    def __init__(self):
        self._handles: Dict[str, BackendHandle] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._timestamps: Dict[str, datetime] = {}
        self._stopped: Set[str] = set()

    def register_run(self, session_id: str, handle: BackendHandle, task: asyncio.Task) -> None:
        """
        Record a newly started run.

        Args:
            session_id: Internal session id
            handle: Backend handle of the run
            task: Task consuming ``handle.events()``
        """
        self._handles[session_id] = handle
        self._tasks[session_id] = task
        self._timestamps[session_id] = datetime.now(timezone.utc)
        self.clear_stopped(session_id)
        logger.info(f"Registered run for session {session_id} ({handle.kind.value})")

    def get_handle(self, session_id: str) -> Optional[BackendHandle]:
        return self._handles.get(session_id)

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    def is_stopped(self, session_id: str) -> bool:
        """True once ``stop`` was called and no new run has started since."""
        return session_id in self._stopped

    def clear_stopped(self, session_id: str) -> None:
        """Accept messages for the session again, e.g. for a new run attempt."""
        self._stopped.discard(session_id)

    async def stop(self, session_id: str) -> bool:
        """
        Stop the session's run: terminate the backend, then cancel its task.

        Returns:
            True if a run was active
        """
        self._stopped.add(session_id)
        handle = self._handles.get(session_id)
        task = self._tasks.get(session_id)
        was_running = task is not None and not task.done()

        if handle is not None:
            try:
                await handle.stop()
            except Exception as e:
                logger.warning(f"Error stopping backend for session {session_id}: {e}")

        if was_running and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Run of session {session_id} ended with {type(e).__name__}: {e}")

        self.finish_run(session_id)
        if was_running:
            logger.info(f"Stopped run for session {session_id}")
        return was_running

    def finish_run(self, session_id: str, task: Optional[asyncio.Task] = None) -> None:
        """
        Drop bookkeeping for a finished run.

        When ``task`` is given, only forget the run if it is still the
        registered one, so a run that finishes late cannot evict its successor.
        """
        if task is not None and self._tasks.get(session_id) is not task:
            return
        self._handles.pop(session_id, None)
        self._tasks.pop(session_id, None)
        self._timestamps.pop(session_id, None)

    def forget(self, session_id: str) -> None:
        """Remove every trace of a deleted session."""
        self.finish_run(session_id)
        self._stopped.discard(session_id)

    def list_active_runs(self) -> Dict[str, dict]:
        """Return all active runs with metadata."""
        return {
            session_id: {
                "backend": self._handles[session_id].kind.value,
                "backend_session_id": self._handles[session_id].backend_session_id,
                "started": self._timestamps[session_id].isoformat(),
            }
            for session_id, task in self._tasks.items()
            if not task.done() and session_id in self._handles
        }

    async def stop_all(self) -> None:
        for session_id in list(self._tasks):
            await self.stop(session_id)
