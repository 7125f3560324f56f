"""Abstract base classes for agent backends."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, AsyncIterator, List, Optional

from ..exceptions import StreamingInputUnsupportedError
from ..models.messages import AssistantMessage, CanonicalMessage
from ..models.session import BackendKind


class SessionState(Enum):
    """Backend session state."""
    NOT_STARTED = "not_started"      # No backend session id yet
    ESTABLISHED = "established"      # Backend announced its session id
    ENDED = "ended"                  # Run finished or was stopped


class BackendAdapter(ABC):
    """
    Translates one backend's native events into canonical messages.

    An adapter instance serves a single run and may keep per-run state (tool
    ids already announced, last usage snapshot). Streamed text deltas are
    emitted one message per delta sharing a ``message_id``; folding them into
    one turn is the caller's job (see ``accumulate_assistant``).
    """

    kind: BackendKind

    @abstractmethod
    def translate(
        self,
        event: Any,
        session_id: Optional[str],
        last_assistant: Optional[AssistantMessage] = None,
    ) -> Optional[CanonicalMessage]:
        """
        Translate one native event.

        Args:
            event: Native event (decoded JSON object or SDK message)
            session_id: Backend session id known so far, None if not yet announced
            last_assistant: Most recent assistant turn, used to synthesize results

        Returns:
            Canonical message, or None when the event has no canonical meaning
        """

    @abstractmethod
    def extract_session_id(self, event: Any) -> Optional[str]:
        """Backend session id carried by ``event``, if any."""

    def translate_many(
        self,
        event: Any,
        session_id: Optional[str],
        last_assistant: Optional[AssistantMessage] = None,
    ) -> List[CanonicalMessage]:
        """All messages for one native event, in order."""
        message = self.translate(event, session_id, last_assistant)
        return [message] if message is not None else []


class BackendHandle(ABC):
    """
    Live process or connection running one agent turn.

    Implementations:
    - Claude Agent SDK client (in-process, accepts input mid-run)
    - Gemini / Codex / Cursor CLI subprocesses (line-delimited JSON)
    - OpenCode server (SSE event stream)
    """

    kind: BackendKind
    supports_streaming_input: bool = False

    def __init__(self, workspace_path: str, resume_session_id: Optional[str] = None):
        self.workspace_path = workspace_path
        self._session_state = SessionState.NOT_STARTED
        self._backend_session_id: Optional[str] = None

        if resume_session_id:
            self.set_backend_session_id(resume_session_id)

    @property
    def session_state(self) -> SessionState:
        return self._session_state

    @property
    def backend_session_id(self) -> Optional[str]:
        return self._backend_session_id

    @property
    def has_established_session(self) -> bool:
        return self._session_state == SessionState.ESTABLISHED and self._backend_session_id is not None

    def set_backend_session_id(self, session_id: str) -> None:
        """Record the session id once the backend announces it."""
        self._backend_session_id = session_id
        self._session_state = SessionState.ESTABLISHED

    def mark_ended(self) -> None:
        self._session_state = SessionState.ENDED

    @property
    def is_running(self) -> bool:
        return self._session_state != SessionState.ENDED

    @abstractmethod
    def events(self) -> AsyncIterator[Any]:
        """
        Start the run and yield native events until it finishes.

        Raises:
            BackendUnavailableError: Executable or server could not be reached
            BackendFatalError: The run failed before producing a terminal event
        """

    async def send(self, prompt: str) -> None:
        """Feed more input into the running turn."""
        raise StreamingInputUnsupportedError(self.kind.value)

    @abstractmethod
    async def stop(self) -> None:
        """Terminate the process/connection. Safe to call more than once."""
