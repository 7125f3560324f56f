"""Custom exception classes for Edge Orchestrator."""

from typing import Optional


class OrchestratorError(Exception):
    """Base exception for Edge Orchestrator errors."""

    def __init__(self, message: str, code: str = "internal", detail: str = ""):
        self.message = message
        self.code = code
        self.detail = detail
        super().__init__(message)


class SessionError(OrchestratorError):
    """Errors related to the session registry."""

    pass


class DuplicateSessionError(SessionError):
    """A session with the same id is already registered."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            f"Session with ID {session_id} already exists", code="duplicate_session"
        )


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}", code="session_not_found")


class EntryIndexOutOfBoundsError(SessionError):
    """Entry index does not address an existing transcript entry."""

    def __init__(self, session_id: str, index: int, length: int):
        self.session_id = session_id
        self.index = index
        self.length = length
        super().__init__(
            f"Entry index {index} out of bounds for session {session_id} (length: {length})",
            code="entry_index_out_of_bounds",
        )


class SnapshotVersionError(SessionError):
    """Persisted snapshot was written in an unsupported format."""

    def __init__(self, version: Optional[str]):
        self.version = version
        super().__init__(
            f"Unsupported snapshot version: {version}", code="snapshot_version"
        )


class RoutingError(OrchestratorError):
    """Errors related to repository routing."""

    pass


class RoutingCollaboratorError(RoutingError):
    """An issue tracker lookup failed while evaluating a routing tier."""

    def __init__(self, tier: str, cause: BaseException):
        self.tier = tier
        self.cause = cause
        super().__init__(
            f"Routing tier '{tier}' failed: {cause}",
            code="routing_collaborator_failure",
            detail=type(cause).__name__,
        )


class SelectionPostingError(RoutingError):
    """Posting the interactive repository choice failed."""

    def __init__(self, session_id: str, cause: BaseException):
        self.session_id = session_id
        self.cause = cause
        super().__init__(
            f"Failed to display repository selection: {cause}",
            code="selection_posting_failure",
        )


class BackendError(OrchestratorError):
    """Errors originating from an agent backend."""

    pass


class BackendFatalError(BackendError):
    """The backend run cannot continue."""

    def __init__(self, message: str = "Backend execution failed"):
        super().__init__(message, code="backend_fatal")


class BackendNonFatalError(BackendError):
    """The backend reported a problem but keeps running."""

    def __init__(self, message: str = "Backend reported an error"):
        super().__init__(message, code="backend_non_fatal")


class BackendUnavailableError(BackendError):
    """Backend executable or server could not be reached."""

    def __init__(self, backend: str, detail: str = ""):
        super().__init__(
            f"{backend} backend is not available", code="backend_unavailable", detail=detail
        )


class StreamingInputUnsupportedError(BackendError):
    """Backend cannot accept input while a run is in progress."""

    def __init__(self, backend: str):
        super().__init__(
            f"{backend} backend does not support streaming input",
            code="streaming_input_unsupported",
        )
