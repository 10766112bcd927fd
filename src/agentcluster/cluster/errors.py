"""Exception hierarchy for the session cluster.

Spawn and attach failures are raised to the caller. Process exit and
blockage are never raised: they surface as session states and events.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentcluster.cluster.models import SessionId, SessionState


class ClusterError(Exception):
    """Base class for recoverable cluster errors."""


class SpawnError(ClusterError):
    """Raised when a session's PTY or process could not be created.

    Attributes:
        session_id: Session that failed to spawn, when known.
    """

    def __init__(self, message: str, session_id: SessionId | None = None):
        self.session_id = session_id
        if session_id is not None:
            message = f"{message} (session {session_id})"
        super().__init__(message)


class SessionAlreadyExistsError(SpawnError):
    """Raised when a live session already holds the requested id."""

    def __init__(self, session_id: SessionId):
        super().__init__("Session is already running", session_id)


class SessionLimitError(SpawnError):
    """Raised when the registry holds its maximum number of sessions."""

    def __init__(self, limit: int, session_id: SessionId | None = None):
        self.limit = limit
        super().__init__(f"Session limit of {limit} reached", session_id)


class SessionNotFoundError(ClusterError):
    """Raised when no session is registered under the given id."""

    def __init__(self, session_id: SessionId | str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class AlreadyAttachedError(ClusterError):
    """Raised when an exclusive attach is requested while another is held.

    Attributes:
        session_id: The contested session.
        holder: Observer id of the current exclusive writer.
    """

    def __init__(self, session_id: SessionId, holder: str):
        self.session_id = session_id
        self.holder = holder
        super().__init__(
            f"Session {session_id} is already exclusively attached by {holder}"
        )


class SessionClosedError(ClusterError):
    """Raised when a write-capable operation targets a terminated session."""

    def __init__(self, session_id: SessionId, state: SessionState):
        self.session_id = session_id
        self.state = state
        super().__init__(f"Session {session_id} is {state.value}")


class InvalidTransitionError(ClusterError):
    """Raised when a session state change is not an allowed edge.

    Attributes:
        current: The current session state.
        target: The attempted target state.
        session_id: The session that failed to transition.
    """

    def __init__(
        self,
        current: SessionState,
        target: SessionState,
        session_id: SessionId | None = None,
    ):
        self.current = current
        self.target = target
        self.session_id = session_id
        msg = f"Invalid transition from {current.value} to {target.value}"
        if session_id is not None:
            msg += f" for session {session_id}"
        super().__init__(msg)


class GraphError(ClusterError):
    """Raised for malformed task graphs (cycles, unknown dependencies)."""


class RegistryInvariantError(RuntimeError):
    """The session registry reached an impossible state.

    A programming error, not a ClusterError; it is never caught by the
    cluster itself.
    """
