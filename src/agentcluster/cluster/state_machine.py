"""Session lifecycle state machine.

The transition table below is authoritative: every state change of an
AgentSession is checked against it, and terminal states have no exits.
"""

from __future__ import annotations

from agentcluster.cluster.errors import InvalidTransitionError
from agentcluster.cluster.models import SessionId, SessionState

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.spawning: {
        SessionState.running_detached,
        SessionState.failed,
        SessionState.killed,
    },
    SessionState.running_detached: {
        SessionState.attached,
        SessionState.blocked,
        SessionState.completed,
        SessionState.failed,
        SessionState.killed,
    },
    SessionState.attached: {
        SessionState.running_detached,
        SessionState.blocked,
        SessionState.completed,
        SessionState.failed,
        SessionState.killed,
    },
    SessionState.blocked: {
        SessionState.running_detached,
        SessionState.completed,
        SessionState.failed,
        SessionState.killed,
    },
    SessionState.completed: set(),
    SessionState.failed: set(),
    SessionState.killed: set(),
}


def validate_transition(current: SessionState, target: SessionState) -> bool:
    """Return True if ``current -> target`` is an allowed edge."""
    return target in VALID_TRANSITIONS.get(current, set())


def check_transition(
    current: SessionState,
    target: SessionState,
    session_id: SessionId | None = None,
) -> None:
    """Validate a transition.

    Raises:
        InvalidTransitionError: If the edge is not allowed.
    """
    if not validate_transition(current, target):
        raise InvalidTransitionError(current, target, session_id)
