"""Agent session cluster: PTY sessions, registry, attach and scheduling."""

from agentcluster.cluster.errors import (
    AlreadyAttachedError,
    ClusterError,
    GraphError,
    InvalidTransitionError,
    RegistryInvariantError,
    SessionAlreadyExistsError,
    SessionClosedError,
    SessionLimitError,
    SessionNotFoundError,
    SpawnError,
)
from agentcluster.cluster.models import (
    AgentKind,
    AttachMode,
    SessionFilter,
    SessionId,
    SessionState,
    SessionSummary,
    TerminalSize,
)

__all__ = [
    "AgentKind",
    "AlreadyAttachedError",
    "AttachMode",
    "ClusterError",
    "GraphError",
    "InvalidTransitionError",
    "RegistryInvariantError",
    "SessionAlreadyExistsError",
    "SessionClosedError",
    "SessionFilter",
    "SessionId",
    "SessionLimitError",
    "SessionNotFoundError",
    "SessionState",
    "SessionSummary",
    "SpawnError",
    "TerminalSize",
]
