"""Mapping of cluster errors to HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException

from agentcluster.cluster.errors import (
    AlreadyAttachedError,
    ClusterError,
    GraphError,
    SessionAlreadyExistsError,
    SessionClosedError,
    SessionLimitError,
    SessionNotFoundError,
    SpawnError,
)

# Checked in order; subclasses first
_STATUS_CODES: list[tuple[type[ClusterError], int]] = [
    (SessionNotFoundError, 404),
    (AlreadyAttachedError, 409),
    (SessionAlreadyExistsError, 409),
    (SessionLimitError, 503),
    (SessionClosedError, 410),
    (SpawnError, 422),
    (GraphError, 400),
]


def status_for(exc: ClusterError) -> int:
    for exc_type, status_code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 400


def http_error(exc: ClusterError) -> HTTPException:
    """HTTPException carrying the error message as detail."""
    return HTTPException(status_code=status_for(exc), detail=str(exc))
