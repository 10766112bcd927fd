"""FastAPI route definitions."""

from __future__ import annotations

from agentcluster.web.routes.attach import WebSocketTransport, create_attach_router
from agentcluster.web.routes.events import create_events_router, event_stream
from agentcluster.web.routes.health import (
    HealthResponse,
    ReadinessResponse,
    create_health_router,
)
from agentcluster.web.routes.runs import RunResponse, create_runs_router
from agentcluster.web.routes.sessions import SessionCreate, create_sessions_router

__all__ = [
    # Attach
    "WebSocketTransport",
    "create_attach_router",
    # Events / SSE
    "create_events_router",
    "event_stream",
    # Health
    "HealthResponse",
    "ReadinessResponse",
    "create_health_router",
    # Runs
    "RunResponse",
    "create_runs_router",
    # Sessions
    "SessionCreate",
    "create_sessions_router",
]
