"""HTTP, web socket and SSE interface of the agent cluster."""

from __future__ import annotations

from agentcluster.web.app import create_app
from agentcluster.web.middleware import RequestLoggingMiddleware

__all__ = [
    "create_app",
    "RequestLoggingMiddleware",
]
