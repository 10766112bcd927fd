"""FastAPI dependencies reading the services kept on ``app.state``."""

from __future__ import annotations

from fastapi import Request

from agentcluster.cluster.manager import SessionManager
from agentcluster.config import AgentClusterConfig
from agentcluster.context.store import ContextStore
from agentcluster.web.attachments import AttachmentRegistry
from agentcluster.web.runs import RunRegistry


def get_config(request: Request) -> AgentClusterConfig:
    return request.app.state.config  # type: ignore[no-any-return]


def get_manager(request: Request) -> SessionManager:
    return request.app.state.manager  # type: ignore[no-any-return]


def get_store(request: Request) -> ContextStore:
    return request.app.state.store  # type: ignore[no-any-return]


def get_runs(request: Request) -> RunRegistry:
    return request.app.state.runs  # type: ignore[no-any-return]


def get_attachments(request: Request) -> AttachmentRegistry:
    return request.app.state.attachments  # type: ignore[no-any-return]
