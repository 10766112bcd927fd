"""Agent session endpoints.

Listing, inspection and administrative control of live sessions:

- ``GET /sessions`` with optional run, state and agent kind filters
- ``POST /sessions`` to spawn a standalone session
- ``GET /sessions/{session_id}`` and ``GET /sessions/{session_id}/output``
- ``POST /sessions/{session_id}/input``, ``/resize``, ``/kill``,
  ``/block`` and ``/recover``
- ``DELETE /sessions/{session_id}`` to reap a terminated session

Session ids appear in paths in their ``<run_id>:<task_id>`` form.
"""

from __future__ import annotations

import signal
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from agentcluster.cluster.errors import ClusterError
from agentcluster.cluster.manager import SessionManager
from agentcluster.cluster.models import (
    AgentKind,
    SessionFilter,
    SessionState,
    SessionSummary,
    TerminalSize,
)
from agentcluster.logging import get_logger
from agentcluster.web.dependencies import get_manager
from agentcluster.web.errors import http_error

logger = get_logger(__name__)


class SessionCreate(BaseModel):
    """Request body for spawning a session outside any run plan."""

    run_id: str = Field(min_length=1)
    task_id: str = Field(min_length=1)
    agent_kind: AgentKind = AgentKind.shell
    prompt: str
    work_dir: Path
    upstream_context: str = ""
    cols: int = Field(default=80, ge=1, le=10000)
    rows: int = Field(default=24, ge=1, le=10000)


class InputRequest(BaseModel):
    text: str
    newline: bool = Field(default=False, description="Append a carriage return")


class ResizeRequest(BaseModel):
    cols: int = Field(ge=1, le=10000)
    rows: int = Field(ge=1, le=10000)


class KillRequest(BaseModel):
    reason: str | None = None
    force: bool = Field(default=False, description="Send SIGKILL immediately")


class BlockRequest(BaseModel):
    reason: str = "marked blocked by operator"


class OutputResponse(BaseModel):
    session_id: str
    state: SessionState
    output: str


class ActionResponse(BaseModel):
    session_id: str
    state: SessionState
    changed: bool


def create_sessions_router() -> APIRouter:
    """Create the session routes.

    Returns:
        Configured APIRouter with session endpoints.
    """
    router = APIRouter(prefix="/sessions", tags=["sessions"])

    @router.get("", response_model=list[SessionSummary])
    async def list_sessions_endpoint(
        run_id: str | None = Query(None, description="Filter by run id"),
        state: list[SessionState] | None = Query(None, description="Filter by state"),
        agent_kind: AgentKind | None = Query(None, description="Filter by agent kind"),
        manager: SessionManager = Depends(get_manager),  # noqa: B008
    ) -> list[SessionSummary]:
        """List sessions, oldest first. Never fails for an empty registry."""
        session_filter = SessionFilter(
            run_id=run_id,
            states=set(state) if state else None,
            agent_kind=agent_kind,
        )
        sessions = manager.list_sessions(session_filter)
        logger.debug("sessions_listed", count=len(sessions), run_id=run_id)
        return sessions

    @router.post("", response_model=SessionSummary, status_code=201)
    async def create_session_endpoint(
        body: SessionCreate,
        manager: SessionManager = Depends(get_manager),  # noqa: B008
    ) -> SessionSummary:
        """Spawn a session and return its summary.

        Raises:
            HTTPException: 409 if the id is live, 422 if the spawn failed,
                503 if the session limit is reached.
        """
        try:
            sid = await manager.create_session(
                run_id=body.run_id,
                task_id=body.task_id,
                kind=body.agent_kind,
                prompt=body.prompt,
                work_dir=body.work_dir,
                upstream_context=body.upstream_context,
                terminal_size=TerminalSize(cols=body.cols, rows=body.rows),
            )
        except ClusterError as exc:
            logger.warning("create_session_failed", error=str(exc), task_id=body.task_id)
            raise http_error(exc) from exc
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return manager.get_session(sid).summary()

    @router.get("/{session_id}", response_model=SessionSummary)
    async def get_session_endpoint(
        session_id: str,
        manager: SessionManager = Depends(get_manager),  # noqa: B008
    ) -> SessionSummary:
        try:
            return manager.get_session(session_id).summary()
        except ClusterError as exc:
            raise http_error(exc) from exc

    @router.get("/{session_id}/output", response_model=OutputResponse)
    async def get_output_endpoint(
        session_id: str,
        tail: int | None = Query(None, ge=1, description="Only the last N lines"),
        manager: SessionManager = Depends(get_manager),  # noqa: B008
    ) -> dict[str, Any]:
        """Buffered output, ANSI stripped. Available after termination too."""
        try:
            session = manager.get_session(session_id)
        except ClusterError as exc:
            raise http_error(exc) from exc
        output = session.read_output_snapshot()
        if tail is not None:
            output = "\n".join(output.splitlines()[-tail:])
        return {"session_id": str(session.id), "state": session.state, "output": output}

    @router.post("/{session_id}/input", response_model=ActionResponse)
    async def send_input_endpoint(
        session_id: str,
        body: InputRequest,
        manager: SessionManager = Depends(get_manager),  # noqa: B008
    ) -> dict[str, Any]:
        """One-shot input; ``changed`` is False if the process already exited."""
        text = body.text + "\r" if body.newline else body.text
        try:
            accepted = manager.send_input(session_id, text)
            session = manager.get_session(session_id)
        except ClusterError as exc:
            raise http_error(exc) from exc
        return {"session_id": str(session.id), "state": session.state, "changed": accepted}

    @router.post("/{session_id}/resize", response_model=ActionResponse)
    async def resize_endpoint(
        session_id: str,
        body: ResizeRequest,
        manager: SessionManager = Depends(get_manager),  # noqa: B008
    ) -> dict[str, Any]:
        try:
            changed = manager.resize(session_id, body.cols, body.rows)
            session = manager.get_session(session_id)
        except ClusterError as exc:
            raise http_error(exc) from exc
        return {"session_id": str(session.id), "state": session.state, "changed": changed}

    @router.post("/{session_id}/kill", response_model=ActionResponse)
    async def kill_endpoint(
        session_id: str,
        body: KillRequest | None = None,
        manager: SessionManager = Depends(get_manager),  # noqa: B008
    ) -> dict[str, Any]:
        """Terminate a session. Killing a finished session is a no-op."""
        body = body or KillRequest()
        signal_kind = signal.SIGKILL if body.force else signal.SIGTERM
        try:
            changed = await manager.kill(
                session_id, reason=body.reason or "killed via API", signal_kind=signal_kind
            )
            session = manager.get_session(session_id)
        except ClusterError as exc:
            raise http_error(exc) from exc
        logger.info("session_kill_requested", session_id=session_id, changed=changed)
        return {"session_id": str(session.id), "state": session.state, "changed": changed}

    @router.post("/{session_id}/block", response_model=ActionResponse)
    async def block_endpoint(
        session_id: str,
        body: BlockRequest | None = None,
        manager: SessionManager = Depends(get_manager),  # noqa: B008
    ) -> dict[str, Any]:
        body = body or BlockRequest()
        try:
            changed = manager.mark_blocked(session_id, body.reason)
            session = manager.get_session(session_id)
        except ClusterError as exc:
            raise http_error(exc) from exc
        return {"session_id": str(session.id), "state": session.state, "changed": changed}

    @router.post("/{session_id}/recover", response_model=ActionResponse)
    async def recover_endpoint(
        session_id: str,
        manager: SessionManager = Depends(get_manager),  # noqa: B008
    ) -> dict[str, Any]:
        """Clear a blocked state after the operator resolved the prompt."""
        try:
            changed = manager.mark_recovered(session_id)
            session = manager.get_session(session_id)
        except ClusterError as exc:
            raise http_error(exc) from exc
        return {"session_id": str(session.id), "state": session.state, "changed": changed}

    @router.delete("/{session_id}", status_code=204)
    async def reap_endpoint(
        session_id: str,
        manager: SessionManager = Depends(get_manager),  # noqa: B008
    ) -> None:
        """Remove a terminated session from the registry.

        Raises:
            HTTPException: 404 if unknown, 409 if the session is still alive.
        """
        try:
            removed = manager.reap(session_id)
        except ClusterError as exc:
            raise http_error(exc) from exc
        if not removed:
            raise HTTPException(status_code=409, detail=f"Session {session_id} is still alive")

    return router
