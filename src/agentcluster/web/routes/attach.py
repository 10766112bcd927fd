"""Attach endpoints: interactive access to a session's terminal.

Two transports share the same AttachMultiplexer:

- ``WS /attach/{session_id}/ws``: JSON frames in both directions,
- HTTP long-poll: ``POST /attach/{session_id}`` opens a handle, then
  ``GET /attach/handles/{handle_id}/output`` pulls batches of frames and
  ``POST .../input`` / ``POST .../resize`` / ``DELETE`` drive it.

Attach errors map to 404 (unknown session), 409 (another writer holds the
session) and 410 (session already terminated). Over the web socket they
are sent as an ``error`` frame followed by close code ``4000 + status``.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError
from starlette.websockets import WebSocketState

from agentcluster.cluster.attach import AttachMessage, AttachMultiplexer
from agentcluster.cluster.errors import ClusterError
from agentcluster.cluster.manager import SessionManager
from agentcluster.cluster.models import AttachMode
from agentcluster.config import AgentClusterConfig
from agentcluster.logging import get_logger
from agentcluster.web.attachments import AttachmentRegistry
from agentcluster.web.dependencies import get_attachments, get_config
from agentcluster.web.errors import http_error, status_for

logger = get_logger(__name__)


class WebSocketTransport:
    """DuplexTransport over a FastAPI WebSocket carrying JSON frames.

    A peer that drops mid-send ends the stream quietly: ``send`` stops
    writing and ``receive`` reports the end of input.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.disconnected = False

    async def send(self, message: AttachMessage) -> None:
        if self.disconnected or self.websocket.client_state is not WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.send_json(message.model_dump(mode="json", exclude_none=True))
        except (WebSocketDisconnect, RuntimeError) as exc:
            self.disconnected = True
            logger.debug("websocket_send_failed", error=repr(exc))

    async def receive(self) -> AttachMessage | None:
        while not self.disconnected:
            try:
                payload = await self.websocket.receive_json()
            except (WebSocketDisconnect, RuntimeError):
                self.disconnected = True
                return None
            try:
                return AttachMessage.model_validate(payload)
            except ValidationError as exc:
                logger.debug("attach_frame_invalid", error=str(exc))
        return None


class AttachRequest(BaseModel):
    observer_id: str = Field(min_length=1)
    mode: AttachMode = AttachMode.exclusive
    force: bool = False


class AttachResponse(BaseModel):
    handle_id: str
    session_id: str
    observer_id: str
    mode: AttachMode
    generation: int


class PollResponse(BaseModel):
    messages: list[AttachMessage]
    closed: bool


class HandleInput(BaseModel):
    data: str


class HandleResize(BaseModel):
    cols: int = Field(ge=1, le=10000)
    rows: int = Field(ge=1, le=10000)


def create_attach_router() -> APIRouter:
    """Create the attach routes.

    Returns:
        Configured APIRouter with web socket and long-poll attach endpoints.
    """
    router = APIRouter(prefix="/attach", tags=["attach"])

    @router.websocket("/{session_id}/ws")
    async def attach_websocket(
        websocket: WebSocket,
        session_id: str,
        observer_id: str = Query(...),
        mode: AttachMode = Query(AttachMode.exclusive),
        force: bool = Query(False),
    ) -> None:
        manager: SessionManager = websocket.app.state.manager
        await websocket.accept()
        try:
            handle = manager.attach(session_id, observer_id, mode=mode, force=force)
        except ClusterError as exc:
            status_code = status_for(exc)
            logger.info(
                "websocket_attach_rejected",
                session_id=session_id,
                observer_id=observer_id,
                status_code=status_code,
            )
            await websocket.send_json(
                {"type": "error", "status": status_code, "detail": str(exc)}
            )
            await websocket.close(code=4000 + status_code)
            return

        transport = WebSocketTransport(websocket)
        reason: str | None = None
        try:
            reason = await AttachMultiplexer(manager, handle, transport).run()
        except* (WebSocketDisconnect, RuntimeError) as group:
            transport.disconnected = True
            logger.info(
                "websocket_attach_dropped",
                session_id=session_id,
                observer_id=observer_id,
                error=repr(group.exceptions[0]),
            )
        if not transport.disconnected and websocket.client_state is WebSocketState.CONNECTED:
            await websocket.close(code=1000, reason=(reason or "")[:120])

    @router.post("/{session_id}", response_model=AttachResponse, status_code=201)
    async def open_attach(
        session_id: str,
        body: AttachRequest,
        attachments: AttachmentRegistry = Depends(get_attachments),  # noqa: B008
    ) -> dict[str, Any]:
        """Open a long-poll attach handle."""
        try:
            attachment = attachments.open(
                session_id, body.observer_id, mode=body.mode, force=body.force
            )
        except ClusterError as exc:
            raise http_error(exc) from exc
        handle = attachment.handle
        return {
            "handle_id": handle.handle_id,
            "session_id": str(handle.session_id),
            "observer_id": handle.observer_id,
            "mode": handle.mode,
            "generation": handle.generation,
        }

    @router.get("/handles/{handle_id}/output", response_model=PollResponse)
    async def poll_output(
        handle_id: str,
        timeout: float | None = Query(None, gt=0),
        attachments: AttachmentRegistry = Depends(get_attachments),  # noqa: B008
        config: AgentClusterConfig = Depends(get_config),  # noqa: B008
    ) -> dict[str, Any]:
        """Wait for output frames; ``closed`` marks the end of the attach."""
        attachment = attachments.get(handle_id)
        if attachment is None:
            raise HTTPException(status_code=404, detail=f"Attach handle {handle_id} not found")
        limit = config.web.long_poll_timeout_seconds
        wait = min(timeout, limit) if timeout is not None else limit
        messages = await attachments.poll(attachment, wait)
        return {"messages": messages, "closed": attachment.transport.closed}

    @router.post("/handles/{handle_id}/input", status_code=202)
    async def handle_input(
        handle_id: str,
        body: HandleInput,
        attachments: AttachmentRegistry = Depends(get_attachments),  # noqa: B008
    ) -> dict[str, bool]:
        attachment = attachments.get(handle_id)
        if attachment is None:
            raise HTTPException(status_code=404, detail=f"Attach handle {handle_id} not found")
        if attachment.handle.closed:
            raise HTTPException(status_code=410, detail=attachment.handle.close_reason)
        attachments.push(attachment, AttachMessage(type="input", data=body.data))
        return {"accepted": attachment.handle.is_writer}

    @router.post("/handles/{handle_id}/resize", status_code=202)
    async def handle_resize(
        handle_id: str,
        body: HandleResize,
        attachments: AttachmentRegistry = Depends(get_attachments),  # noqa: B008
    ) -> dict[str, bool]:
        attachment = attachments.get(handle_id)
        if attachment is None:
            raise HTTPException(status_code=404, detail=f"Attach handle {handle_id} not found")
        attachments.push(
            attachment, AttachMessage(type="resize", cols=body.cols, rows=body.rows)
        )
        return {"accepted": attachment.handle.is_writer}

    @router.delete("/handles/{handle_id}", status_code=204)
    async def close_handle(
        handle_id: str,
        attachments: AttachmentRegistry = Depends(get_attachments),  # noqa: B008
    ) -> None:
        """Detach. Repeating the call is harmless."""
        await attachments.close(handle_id)

    return router
