"""Unit tests for the WebSocket attach transport when the peer drops."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
from fastapi import WebSocketDisconnect
from starlette.websockets import WebSocketState

from agentcluster.cluster.attach import AttachMessage, AttachMultiplexer
from agentcluster.cluster.manager import SessionManager
from agentcluster.cluster.models import AgentKind, SessionState
from agentcluster.web.routes.attach import WebSocketTransport


class DroppingWebSocket:
    """Fails the first send the way starlette does after an abrupt close."""

    def __init__(self, error: Exception) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.error = error
        self._dropped = asyncio.Event()

    async def send_json(self, data: dict[str, Any]) -> None:
        self._dropped.set()
        raise self.error

    async def receive_json(self) -> dict[str, Any]:
        await self._dropped.wait()
        raise WebSocketDisconnect(code=1006)


class TestWebSocketTransport:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [WebSocketDisconnect(code=1006), RuntimeError("WebSocket is not connected")],
    )
    async def test_failed_send_marks_disconnected(self, error: Exception) -> None:
        transport = WebSocketTransport(DroppingWebSocket(error))  # type: ignore[arg-type]
        await transport.send(AttachMessage(type="output", data="hi"))
        assert transport.disconnected
        assert await transport.receive() is None

    @pytest.mark.asyncio
    async def test_no_send_after_disconnect(self) -> None:
        websocket = DroppingWebSocket(WebSocketDisconnect(code=1006))
        transport = WebSocketTransport(websocket)  # type: ignore[arg-type]
        transport.disconnected = True
        await transport.send(AttachMessage(type="output", data="hi"))
        assert not websocket._dropped.is_set()

    @pytest.mark.pty
    @pytest.mark.asyncio
    async def test_multiplexer_survives_dropped_peer(
        self, manager: SessionManager, work_dir: Path
    ) -> None:
        sid = await manager.create_session(
            "r1", "a", AgentKind.shell, "echo first; sleep 30", work_dir
        )
        for _ in range(250):
            if "first" in manager.get_output(sid):
                break
            await asyncio.sleep(0.02)
        handle = manager.attach(sid, "alice")
        transport = WebSocketTransport(
            DroppingWebSocket(WebSocketDisconnect(code=1006))  # type: ignore[arg-type]
        )

        reason = await asyncio.wait_for(
            AttachMultiplexer(manager, handle, transport).run(), timeout=5
        )

        assert reason == "observer disconnected"
        assert handle.closed
        assert manager.get_session(sid).writer is None
        assert manager.get_session(sid).state is SessionState.running_detached
