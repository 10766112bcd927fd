"""Integration tests for the Server-Sent Events stream.

The generator behind ``/events/stream`` is driven directly: an
EventSourceResponse never ends on its own, and ASGITransport buffers the
whole body, so streaming it through the HTTP client would hang.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from agentcluster.cluster.events import EventBus, SessionEvent, SessionEventType
from agentcluster.cluster.manager import SessionManager
from agentcluster.cluster.models import AgentKind, SessionId, SessionState
from agentcluster.web.routes import events as events_module
from agentcluster.web.routes.events import event_stream


class FakeProbe:
    """Stands in for the starlette Request's disconnect check."""

    def __init__(self, disconnected: bool = False) -> None:
        self.disconnected = disconnected
        self.calls = 0

    async def is_disconnected(self) -> bool:
        self.calls += 1
        return self.disconnected


async def drain(stream: Any, timeout: float = 5.0) -> list[dict[str, Any]]:
    async def _collect() -> list[dict[str, Any]]:
        return [item async for item in stream]

    return await asyncio.wait_for(_collect(), timeout)


def _event(
    event_type: SessionEventType, run_id: str = "r1", task_id: str = "a", **fields: Any
) -> SessionEvent:
    sid = SessionId(run_id=run_id, task_id=task_id)
    return SessionEvent(type=event_type, session_id=sid, **fields)


class TestEventStream:
    """Formatting and termination of the SSE generator."""

    @pytest.mark.asyncio
    async def test_events_formatted_in_order(self, event_bus: EventBus) -> None:
        subscription = event_bus.subscribe()
        event_bus.publish(_event(SessionEventType.created))
        event_bus.publish(
            _event(
                SessionEventType.blocked,
                old_state=SessionState.running_detached,
                new_state=SessionState.blocked,
                reason="Continue? [y/N]",
            )
        )
        subscription.close()

        items = await drain(event_stream(subscription, FakeProbe()))

        assert [item["event"] for item in items] == ["created", "blocked"]
        assert [item["id"] for item in items] == ["1", "2"]
        data = json.loads(items[1]["data"])
        assert data["session_id"] == "r1:a"
        assert data["reason"] == "Continue? [y/N]"
        assert data["new_state"] == "blocked"
        assert "exit_code" not in data

    @pytest.mark.asyncio
    async def test_disconnect_ends_stream(
        self, event_bus: EventBus, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(events_module, "DISCONNECT_CHECK_SECONDS", 0.01)
        subscription = event_bus.subscribe()
        probe = FakeProbe(disconnected=True)

        assert await drain(event_stream(subscription, probe)) == []
        assert probe.calls == 1
        assert subscription.closed
        assert event_bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_idle_stream_keeps_waiting(
        self, event_bus: EventBus, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(events_module, "DISCONNECT_CHECK_SECONDS", 0.01)
        subscription = event_bus.subscribe()
        probe = FakeProbe()
        stream = event_stream(subscription, probe)

        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0.1)
        assert not pending.done()
        assert probe.calls > 1

        event_bus.publish(_event(SessionEventType.recovered))
        item = await asyncio.wait_for(pending, 1)
        assert item["event"] == "recovered"
        await stream.aclose()
        assert subscription.closed

    @pytest.mark.asyncio
    async def test_filters_apply(self, event_bus: EventBus) -> None:
        subscription = event_bus.subscribe(run_id="r2", types=[SessionEventType.killed])
        event_bus.publish(_event(SessionEventType.killed))
        event_bus.publish(_event(SessionEventType.output, run_id="r2", task_id="x"))
        event_bus.publish(_event(SessionEventType.killed, run_id="r2", task_id="x"))
        subscription.close()

        items = await drain(event_stream(subscription, FakeProbe()))
        assert len(items) == 1
        assert json.loads(items[0]["data"])["session_id"] == "r2:x"


@pytest.mark.pty
class TestLiveSessionEvents:
    @pytest.mark.asyncio
    async def test_session_lifecycle_streamed(
        self, manager: SessionManager, work_dir: Path
    ) -> None:
        subscription = manager.subscribe(
            types=[SessionEventType.created, SessionEventType.completed]
        )
        stream = event_stream(subscription, FakeProbe())

        await manager.create_session("r1", "a", AgentKind.shell, "echo hi", work_dir)
        first = await asyncio.wait_for(stream.__anext__(), 5)
        second = await asyncio.wait_for(stream.__anext__(), 5)
        await stream.aclose()

        assert (first["event"], second["event"]) == ("created", "completed")
        assert json.loads(second["data"])["exit_code"] == 0
        assert int(second["id"]) > int(first["id"])
