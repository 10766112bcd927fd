"""Unit tests for the session event bus."""

from __future__ import annotations

import asyncio

import pytest

from agentcluster.cluster.events import (
    EventBus,
    SessionEvent,
    SessionEventType,
)
from agentcluster.cluster.models import SessionId, SessionState


def _event(
    event_type: SessionEventType, run_id: str = "r1", task_id: str = "a"
) -> SessionEvent:
    return SessionEvent(
        type=event_type, session_id=SessionId(run_id=run_id, task_id=task_id)
    )


class TestEventBus:
    """Fan-out, filtering and ordering."""

    @pytest.mark.asyncio
    async def test_every_subscriber_sees_events_in_order(self) -> None:
        bus = EventBus()
        first = bus.subscribe()
        second = bus.subscribe()
        for event_type in (
            SessionEventType.created,
            SessionEventType.blocked,
            SessionEventType.recovered,
        ):
            bus.publish(_event(event_type))

        for subscription in (first, second):
            types = [event.type for event in subscription.drain()]
            assert types == [
                SessionEventType.created,
                SessionEventType.blocked,
                SessionEventType.recovered,
            ]

    @pytest.mark.asyncio
    async def test_sequence_numbers_increase(self) -> None:
        bus = EventBus()
        a = bus.publish(_event(SessionEventType.created))
        b = bus.publish(_event(SessionEventType.output))
        assert 0 < a.seq < b.seq

    @pytest.mark.asyncio
    async def test_run_and_type_filters(self) -> None:
        bus = EventBus()
        subscription = bus.subscribe(
            run_id="r1", types=[SessionEventType.completed, SessionEventType.failed]
        )
        bus.publish(_event(SessionEventType.completed, run_id="r2"))
        bus.publish(_event(SessionEventType.output, run_id="r1"))
        bus.publish(_event(SessionEventType.failed, run_id="r1", task_id="b"))

        events = subscription.drain()
        assert len(events) == 1
        assert events[0].type is SessionEventType.failed
        assert events[0].session_id.task_id == "b"

    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_lose_events(self) -> None:
        bus = EventBus()
        subscription = bus.subscribe()
        for _ in range(500):
            bus.publish(_event(SessionEventType.output))
        assert subscription.pending() == 500

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self) -> None:
        bus = EventBus()
        subscription = bus.subscribe()
        assert bus.subscriber_count == 1
        subscription.close()
        subscription.close()
        assert bus.subscriber_count == 0
        bus.publish(_event(SessionEventType.created))
        assert await subscription.get(timeout=0.01) is None


class TestSubscription:
    @pytest.mark.asyncio
    async def test_get_times_out(self) -> None:
        subscription = EventBus().subscribe()
        assert await subscription.get(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_close_wakes_waiting_consumer(self) -> None:
        bus = EventBus()
        subscription = bus.subscribe()
        waiter = asyncio.create_task(subscription.get())
        await asyncio.sleep(0)
        bus.close_all()
        assert await asyncio.wait_for(waiter, timeout=1) is None

    @pytest.mark.asyncio
    async def test_async_iteration_ends_on_close(self) -> None:
        bus = EventBus()
        subscription = bus.subscribe()
        bus.publish(_event(SessionEventType.created))
        bus.publish(_event(SessionEventType.removed))
        subscription.close()

        received = [event.type async for event in subscription]
        assert received == [SessionEventType.created, SessionEventType.removed]

    def test_payload_uses_string_session_id(self) -> None:
        event = SessionEvent(
            type=SessionEventType.state_changed,
            session_id=SessionId(run_id="r1", task_id="a"),
            old_state=SessionState.running_detached,
            new_state=SessionState.blocked,
        )
        payload = event.to_payload()
        assert payload["session_id"] == "r1:a"
        assert payload["old_state"] == "running_detached"
        assert payload["new_state"] == "blocked"
        assert "exit_code" not in payload
