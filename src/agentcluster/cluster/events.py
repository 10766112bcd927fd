"""Session lifecycle event bus.

Every session state change, output update, attach change and
creation/removal is published on one in-process bus. Each subscriber owns
an unbounded queue filled synchronously by ``publish``, so events of one
session reach every subscriber in the order they happened and a slow
consumer never holds up the publisher or other subscribers.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from agentcluster.cluster.models import SessionId, SessionState
from agentcluster.logging import get_logger

logger = get_logger(__name__)


class SessionEventType(str, Enum):
    """Types of session lifecycle events."""

    created = "created"
    output = "output"
    state_changed = "state_changed"
    attached = "attached"
    detached = "detached"
    blocked = "blocked"
    recovered = "recovered"
    completed = "completed"
    failed = "failed"
    killed = "killed"
    escalated = "escalated"
    removed = "removed"


# Types that describe a transition the executor must react to
LIFECYCLE_EVENT_TYPES: frozenset[SessionEventType] = frozenset(
    {
        SessionEventType.blocked,
        SessionEventType.recovered,
        SessionEventType.completed,
        SessionEventType.failed,
        SessionEventType.killed,
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionEvent(BaseModel):
    """One published event.

    Attributes:
        type: Event type.
        session_id: Session the event belongs to.
        seq: Bus-wide sequence number assigned at publish time.
        timestamp: UTC time of the event.
        old_state: Previous state, for transitions.
        new_state: New state, for transitions.
        reason: Human-readable cause (blockage line, kill reason, ...).
        exit_code: Process exit status for completed/failed.
        observer_id: Observer for attached/detached events.
        generation: Session attach generation when the event was raised.
        data: Decoded output chunk for output events.
    """

    type: SessionEventType
    session_id: SessionId
    seq: int = 0
    timestamp: datetime = Field(default_factory=_utcnow)
    old_state: SessionState | None = None
    new_state: SessionState | None = None
    reason: str | None = None
    exit_code: int | None = None
    observer_id: str | None = None
    generation: int | None = None
    data: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict with the session id in its string form."""
        payload = self.model_dump(mode="json", exclude_none=True)
        payload["session_id"] = str(self.session_id)
        return payload


class EventSubscription:
    """A subscriber's private, ordered view of the bus.

    Usable as an async iterator (ends when closed) and as a context
    manager that closes the subscription on exit.
    """

    def __init__(
        self,
        bus: EventBus,
        run_id: str | None = None,
        types: Iterable[SessionEventType] | None = None,
    ) -> None:
        self._bus = bus
        self.run_id = run_id
        self.types = frozenset(types) if types is not None else None
        self._queue: asyncio.Queue[SessionEvent | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, event: SessionEvent) -> bool:
        if self.run_id is not None and event.session_id.run_id != self.run_id:
            return False
        if self.types is not None and event.type not in self.types:
            return False
        return True

    def _deliver(self, event: SessionEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> SessionEvent | None:
        """Wait for the next event.

        Args:
            timeout: Seconds to wait; None waits indefinitely.

        Returns:
            The next event, or None on timeout or once closed.
        """
        if self._closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                return await self._queue.get()
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def get_nowait(self) -> SessionEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> list[SessionEvent]:
        """Return every queued event without waiting."""
        events: list[SessionEvent] = []
        while (event := self.get_nowait()) is not None:
            events.append(event)
        return events

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Unsubscribe; idempotent. Wakes a consumer blocked in ``get``."""
        if self._closed:
            return
        self._closed = True
        self._bus._unsubscribe(self)
        self._queue.put_nowait(None)

    def __enter__(self) -> EventSubscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __aiter__(self) -> EventSubscription:
        return self

    async def __anext__(self) -> SessionEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """In-process broadcast channel for SessionEvents."""

    def __init__(self) -> None:
        self._subscribers: list[EventSubscription] = []
        self._seq = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(
        self,
        run_id: str | None = None,
        types: Iterable[SessionEventType] | None = None,
    ) -> EventSubscription:
        """Open a new independent subscription.

        Args:
            run_id: Only deliver events of this run.
            types: Only deliver these event types.
        """
        subscription = EventSubscription(self, run_id=run_id, types=types)
        self._subscribers.append(subscription)
        logger.debug(
            "event_subscription_opened",
            run_id=run_id,
            subscribers=len(self._subscribers),
        )
        return subscription

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
            logger.debug(
                "event_subscription_closed", subscribers=len(self._subscribers)
            )

    def publish(self, event: SessionEvent) -> SessionEvent:
        """Stamp the event with a sequence number and fan it out.

        Never awaits, so callers may publish in the middle of a state change
        without yielding to the loop.
        """
        event.seq = next(self._seq)
        for subscription in list(self._subscribers):
            if subscription.matches(event):
                subscription._deliver(event)
        return event

    def close_all(self) -> None:
        """Close every subscription, ending their iterators."""
        for subscription in list(self._subscribers):
            subscription.close()
