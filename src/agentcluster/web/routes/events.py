"""Server-Sent Events endpoint streaming session lifecycle events."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, Protocol

from fastapi import APIRouter, Depends, Query, Request
from sse_starlette.sse import EventSourceResponse

from agentcluster.cluster.events import EventSubscription, SessionEventType
from agentcluster.cluster.manager import SessionManager
from agentcluster.logging import get_logger
from agentcluster.web.dependencies import get_manager

logger = get_logger(__name__)

# How often the generator wakes to notice a vanished client
DISCONNECT_CHECK_SECONDS = 1.0


class DisconnectProbe(Protocol):
    async def is_disconnected(self) -> bool: ...


async def event_stream(
    subscription: EventSubscription,
    probe: DisconnectProbe,
) -> AsyncIterator[dict[str, Any]]:
    """Yield SSE dicts for a subscription until the client or bus goes away.

    The subscription is closed when the generator finishes.
    """
    logger.info("sse_client_connected")
    try:
        while True:
            event = await subscription.get(timeout=DISCONNECT_CHECK_SECONDS)
            if event is None:
                if subscription.closed or await probe.is_disconnected():
                    break
                continue
            yield {
                "event": event.type.value,
                "id": str(event.seq),
                "data": json.dumps(event.to_payload()),
            }
    finally:
        subscription.close()
        logger.info("sse_client_disconnected")


def create_events_router() -> APIRouter:
    """Create the events router with the SSE streaming endpoint.

    Returns:
        FastAPI router serving ``/events/stream``.
    """
    router = APIRouter(prefix="/events", tags=["events"])

    @router.get("/stream")
    async def stream_events(
        request: Request,
        run_id: str | None = Query(None, description="Only events of this run"),
        types: list[SessionEventType] | None = Query(  # noqa: B008
            None, description="Only these event types"
        ),
        manager: SessionManager = Depends(get_manager),  # noqa: B008
    ) -> EventSourceResponse:
        """Stream session events as they are published.

        Output chunks are included unless ``types`` narrows the selection,
        so dashboards usually ask for lifecycle types only.
        """
        subscription = manager.subscribe(run_id=run_id, types=types)
        return EventSourceResponse(event_stream(subscription, request))

    return router
