"""Long-poll attachments.

A long-poll observer has no persistent connection, so the server keeps
the multiplexer running in a background task with a QueueTransport.
Requests then push input into, and pull output out of, that transport by
handle id.

Any request naming a handle renews its lease. A handle whose client has
not been heard from for ``idle_seconds`` is detached by a periodic sweep,
which frees the exclusive writer slot of a client that vanished.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from agentcluster.cluster.attach import (
    AttachHandle,
    AttachMessage,
    AttachMultiplexer,
    QueueTransport,
)
from agentcluster.cluster.manager import SessionManager
from agentcluster.cluster.models import AttachMode, SessionId
from agentcluster.logging import get_logger

logger = get_logger(__name__)

IDLE_REASON = "long-poll client idle"


@dataclass
class PolledAttachment:
    handle: AttachHandle
    transport: QueueTransport
    task: asyncio.Task[str | None]
    last_polled_at: float = field(default_factory=time.monotonic)
    polling: bool = False

    @property
    def finished(self) -> bool:
        return self.task.done() and self.transport.closed


class AttachmentRegistry:
    """Background multiplexers of long-poll observers, keyed by handle id.

    Args:
        manager: Session manager the handles belong to.
        idle_seconds: Lease length; None keeps handles until detached.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        manager: SessionManager,
        idle_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.manager = manager
        self.idle_seconds = idle_seconds
        self._clock = clock
        self._attachments: dict[str, PolledAttachment] = {}
        self._sweeper: asyncio.Task[None] | None = None
        self._logger = logger.bind(component="AttachmentRegistry")

    def start(self) -> None:
        """Start the idle sweep; a no-op without a lease."""
        if self.idle_seconds is None or self._sweeper is not None:
            return
        self._sweeper = asyncio.create_task(self._sweep(), name="attachment-sweeper")

    async def _sweep(self) -> None:
        assert self.idle_seconds is not None
        interval = max(self.idle_seconds / 4, 0.05)
        while True:
            await asyncio.sleep(interval)
            self.expire_idle()

    def expire_idle(self) -> int:
        """Detach every attachment whose lease has run out.

        Returns:
            Number of attachments detached.
        """
        if self.idle_seconds is None:
            return 0
        now = self._clock()
        expired = [
            a for a in self._attachments.values()
            if not a.polling and now - a.last_polled_at >= self.idle_seconds
        ]
        for attachment in expired:
            handle = attachment.handle
            self._attachments.pop(handle.handle_id, None)
            self.manager.detach(handle, IDLE_REASON)
            attachment.transport.close()
            self._logger.info(
                "attachment_expired",
                session_id=str(handle.session_id),
                observer_id=handle.observer_id,
                idle_seconds=round(now - attachment.last_polled_at, 1),
            )
        return len(expired)

    def open(
        self,
        session_id: SessionId | str,
        observer_id: str,
        mode: AttachMode = AttachMode.exclusive,
        force: bool = False,
    ) -> PolledAttachment:
        """Attach and start pumping into a queue transport.

        Expired leases are released first, so a vanished writer does not
        block a new one until the next sweep.

        Raises:
            SessionNotFoundError, AlreadyAttachedError, SessionClosedError:
                From ``SessionManager.attach``.
        """
        self.expire_idle()
        handle = self.manager.attach(session_id, observer_id, mode=mode, force=force)
        transport = QueueTransport()
        multiplexer = AttachMultiplexer(self.manager, handle, transport)
        task = asyncio.create_task(
            self._pump(multiplexer, transport), name=f"attach-{handle.handle_id}"
        )
        attachment = PolledAttachment(
            handle=handle, transport=transport, task=task, last_polled_at=self._clock()
        )
        self._attachments[handle.handle_id] = attachment
        return attachment

    async def _pump(self, multiplexer: AttachMultiplexer, transport: QueueTransport) -> str | None:
        try:
            return await multiplexer.run()
        finally:
            # End of stream for pollers; the record stays until drained
            transport.outbound.put_nowait(None)

    def get(self, handle_id: str) -> PolledAttachment | None:
        """Look up a live attachment and renew its lease."""
        attachment = self._attachments.get(handle_id)
        if attachment is None:
            return None
        if attachment.finished:
            del self._attachments[handle_id]
            return None
        attachment.last_polled_at = self._clock()
        return attachment

    async def poll(self, attachment: PolledAttachment, timeout: float) -> list[AttachMessage]:
        attachment.polling = True
        try:
            messages = await attachment.transport.pull(timeout)
        finally:
            attachment.polling = False
            attachment.last_polled_at = self._clock()
        if attachment.transport.closed:
            self._attachments.pop(attachment.handle.handle_id, None)
        return messages

    def push(self, attachment: PolledAttachment, message: AttachMessage) -> None:
        attachment.transport.push(message)

    async def close(self, handle_id: str) -> bool:
        """Detach a long-poll observer. Returns False for unknown handles."""
        attachment = self._attachments.pop(handle_id, None)
        if attachment is None:
            return self.manager.detach(handle_id)
        attachment.transport.push(AttachMessage(type="detach"))
        try:
            await asyncio.wait_for(asyncio.shield(attachment.task), timeout=2.0)
        except asyncio.TimeoutError:
            attachment.task.cancel()
        return True

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        attachments = list(self._attachments.values())
        self._attachments.clear()
        for attachment in attachments:
            attachment.transport.close()
        if attachments:
            await asyncio.gather(*(a.task for a in attachments), return_exceptions=True)
            self._logger.info("attachments_closed", count=len(attachments))
