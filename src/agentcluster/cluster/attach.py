"""Attach handles and the transport-agnostic attach multiplexer.

An attach binds one observer to one session. The multiplexer turns an
AttachHandle plus any DuplexTransport (web socket, HTTP long-poll queue,
local terminal) into two pumps:

- output: replay of recent buffered lines, then live chunks and state
  changes from the session's tap,
- input: keystrokes, resizes and detach requests from the observer.

Whatever ends first (observer detach or disconnect, session exit, forced
takeover) tears both pumps down and detaches the handle. Nothing is sent
to the transport after that.
"""

from __future__ import annotations

import asyncio
import codecs
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Literal, Protocol

from pydantic import BaseModel

from agentcluster.cluster.models import AttachMode, SessionId, SessionState
from agentcluster.cluster.session import OutputTap
from agentcluster.logging import get_logger

if TYPE_CHECKING:
    from agentcluster.cluster.manager import SessionManager

logger = get_logger(__name__)

MessageType = Literal["output", "state", "input", "resize", "detach", "detached"]


class AttachMessage(BaseModel):
    """One frame of the attach protocol.

    Outbound: ``output`` (data), ``state`` (state, reason), ``detached``
    (reason). Inbound: ``input`` (data), ``resize`` (cols, rows),
    ``detach``.
    """

    type: MessageType
    data: str | None = None
    state: SessionState | None = None
    reason: str | None = None
    cols: int | None = None
    rows: int | None = None


@dataclass(eq=False)
class AttachHandle:
    """One observer's binding to one session.

    Attributes:
        handle_id: Unique handle identifier.
        session_id: Attached session.
        observer_id: Who attached (user, client, terminal).
        mode: exclusive writer or read-only observer.
        generation: Session attach generation at the time of attach.
        tap: Live feed opened at attach time.
        replay: Recent output captured together with the tap.
        closed: Set once the handle has been detached or revoked.
        close_reason: Why the handle was closed.
    """

    handle_id: str
    session_id: SessionId
    observer_id: str
    mode: AttachMode
    generation: int
    tap: OutputTap
    replay: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    closed: bool = False
    revoked: bool = False
    close_reason: str | None = None

    @property
    def is_writer(self) -> bool:
        return self.mode is AttachMode.exclusive


class DuplexTransport(Protocol):
    """Bidirectional message channel to one observer."""

    async def send(self, message: AttachMessage) -> None: ...

    async def receive(self) -> AttachMessage | None:
        """Next inbound message, or None when the peer went away."""
        ...


class QueueTransport:
    """In-memory transport backed by two queues.

    Used by the HTTP long-poll endpoints: requests push inbound messages
    and pull batches of outbound ones while the multiplexer runs in the
    background.
    """

    def __init__(self) -> None:
        self.inbound: asyncio.Queue[AttachMessage | None] = asyncio.Queue()
        self.outbound: asyncio.Queue[AttachMessage | None] = asyncio.Queue()
        self.closed = False

    async def send(self, message: AttachMessage) -> None:
        if not self.closed:
            self.outbound.put_nowait(message)

    async def receive(self) -> AttachMessage | None:
        return await self.inbound.get()

    def push(self, message: AttachMessage) -> None:
        if not self.closed:
            self.inbound.put_nowait(message)

    async def pull(self, timeout: float, max_messages: int = 256) -> list[AttachMessage]:
        """Wait up to ``timeout`` for outbound messages and return a batch.

        Returns an empty list on timeout; stops at the end-of-stream marker.
        """
        messages: list[AttachMessage] = []
        try:
            first = await asyncio.wait_for(self.outbound.get(), timeout)
        except asyncio.TimeoutError:
            return messages
        if first is None:
            self.closed = True
            return messages
        messages.append(first)
        while len(messages) < max_messages:
            try:
                item = self.outbound.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is None:
                self.closed = True
                break
            messages.append(item)
        return messages

    def close(self) -> None:
        """Signal end of stream in both directions."""
        self.inbound.put_nowait(None)
        self.outbound.put_nowait(None)


class AttachMultiplexer:
    """Pumps data between one AttachHandle and one transport.

    Args:
        manager: Session manager owning the handle.
        handle: Handle returned by ``SessionManager.attach``.
        transport: Observer channel.
    """

    def __init__(
        self,
        manager: SessionManager,
        handle: AttachHandle,
        transport: DuplexTransport,
    ) -> None:
        self.manager = manager
        self.handle = handle
        self.transport = transport
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._torn_down = False
        self._logger = logger.bind(
            component="AttachMultiplexer",
            session_id=str(handle.session_id),
            observer_id=handle.observer_id,
        )

    async def run(self) -> str | None:
        """Pump until either side ends, then detach.

        Returns:
            The reason the attach ended.
        """
        self._logger.info("attach_started", mode=self.handle.mode.value)
        try:
            if self.handle.replay:
                await self._send(AttachMessage(type="output", data=self.handle.replay))
            async with asyncio.TaskGroup() as tg:
                output = tg.create_task(self._pump_output())
                inbound = tg.create_task(self._pump_input())
                await asyncio.wait({output, inbound}, return_when=asyncio.FIRST_COMPLETED)
                self._torn_down = True
                output.cancel()
                inbound.cancel()
        finally:
            self._torn_down = True
            self.manager.detach(self.handle)
        reason = self.handle.close_reason
        self._logger.info("attach_ended", reason=reason)
        return reason

    async def _send(self, message: AttachMessage) -> None:
        if not self._torn_down:
            await self.transport.send(message)

    async def _pump_output(self) -> None:
        tap = self.handle.tap
        while True:
            item = await tap.get()
            if item is None:
                reason = self.handle.close_reason or "session ended"
                await self._send(AttachMessage(type="detached", reason=reason))
                return
            if item.kind == "output":
                text = self._decoder.decode(item.data)
                if text:
                    await self._send(AttachMessage(type="output", data=text))
            else:
                await self._send(
                    AttachMessage(type="state", state=item.state, reason=item.reason)
                )

    async def _pump_input(self) -> None:
        while True:
            message = await self.transport.receive()
            if message is None:
                self.handle.close_reason = self.handle.close_reason or "observer disconnected"
                return
            if message.type == "detach":
                self.handle.close_reason = self.handle.close_reason or "detached"
                return
            if not self.handle.is_writer:
                self._logger.debug("read_only_input_dropped", type=message.type)
                continue
            if message.type == "input" and message.data:
                self.manager.write(self.handle, message.data)
            elif message.type == "resize" and message.cols and message.rows:
                self.manager.resize_attached(self.handle, message.cols, message.rows)
