"""Local terminal side of an attach.

``LocalTerminalTransport`` turns the controlling terminal into a
DuplexTransport: keystrokes and ``SIGWINCH`` become inbound messages,
outbound output is written straight to stdout. ``Ctrl-]`` detaches.
The same transport serves an in-process attach (``attach_local``) and a
remote one bridged over HTTP long-poll (``attach_remote``).
"""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
import sys
import termios
import tty
from collections.abc import Iterator
from contextlib import contextmanager
from typing import BinaryIO

from agentcluster.cli.client import ClientError, ClusterClient
from agentcluster.cluster.attach import AttachMessage, AttachMultiplexer
from agentcluster.cluster.manager import SessionManager
from agentcluster.cluster.models import AttachMode, SessionId
from agentcluster.logging import get_logger

logger = get_logger(__name__)

DETACH_KEY = b"\x1d"  # Ctrl-]
DETACH_HINT = "Ctrl-]"


def terminal_size() -> tuple[int, int]:
    size = shutil.get_terminal_size((80, 24))
    return size.columns, size.lines


@contextmanager
def raw_terminal(fd: int) -> Iterator[None]:
    """Put a tty into raw mode for the duration; no-op for non-ttys."""
    if not os.isatty(fd):
        yield
        return
    saved = termios.tcgetattr(fd)
    tty.setraw(fd)
    try:
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


class LocalTerminalTransport:
    """DuplexTransport over local stdin/stdout.

    Args:
        stdin_fd: File descriptor to read keystrokes from.
        stdout: Binary stream receiving session output.
    """

    def __init__(self, stdin_fd: int | None = None, stdout: BinaryIO | None = None) -> None:
        self.stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self.stdout = stdout or sys.stdout.buffer
        self._inbound: asyncio.Queue[AttachMessage | None] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._started = False

    def start(self) -> None:
        """Begin watching stdin and window size changes."""
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(self.stdin_fd, self._on_stdin)
        try:
            self._loop.add_signal_handler(signal.SIGWINCH, self._on_resize)
        except (NotImplementedError, RuntimeError):
            logger.debug("sigwinch_unavailable")
        self._started = True
        self._on_resize()

    def stop(self) -> None:
        if not self._started or self._loop is None:
            return
        self._started = False
        self._loop.remove_reader(self.stdin_fd)
        try:
            self._loop.remove_signal_handler(signal.SIGWINCH)
        except (NotImplementedError, RuntimeError):
            pass

    def _on_stdin(self) -> None:
        try:
            data = os.read(self.stdin_fd, 1024)
        except OSError:
            data = b""
        if not data:
            # EOF stays readable; stop watching
            if self._loop is not None:
                self._loop.remove_reader(self.stdin_fd)
            self._inbound.put_nowait(None)
            return
        before, sep, _ = data.partition(DETACH_KEY)
        if before:
            self._inbound.put_nowait(
                AttachMessage(type="input", data=before.decode("utf-8", errors="replace"))
            )
        if sep:
            self._inbound.put_nowait(AttachMessage(type="detach"))

    def _on_resize(self) -> None:
        cols, rows = terminal_size()
        self._inbound.put_nowait(AttachMessage(type="resize", cols=cols, rows=rows))

    async def send(self, message: AttachMessage) -> None:
        if message.type == "output" and message.data:
            self._write(message.data)
        elif message.type == "state" and message.state is not None:
            suffix = f" ({message.reason})" if message.reason else ""
            self._write(f"\r\n[agentcluster] {message.state.value}{suffix}\r\n")
        elif message.type == "detached":
            self._write(f"\r\n[agentcluster] detached: {message.reason or 'closed'}\r\n")

    def _write(self, text: str) -> None:
        self.stdout.write(text.encode("utf-8", errors="replace"))
        self.stdout.flush()

    async def receive(self) -> AttachMessage | None:
        return await self._inbound.get()


async def attach_local(
    manager: SessionManager,
    session_id: SessionId | str,
    observer_id: str = "local-terminal",
    mode: AttachMode = AttachMode.exclusive,
    force: bool = False,
    transport: LocalTerminalTransport | None = None,
) -> str | None:
    """Attach the local terminal to an in-process session.

    Returns:
        Reason the attach ended.
    """
    handle = manager.attach(session_id, observer_id, mode=mode, force=force)
    transport = transport or LocalTerminalTransport()
    with raw_terminal(transport.stdin_fd):
        transport.start()
        try:
            return await AttachMultiplexer(manager, handle, transport).run()
        finally:
            transport.stop()


async def attach_remote(
    client: ClusterClient,
    session_id: str,
    observer_id: str,
    read_only: bool = False,
    force: bool = False,
    poll_wait: float = 10.0,
    transport: LocalTerminalTransport | None = None,
) -> str:
    """Bridge the local terminal to a server-side attach over long-poll.

    Raises:
        ClientError: If the attach cannot be opened.

    Returns:
        Reason the attach ended.
    """
    opened = await client.open_attach(session_id, observer_id, read_only=read_only, force=force)
    handle_id = opened["handle_id"]
    transport = transport or LocalTerminalTransport()
    reason = "detached"

    async def pump_output() -> str:
        while True:
            messages, closed = await client.poll_output(handle_id, poll_wait)
            for message in messages:
                await transport.send(message)
                if message.type == "detached":
                    return message.reason or "session ended"
            if closed:
                return "session ended"

    async def pump_input() -> str:
        while True:
            message = await transport.receive()
            if message is None or message.type == "detach":
                return "detached"
            if message.type == "input" and message.data:
                await client.push_input(handle_id, message.data)
            elif message.type == "resize" and message.cols and message.rows:
                await client.push_resize(handle_id, message.cols, message.rows)

    with raw_terminal(transport.stdin_fd):
        transport.start()
        try:
            output = asyncio.create_task(pump_output())
            inbound = asyncio.create_task(pump_input())
            done, pending = await asyncio.wait(
                {output, inbound}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            reason = done.pop().result()
        finally:
            transport.stop()
            try:
                await client.close_attach(handle_id)
            except ClientError as e:
                logger.debug("attach_close_failed", handle_id=handle_id, error=str(e))
    return reason
