"""Unit tests for the attach multiplexer over an in-memory transport."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from agentcluster.cluster.attach import AttachMessage, AttachMultiplexer, QueueTransport
from agentcluster.cluster.manager import SessionManager
from agentcluster.cluster.models import AgentKind, AttachMode, SessionId, SessionState

pytestmark = pytest.mark.pty


async def collect(
    transport: QueueTransport,
    until: Callable[[list[AttachMessage]], bool],
    timeout: float = 5.0,
) -> list[AttachMessage]:
    """Pull outbound messages until ``until`` holds or the stream ends."""
    messages: list[AttachMessage] = []

    async def _pull() -> None:
        while not until(messages) and not transport.closed:
            messages.extend(await transport.pull(timeout=0.1))

    await asyncio.wait_for(_pull(), timeout)
    return messages


def output_text(messages: list[AttachMessage]) -> str:
    return "".join(m.data or "" for m in messages if m.type == "output")


async def _spawn(manager: SessionManager, work_dir: Path, prompt: str) -> SessionId:
    return await manager.create_session("r1", "a", AgentKind.shell, prompt, work_dir)


class TestMultiplexer:
    """Output, input and teardown paths of one attach."""

    @pytest.mark.asyncio
    async def test_interactive_round_trip(
        self, manager: SessionManager, work_dir: Path
    ) -> None:
        sid = await _spawn(manager, work_dir, 'read line; echo "echoed:$line"; sleep 30')
        handle = manager.attach(sid, "alice")
        transport = QueueTransport()
        task = asyncio.create_task(AttachMultiplexer(manager, handle, transport).run())

        transport.push(AttachMessage(type="resize", cols=100, rows=40))
        transport.push(AttachMessage(type="input", data="hello\n"))
        messages = await collect(transport, lambda m: "echoed:hello" in output_text(m))
        assert "echoed:hello" in output_text(messages)
        assert manager.get_session(sid).terminal_size.cols == 100

        transport.push(AttachMessage(type="detach"))
        assert await asyncio.wait_for(task, 5) == "detached"
        assert handle.closed
        assert manager.get_session(sid).state is SessionState.running_detached

    @pytest.mark.asyncio
    async def test_session_exit_ends_attach(
        self, manager: SessionManager, work_dir: Path
    ) -> None:
        sid = await _spawn(manager, work_dir, "sleep 0.2; echo bye")
        handle = manager.attach(sid, "alice")
        transport = QueueTransport()
        task = asyncio.create_task(AttachMultiplexer(manager, handle, transport).run())

        messages = await collect(transport, lambda m: any(x.type == "detached" for x in m))
        await asyncio.wait_for(task, 5)

        assert "bye" in output_text(messages)
        states = [m.state for m in messages if m.type == "state"]
        assert states[-1] is SessionState.completed
        assert messages[-1].type == "detached"
        assert messages[-1].reason == "session ended"
        assert handle.closed

    @pytest.mark.asyncio
    async def test_forced_takeover_revokes_first_observer(
        self, manager: SessionManager, work_dir: Path
    ) -> None:
        sid = await _spawn(manager, work_dir, "sleep 30")
        first = manager.attach(sid, "alice")
        first_transport = QueueTransport()
        first_task = asyncio.create_task(
            AttachMultiplexer(manager, first, first_transport).run()
        )
        await asyncio.sleep(0.05)

        second = manager.attach(sid, "bob", force=True)
        assert await asyncio.wait_for(first_task, 5) == "revoked by bob"
        messages = await collect(first_transport, lambda m: any(x.type == "detached" for x in m))
        assert messages[-1].reason == "revoked by bob"

        session = manager.get_session(sid)
        assert session.writer is second
        assert session.state is SessionState.attached

    @pytest.mark.asyncio
    async def test_read_only_input_dropped(
        self, manager: SessionManager, work_dir: Path
    ) -> None:
        sid = await _spawn(manager, work_dir, 'read line; echo "got:$line"')
        viewer = manager.attach(sid, "viewer", mode=AttachMode.read_only)
        transport = QueueTransport()
        task = asyncio.create_task(AttachMultiplexer(manager, viewer, transport).run())

        transport.push(AttachMessage(type="input", data="sneaky\n"))
        await asyncio.sleep(0.2)
        session = manager.get_session(sid)
        assert "got:" not in session.read_output_snapshot()
        assert session.state is SessionState.running_detached

        transport.close()
        assert await asyncio.wait_for(task, 5) == "observer disconnected"

    @pytest.mark.asyncio
    async def test_replay_sent_first(self, manager: SessionManager, work_dir: Path) -> None:
        sid = await _spawn(manager, work_dir, "echo earlier; sleep 30")
        session = manager.get_session(sid)
        for _ in range(100):
            if "earlier" in session.read_output_snapshot():
                break
            await asyncio.sleep(0.02)

        handle = manager.attach(sid, "alice")
        transport = QueueTransport()
        task = asyncio.create_task(AttachMultiplexer(manager, handle, transport).run())
        messages = await collect(transport, lambda m: len(m) >= 1)
        assert messages[0].type == "output"
        assert messages[0].data == "earlier"

        transport.push(AttachMessage(type="detach"))
        await asyncio.wait_for(task, 5)


class TestQueueTransport:
    @pytest.mark.asyncio
    async def test_pull_batches_and_marks_end(self) -> None:
        transport = QueueTransport()
        await transport.send(AttachMessage(type="output", data="a"))
        await transport.send(AttachMessage(type="output", data="b"))
        transport.outbound.put_nowait(None)

        batch = await transport.pull(timeout=0.1)
        assert [m.data for m in batch] == ["a", "b"]
        assert transport.closed
        await transport.send(AttachMessage(type="output", data="late"))
        assert transport.outbound.empty()

    @pytest.mark.asyncio
    async def test_pull_times_out_empty(self) -> None:
        assert await QueueTransport().pull(timeout=0.01) == []
