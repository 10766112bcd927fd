"""Unit tests for AgentSession running real processes on a PTY."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import pytest
import pytest_asyncio

from agentcluster.cluster.errors import InvalidTransitionError, SpawnError
from agentcluster.cluster.events import EventBus, SessionEventType
from agentcluster.cluster.models import AgentKind, SessionId, SessionState, TerminalSize
from agentcluster.cluster.session import AgentSession, compose_prompt
from agentcluster.config import AgentClusterConfig, AgentCommandConfig, MonitorConfig

pytestmark = pytest.mark.pty

SHELL = AgentCommandConfig(command="/bin/sh", args=["-c", "{prompt}"], inject_context=False)

SessionFactory = Callable[..., AgentSession]


async def wait_for_state(
    session: AgentSession, state: SessionState, timeout: float = 5.0
) -> None:
    async def _poll() -> None:
        while session.state is not state:
            await asyncio.sleep(0.02)

    await asyncio.wait_for(_poll(), timeout)


@pytest_asyncio.fixture
async def make_session(
    config: AgentClusterConfig, event_bus: EventBus, work_dir: Path
) -> AsyncGenerator[SessionFactory, None]:
    """Build sessions against the test config; all are killed on teardown."""
    created: list[AgentSession] = []

    def _make(
        prompt: str,
        task_id: str = "task",
        agent: AgentCommandConfig = SHELL,
        **kwargs,
    ) -> AgentSession:
        kwargs.setdefault("work_dir", work_dir)
        kwargs.setdefault("session_config", config.session)
        kwargs.setdefault("monitor_config", config.monitor)
        session = AgentSession(
            session_id=SessionId(run_id="run1", task_id=task_id),
            agent_kind=AgentKind.shell,
            prompt=prompt,
            agent=agent,
            events=event_bus,
            **kwargs,
        )
        created.append(session)
        return session

    yield _make

    for session in created:
        await session.terminate(reason="test teardown")
        if session.pid is not None:
            await session.wait(timeout=5)


class TestSpawn:
    """Process creation and spawn failures."""

    @pytest.mark.asyncio
    async def test_missing_work_dir(self, make_session: SessionFactory, tmp_path: Path) -> None:
        session = make_session("true", work_dir=tmp_path / "absent")
        with pytest.raises(SpawnError, match="Working directory does not exist"):
            await session.spawn()
        assert session.state is SessionState.failed
        assert session.done

    @pytest.mark.asyncio
    async def test_missing_executable(self, make_session: SessionFactory) -> None:
        agent = AgentCommandConfig(command="agentcluster-no-such-binary")
        session = make_session("hello", agent=agent)
        with pytest.raises(SpawnError, match="Executable not found") as exc_info:
            await session.spawn()
        assert exc_info.value.session_id == session.id

    @pytest.mark.asyncio
    async def test_spawn_twice(self, make_session: SessionFactory) -> None:
        session = make_session("sleep 5")
        await session.spawn()
        with pytest.raises(SpawnError, match="already spawned"):
            await session.spawn()

    @pytest.mark.asyncio
    async def test_environment_and_geometry(self, make_session: SessionFactory) -> None:
        session = make_session(
            'stty size; printf "%s/%s\\n" "$AGENTCLUSTER_RUN_ID" "$AGENTCLUSTER_TASK_ID"',
            terminal_size=TerminalSize(cols=123, rows=45),
        )
        await session.spawn()
        assert await session.wait(timeout=5) is SessionState.completed
        output = session.read_output_snapshot()
        assert "45 123" in output
        assert "run1/task" in output


class TestCompletion:
    @pytest.mark.asyncio
    async def test_exit_zero_completes(
        self, make_session: SessionFactory, event_bus: EventBus
    ) -> None:
        subscription = event_bus.subscribe(types=[SessionEventType.completed])
        session = make_session("echo hello from pty")
        await session.spawn()

        assert session.pid is not None
        assert await session.wait(timeout=5) is SessionState.completed
        assert session.exit_code == 0
        assert "hello from pty" in session.read_output_snapshot()
        assert not session.is_running
        event = await subscription.get(timeout=1)
        assert event is not None
        assert event.exit_code == 0

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails(self, make_session: SessionFactory) -> None:
        session = make_session("echo partial; exit 3")
        await session.spawn()
        assert await session.wait(timeout=5) is SessionState.failed
        assert session.exit_code == 3
        assert session.state_reason == "exit code 3"
        assert "partial" in session.read_output_snapshot()

    @pytest.mark.asyncio
    async def test_prompt_written_as_input(self, make_session: SessionFactory) -> None:
        agent = AgentCommandConfig(command="/bin/sh", prompt_as_input=True)
        session = make_session("echo via-input; exit 0", agent=agent)
        await session.spawn()
        assert await session.wait(timeout=5) is SessionState.completed
        assert "via-input" in session.read_output_snapshot()

    @pytest.mark.asyncio
    async def test_context_injected_into_prompt(self, make_session: SessionFactory) -> None:
        agent = AgentCommandConfig(command="/bin/sh", args=["-c", "{prompt}"])
        session = make_session("summarize", agent=agent, upstream_context="## Output from a:\nA")
        assert session.initial_prompt == compose_prompt("summarize", "## Output from a:\nA")
        assert session.build_argv() == ["/bin/sh", "-c", "summarize\n\n## Output from a:\nA\n"]


class TestTermination:
    @pytest.mark.asyncio
    async def test_terminate_is_idempotent(self, make_session: SessionFactory) -> None:
        session = make_session("sleep 30")
        await session.spawn()
        await wait_for_state(session, SessionState.running_detached)

        assert await session.terminate(reason="stop")
        assert session.state is SessionState.killed
        assert session.state_reason == "stop"
        assert await session.wait(timeout=5) is SessionState.killed
        assert session.exit_code is not None and session.exit_code < 0
        assert not await session.terminate()

    @pytest.mark.asyncio
    async def test_escalates_to_sigkill(
        self, make_session: SessionFactory, config: AgentClusterConfig
    ) -> None:
        session_config = config.session.model_copy(update={"terminate_grace_seconds": 0.2})
        session = make_session(
            "trap '' TERM; echo ready; sleep 30", session_config=session_config
        )
        await session.spawn()
        for _ in range(100):
            if "ready" in session.read_output_snapshot():
                break
            await asyncio.sleep(0.02)

        await session.terminate()
        assert await session.wait(timeout=5) is SessionState.killed
        assert session.exit_code == -9

    @pytest.mark.asyncio
    async def test_input_after_exit_is_rejected(self, make_session: SessionFactory) -> None:
        session = make_session("true")
        await session.spawn()
        await session.wait(timeout=5)
        assert not session.send_input("ignored\n")


class TestBlockage:
    """Blockage detection and recovery through the output monitor."""

    @pytest.mark.asyncio
    async def test_prompt_blocks_and_input_recovers(
        self, make_session: SessionFactory, event_bus: EventBus
    ) -> None:
        subscription = event_bus.subscribe(
            types=[SessionEventType.blocked, SessionEventType.recovered]
        )
        session = make_session(
            "printf 'Continue? [y/N] '; read answer; echo \"got $answer\""
        )
        await session.spawn()
        await wait_for_state(session, SessionState.blocked)
        assert session.state_reason == "Continue? [y/N]"

        assert session.mark_recovered()
        assert session.state is SessionState.running_detached
        assert session.send_input("y\n")
        assert await session.wait(timeout=5) is SessionState.completed
        assert "got y" in session.read_output_snapshot()

        types = [event.type for event in subscription.drain()]
        assert types == [SessionEventType.blocked, SessionEventType.recovered]

    @pytest.mark.asyncio
    async def test_blocked_session_can_be_killed(self, make_session: SessionFactory) -> None:
        session = make_session("printf 'Password: '; read secret")
        await session.spawn()
        await wait_for_state(session, SessionState.blocked)
        assert await session.terminate(reason="operator gave up")
        assert await session.wait(timeout=5) is SessionState.killed

    @pytest.mark.asyncio
    async def test_recovery_prompt_sent_on_operator_recovery(
        self, make_session: SessionFactory
    ) -> None:
        session = make_session(
            "printf 'Continue? [y/N] '; read answer; echo \"got $answer\"",
            monitor_config=MonitorConfig(
                check_interval_seconds=0.05, auto_recovery=True, recovery_prompt="y\n"
            ),
        )
        await session.spawn()
        await wait_for_state(session, SessionState.blocked)

        assert session.mark_recovered("operator recovery")
        assert await session.wait(timeout=5) is SessionState.completed
        assert "got y" in session.read_output_snapshot()

    @pytest.mark.asyncio
    async def test_resumed_output_recovers_automatically(
        self, make_session: SessionFactory
    ) -> None:
        session = make_session(
            "printf 'Continue? [y/N] '; sleep 0.5; echo moving on; sleep 5",
            monitor_config=MonitorConfig(
                check_interval_seconds=0.05, auto_recovery=True, recovery_prompt=None
            ),
        )
        await session.spawn()
        await wait_for_state(session, SessionState.blocked)
        await wait_for_state(session, SessionState.running_detached)
        assert session.state_reason == "output resumed"

    @pytest.mark.asyncio
    async def test_recover_only_from_blocked(self, make_session: SessionFactory) -> None:
        session = make_session("sleep 5")
        await session.spawn()
        assert not session.mark_recovered()
        assert session.mark_blocked("manual")
        assert not session.mark_blocked("again")


class TestTaps:
    @pytest.mark.asyncio
    async def test_tap_receives_output_then_state(self, make_session: SessionFactory) -> None:
        session = make_session("sleep 0.1; echo tapped")
        await session.spawn()
        tap = session.open_tap()

        chunks: list[bytes] = []
        states: list[SessionState | None] = []
        while (message := await asyncio.wait_for(tap.get(), 5)) is not None:
            if message.kind == "output":
                chunks.append(message.data)
            else:
                states.append(message.state)

        assert b"tapped" in b"".join(chunks)
        assert states == [SessionState.completed]
        assert session.open_tap().closed


class TestStateMachine:
    @pytest.mark.asyncio
    async def test_invalid_transition_rejected(self, make_session: SessionFactory) -> None:
        session = make_session("sleep 5")
        with pytest.raises(InvalidTransitionError):
            session._transition(SessionState.attached)

    @pytest.mark.asyncio
    async def test_summary(self, make_session: SessionFactory) -> None:
        session = make_session("echo summary")
        await session.spawn()
        await session.wait(timeout=5)
        summary = session.summary()
        assert summary.id == "run1:task"
        assert summary.state is SessionState.completed
        assert summary.exit_code == 0
        assert summary.runtime_seconds >= 0
        assert "summary" in summary.output_preview[-1]
