"""A single interactive agent process running inside a pseudo-terminal.

Each AgentSession owns one PTY pair and one child process. The child runs
in its own session with the PTY slave as controlling terminal, so job
control signals and window-size changes behave as in a real terminal.

Once spawned, one supervisor task runs a TaskGroup of:

- the PTY reader, feeding the bounded OutputBuffer and live taps,
- the PTY writer, draining the input queue,
- the OutputMonitor, sampling the buffer for blockage signatures,

and waits for the process to exit. Cancelling the supervisor tears the
whole group down, kills the process group and closes the PTY.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import fcntl
import os
import pty
import shutil
import signal
import struct
import termios
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

from agentcluster.cluster.buffer import OutputBuffer
from agentcluster.cluster.errors import SpawnError
from agentcluster.cluster.events import EventBus, SessionEvent, SessionEventType
from agentcluster.cluster.models import (
    AgentKind,
    SessionId,
    SessionState,
    SessionSummary,
    TerminalSize,
)
from agentcluster.cluster.monitor import OutputMonitor
from agentcluster.cluster.state_machine import check_transition
from agentcluster.config import AgentCommandConfig, MonitorConfig, SessionConfig
from agentcluster.logging import bind_session_context, get_logger

if TYPE_CHECKING:
    from agentcluster.cluster.attach import AttachHandle

logger = get_logger(__name__)

_READ_CHUNK = 65536
_MAX_READS_PER_WAKEUP = 16

_STATE_EVENTS: dict[SessionState, SessionEventType] = {
    SessionState.blocked: SessionEventType.blocked,
    SessionState.completed: SessionEventType.completed,
    SessionState.failed: SessionEventType.failed,
    SessionState.killed: SessionEventType.killed,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compose_prompt(prompt: str, upstream_context: str) -> str:
    """Task prompt followed by the rendered upstream context, if any."""
    if not upstream_context.strip():
        return prompt
    return f"{prompt}\n\n{upstream_context.strip()}\n"


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); fd 0 is the PTY slave.
    with contextlib.suppress(OSError):
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _set_winsize(fd: int, size: TerminalSize) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", size.rows, size.cols, 0, 0))


# ----------------------------------------------------------------------
# Output taps
# ----------------------------------------------------------------------


@dataclass
class TapMessage:
    """One item delivered to an observer tap."""

    kind: str  # "output" or "state"
    data: bytes = b""
    state: SessionState | None = None
    reason: str | None = None


class OutputTap:
    """Live feed of one observer: raw output chunks and state changes.

    Bounded: while an observer is more than ``maxsize`` messages behind,
    new output chunks are dropped and counted. State messages are never
    dropped.
    """

    def __init__(self, maxsize: int = 1024) -> None:
        self._queue: asyncio.Queue[TapMessage | None] = asyncio.Queue()
        self._maxsize = maxsize
        self.dropped = 0
        self.closed = False

    def put_output(self, data: bytes) -> None:
        if self.closed:
            return
        if self._queue.qsize() >= self._maxsize:
            self.dropped += 1
            return
        self._queue.put_nowait(TapMessage(kind="output", data=data))

    def put_state(self, state: SessionState, reason: str | None = None) -> None:
        if not self.closed:
            self._queue.put_nowait(TapMessage(kind="state", state=state, reason=reason))

    def close(self) -> None:
        """Stop accepting messages and wake the consumer; idempotent."""
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)

    async def get(self) -> TapMessage | None:
        """Next message, or None once the tap is closed and drained."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def get_nowait(self) -> TapMessage | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None


# ----------------------------------------------------------------------
# Session
# ----------------------------------------------------------------------


class AgentSession:
    """One agent process, its PTY and its observers.

    Args:
        session_id: Composite (run_id, task_id) identity.
        agent_kind: Which agent command to run.
        prompt: Task prompt.
        work_dir: Working directory of the process.
        agent: Launch configuration for ``agent_kind``.
        events: Bus that receives this session's lifecycle events.
        session_config: Buffer, terminal and termination settings.
        monitor_config: Blockage detection settings.
        upstream_context: Rendered outputs of dependency tasks.
        terminal_size: Initial geometry (defaults to the configured size).
    """

    def __init__(
        self,
        session_id: SessionId,
        agent_kind: AgentKind,
        prompt: str,
        work_dir: Path,
        agent: AgentCommandConfig,
        events: EventBus,
        session_config: SessionConfig | None = None,
        monitor_config: MonitorConfig | None = None,
        upstream_context: str = "",
        terminal_size: TerminalSize | None = None,
    ) -> None:
        self.config = session_config or SessionConfig()
        self.id = session_id
        self.agent_kind = agent_kind
        self.prompt = prompt
        self.upstream_context = upstream_context
        self.work_dir = Path(work_dir)
        self.agent = agent
        self.terminal_size = terminal_size or TerminalSize(
            cols=self.config.terminal_cols, rows=self.config.terminal_rows
        )
        self._events = events

        self.state = SessionState.spawning
        self.state_reason: str | None = None
        self.exit_code: int | None = None
        self.pid: int | None = None
        self.created_at = _utcnow()
        self.started_at: datetime | None = None
        self.last_active_at: datetime | None = None
        self.finished_at: datetime | None = None
        self.generation = 0

        # Attach slot: at most one exclusive writer, any number of observers
        self.writer: AttachHandle | None = None
        self.observers: dict[str, AttachHandle] = {}

        self.buffer = OutputBuffer(
            max_lines=self.config.buffer_max_lines,
            max_bytes=self.config.buffer_max_bytes,
        )
        self.monitor = OutputMonitor(self.buffer, monitor_config or MonitorConfig())

        self._process: asyncio.subprocess.Process | None = None
        self._master_fd: int | None = None
        self._input: asyncio.Queue[bytes] = asyncio.Queue()
        self._taps: set[OutputTap] = set()
        self._supervisor: asyncio.Task[None] | None = None
        self._done = asyncio.Event()
        self._logger = logger.bind(component="AgentSession", session_id=str(session_id))

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def initial_prompt(self) -> str:
        """Prompt as delivered to the process."""
        if self.agent.inject_context:
            return compose_prompt(self.prompt, self.upstream_context)
        return self.prompt

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def build_argv(self) -> list[str]:
        """Command line for this session, with ``{prompt}`` substituted."""
        prompt = self.initial_prompt
        return [self.agent.command] + [arg.replace("{prompt}", prompt) for arg in self.agent.args]

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.agent.env)
        env.setdefault("TERM", "xterm-256color")
        env["COLUMNS"] = str(self.terminal_size.cols)
        env["LINES"] = str(self.terminal_size.rows)
        env["AGENTCLUSTER_RUN_ID"] = self.id.run_id
        env["AGENTCLUSTER_TASK_ID"] = self.id.task_id
        env["AGENTCLUSTER_UPSTREAM_CONTEXT"] = self.upstream_context
        return env

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def spawn(self) -> SessionId:
        """Open the PTY, start the process and its supervisor.

        Returns:
            This session's id.

        Raises:
            SpawnError: If the working directory is invalid, the executable
                cannot be found, or the PTY/process cannot be created.
        """
        if self.state is not SessionState.spawning or self._process is not None:
            raise SpawnError("Session was already spawned", self.id)
        if not self.work_dir.is_dir():
            self._fail_spawn(f"Working directory does not exist: {self.work_dir}")

        env = self.build_env()
        argv = self.build_argv()
        executable = shutil.which(argv[0], path=env.get("PATH"))
        if executable is None:
            self._fail_spawn(f"Executable not found: {argv[0]}")

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            self._fail_spawn(f"Could not open a pseudo-terminal: {e}")

        try:
            _set_winsize(slave_fd, self.terminal_size)
            self._process = await asyncio.create_subprocess_exec(
                executable,
                *argv[1:],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(self.work_dir),
                env=env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except OSError as e:
            os.close(master_fd)
            self._fail_spawn(f"Could not start {argv[0]}: {e}")
        finally:
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        self._master_fd = master_fd
        self.pid = self._process.pid
        self.started_at = _utcnow()
        self.last_active_at = self.started_at

        if self.agent.prompt_as_input and self.initial_prompt:
            self._input.put_nowait((self.initial_prompt.rstrip("\n") + "\r").encode("utf-8"))

        self._supervisor = asyncio.create_task(
            self._supervise(), name=f"session-{self.id}"
        )
        self._supervisor.add_done_callback(self._on_supervisor_done)

        # A kill that raced the spawn leaves the state terminal
        self._transition(SessionState.running_detached)
        if self.state.is_terminal:
            self._signal_group(signal.SIGKILL)
        elif self.writer is not None and not self.writer.closed:
            # Exclusive attach that landed while spawning
            self.set_attached()

        self._logger.info(
            "session_spawned",
            pid=self.pid,
            agent_kind=self.agent_kind.value,
            work_dir=str(self.work_dir),
        )
        return self.id

    def _fail_spawn(self, message: str) -> NoReturn:
        self.state = SessionState.failed
        self.state_reason = message
        self.finished_at = _utcnow()
        self._done.set()
        self._logger.warning("session_spawn_failed", reason=message)
        raise SpawnError(message, self.id)

    async def _supervise(self) -> None:
        assert self._process is not None
        bind_session_context(self.id.run_id, self.id.task_id)
        returncode: int | None = None
        try:
            async with asyncio.TaskGroup() as tg:
                reader = tg.create_task(self._read_loop())
                writer = tg.create_task(self._write_loop())
                monitor = tg.create_task(self.monitor.run(self))
                returncode = await self._process.wait()
                await asyncio.wait({reader}, timeout=self.config.drain_timeout_seconds)
                for task in (reader, writer, monitor):
                    task.cancel()
        except* OSError as group:
            self._logger.error("session_io_failed", error=str(group.exceptions[0]))
            self._signal_group(signal.SIGKILL)
            returncode = await self._process.wait()
        finally:
            if self._process.returncode is None:
                # Cancelled from outside: take the process down with us
                self._signal_group(signal.SIGKILL)
            self._close_pty()
            self.buffer.flush()
        self._finish(returncode)

    def _on_supervisor_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            self._finish(self._process.returncode if self._process else None)
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("session_supervisor_crashed", error=repr(exc))
            self._finish(self._process.returncode if self._process else None)

    def _finish(self, returncode: int | None) -> None:
        if self._done.is_set():
            return
        self.exit_code = returncode
        self.finished_at = _utcnow()
        if returncode == 0:
            self._transition(SessionState.completed, exit_code=0)
        elif returncode is None:
            self._transition(SessionState.failed, "session supervisor stopped")
        elif returncode < 0:
            self._transition(
                SessionState.failed,
                f"terminated by signal {signal.Signals(-returncode).name}",
                exit_code=returncode,
            )
        else:
            self._transition(
                SessionState.failed, f"exit code {returncode}", exit_code=returncode
            )
        for tap in list(self._taps):
            tap.close()
        self._taps.clear()
        self._done.set()
        self._logger.info(
            "session_finished", state=self.state.value, exit_code=returncode
        )

    async def wait(self, timeout: float | None = None) -> SessionState:
        """Wait until the process has exited and resources are released."""
        if timeout is None:
            await self._done.wait()
        else:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._done.wait(), timeout)
        return self.state

    async def terminate(
        self, signal_kind: signal.Signals = signal.SIGTERM, reason: str | None = None
    ) -> bool:
        """Kill the session: polite signal, grace period, then SIGKILL.

        The state becomes ``killed`` immediately. Idempotent: terminating a
        terminal session only waits for any termination already in flight.

        Returns:
            True if this call moved the session to ``killed``.
        """
        changed = self._transition(
            SessionState.killed, reason or f"terminated with {signal_kind.name}"
        )
        if changed:
            self._logger.info("session_terminating", signal=signal_kind.name)
        await self._stop_process(signal_kind)
        return changed

    async def abort(self, reason: str) -> None:
        """Stop the process and record the session as failed."""
        self._transition(SessionState.failed, reason)
        await self._stop_process(signal.SIGTERM)

    async def _stop_process(self, signal_kind: signal.Signals) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        self._signal_group(signal_kind)
        try:
            await asyncio.wait_for(process.wait(), self.config.terminate_grace_seconds)
        except asyncio.TimeoutError:
            self._logger.warning("session_kill_escalated", signal="SIGKILL")
            self._signal_group(signal.SIGKILL)
            await process.wait()

    def _signal_group(self, sig: signal.Signals) -> None:
        if self._process is None or self._process.returncode is not None:
            return
        try:
            os.killpg(self._process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            with contextlib.suppress(ProcessLookupError):
                self._process.send_signal(sig)

    def _close_pty(self) -> None:
        if self._master_fd is not None:
            with contextlib.suppress(OSError):
                os.close(self._master_fd)
            self._master_fd = None

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        assert self._master_fd is not None
        fd = self._master_fd
        loop = asyncio.get_running_loop()
        readable = asyncio.Event()
        loop.add_reader(fd, readable.set)
        try:
            while True:
                await readable.wait()
                readable.clear()
                for _ in range(_MAX_READS_PER_WAKEUP):
                    try:
                        data = os.read(fd, _READ_CHUNK)
                    except BlockingIOError:
                        break
                    except OSError as e:
                        # EIO: every slave descriptor is closed
                        if e.errno == errno.EIO:
                            return
                        raise
                    if not data:
                        return
                    self._on_output(data)
                else:
                    readable.set()
                    await asyncio.sleep(0)
        finally:
            loop.remove_reader(fd)

    def _on_output(self, data: bytes) -> None:
        text = self.buffer.feed(data)
        self.last_active_at = _utcnow()
        for tap in list(self._taps):
            tap.put_output(data)
        if text:
            self._events.publish(
                SessionEvent(
                    type=SessionEventType.output, session_id=self.id, data=text
                )
            )

    async def _write_loop(self) -> None:
        assert self._master_fd is not None
        fd = self._master_fd
        if self.agent.prompt_as_input:
            await asyncio.sleep(self.config.prompt_delay_seconds)
        while True:
            data = await self._input.get()
            view = memoryview(data)
            while view:
                try:
                    written = os.write(fd, view)
                except BlockingIOError:
                    await self._wait_writable(fd)
                    continue
                view = view[written:]

    async def _wait_writable(self, fd: int) -> None:
        loop = asyncio.get_running_loop()
        ready = loop.create_future()
        loop.add_writer(fd, lambda: ready.done() or ready.set_result(None))
        try:
            await ready
        finally:
            loop.remove_writer(fd)

    def send_input(self, text: str | bytes) -> bool:
        """Queue input for the process.

        Returns:
            False (and does nothing) once the process has terminated.
        """
        if not self.is_running or self.state.is_terminal:
            return False
        data = text.encode("utf-8") if isinstance(text, str) else text
        if data:
            self._input.put_nowait(data)
            self.last_active_at = _utcnow()
        return True

    def resize(self, cols: int, rows: int) -> bool:
        """Apply a new terminal size. Returns False if nothing changed."""
        size = TerminalSize(cols=cols, rows=rows)
        if size == self.terminal_size:
            return False
        self.terminal_size = size
        if self._master_fd is not None:
            with contextlib.suppress(OSError):
                _set_winsize(self._master_fd, size)
        self._logger.debug("session_resized", cols=cols, rows=rows)
        return True

    def read_output_snapshot(self) -> str:
        return self.buffer.snapshot()

    def open_tap(self) -> OutputTap:
        """Start a live feed; already-closed when the session has finished."""
        tap = OutputTap()
        if self._done.is_set():
            tap.close()
        else:
            self._taps.add(tap)
        return tap

    def close_tap(self, tap: OutputTap) -> None:
        self._taps.discard(tap)
        tap.close()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _transition(
        self,
        target: SessionState,
        reason: str | None = None,
        exit_code: int | None = None,
    ) -> bool:
        """Move to ``target`` and publish the change.

        Returns:
            False if the session is already terminal (a lost race).

        Raises:
            InvalidTransitionError: For any other undefined edge.
        """
        if self.state.is_terminal:
            return False
        if target is self.state:
            return False
        check_transition(self.state, target, self.id)

        old = self.state
        self.state = target
        self.state_reason = reason
        if exit_code is not None:
            self.exit_code = exit_code
        if target.is_terminal and self.finished_at is None:
            self.finished_at = _utcnow()

        self._events.publish(
            SessionEvent(
                type=SessionEventType.state_changed,
                session_id=self.id,
                old_state=old,
                new_state=target,
                reason=reason,
                exit_code=exit_code,
                generation=self.generation,
            )
        )
        specific = _STATE_EVENTS.get(target)
        if old is SessionState.blocked and target is SessionState.running_detached:
            specific = SessionEventType.recovered
        if specific is not None:
            self._events.publish(
                SessionEvent(
                    type=specific,
                    session_id=self.id,
                    old_state=old,
                    new_state=target,
                    reason=reason,
                    exit_code=exit_code,
                )
            )
        for tap in list(self._taps):
            tap.put_state(target, reason)
        self._logger.info(
            "session_state_changed",
            from_state=old.value,
            to_state=target.value,
            reason=reason,
        )
        return True

    def set_attached(self) -> bool:
        if self.state is SessionState.running_detached:
            return self._transition(SessionState.attached)
        return False

    def set_detached(self) -> bool:
        if self.state is SessionState.attached:
            return self._transition(SessionState.running_detached)
        return False

    def mark_blocked(self, reason: str) -> bool:
        """Enter ``blocked`` from running_detached or attached."""
        if self.state not in (SessionState.running_detached, SessionState.attached):
            return False
        self.monitor.acknowledge()
        return self._transition(SessionState.blocked, reason)

    def mark_recovered(self, reason: str | None = None, send_prompt: bool = True) -> bool:
        """Leave ``blocked``; re-enter ``attached`` if a writer is present.

        With ``auto_recovery`` enabled the configured recovery prompt is
        written to the agent, unless ``send_prompt`` is False because the
        recovery comes from input that is about to be delivered.
        """
        if self.state is not SessionState.blocked:
            return False
        self.monitor.acknowledge()
        self._transition(SessionState.running_detached, reason or "recovered")
        if self.writer is not None and not self.writer.closed:
            self._transition(SessionState.attached)
        prompt = self.monitor.config.recovery_prompt
        if send_prompt and self.monitor.config.auto_recovery and prompt:
            self.send_input(prompt)
        return True

    def next_generation(self) -> int:
        self.generation += 1
        return self.generation

    # MonitorTarget protocol

    def monitor_active(self) -> bool:
        return self.state in (SessionState.running_detached, SessionState.attached)

    def report_blockage(self, reason: str) -> None:
        self._logger.info("blockage_detected", reason=reason)
        self.mark_blocked(reason)

    def is_blocked(self) -> bool:
        return self.state is SessionState.blocked

    def report_recovery(self, reason: str) -> None:
        self._logger.info("blockage_cleared", reason=reason)
        self.mark_recovered(reason)

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def summary(self) -> SessionSummary:
        start = self.started_at or self.created_at
        end = self.finished_at or _utcnow()
        writer = self.writer.observer_id if self.writer and not self.writer.closed else None
        return SessionSummary(
            id=str(self.id),
            short_id=self.id.short(),
            run_id=self.id.run_id,
            task_id=self.id.task_id,
            agent_kind=self.agent_kind,
            state=self.state,
            state_reason=self.state_reason,
            exit_code=self.exit_code,
            pid=self.pid,
            work_dir=str(self.work_dir),
            created_at=self.created_at,
            started_at=self.started_at,
            last_active_at=self.last_active_at,
            finished_at=self.finished_at,
            runtime_seconds=max(0.0, (end - start).total_seconds()),
            output_preview=self.buffer.preview(3),
            output_bytes=self.buffer.total_bytes,
            generation=self.generation,
            writer=writer,
            observer_count=len(self.observers),
        )
