"""Session manager: registry, attach arbitration and lifecycle events.

The SessionManager is an explicitly constructed service. The web app keeps
one on ``app.state``, the CLI runner builds its own, and tests create
isolated instances. It owns every AgentSession of the process, keyed by
SessionId.

Registry and attach-slot mutations are plain synchronous blocks with no
``await`` inside, so on the single event loop they are atomic with respect
to listing and attaching. Session creation awaits the process spawn and is
serialised by ``_lock``.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Iterable
from pathlib import Path
from types import TracebackType
from uuid import uuid4

from agentcluster.cluster.attach import AttachHandle
from agentcluster.cluster.errors import (
    AlreadyAttachedError,
    RegistryInvariantError,
    SessionAlreadyExistsError,
    SessionClosedError,
    SessionLimitError,
    SessionNotFoundError,
    SpawnError,
)
from agentcluster.cluster.events import (
    EventBus,
    EventSubscription,
    SessionEvent,
    SessionEventType,
)
from agentcluster.cluster.models import (
    AgentKind,
    AttachMode,
    SessionFilter,
    SessionId,
    SessionState,
    SessionSummary,
    TerminalSize,
)
from agentcluster.cluster.session import AgentSession
from agentcluster.config import AgentClusterConfig
from agentcluster.logging import get_logger

logger = get_logger(__name__)


class SessionManager:
    """Process-wide registry of agent sessions.

    Args:
        config: Cluster configuration (session, monitor and agent sections).
        events: Event bus to publish on; a private one is created if omitted.
    """

    def __init__(
        self,
        config: AgentClusterConfig | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.config = config or AgentClusterConfig()
        self.events = events or EventBus()
        self._sessions: dict[SessionId, AgentSession] = {}
        self._handles: dict[str, AttachHandle] = {}
        self._lock = asyncio.Lock()
        self._running = False
        self._logger = logger.bind(component="SessionManager")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        self._logger.info("session_manager_started")

    async def stop(self) -> None:
        """Kill every live session and release all handles."""
        await self.shutdown()
        self._running = False
        self._logger.info("session_manager_stopped")

    async def __aenter__(self) -> SessionManager:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    async def shutdown(self) -> None:
        live = [s for s in self._sessions.values() if not s.state.is_terminal]
        if live:
            self._logger.info("session_manager_shutdown", live_sessions=len(live))
        await asyncio.gather(
            *(s.terminate(reason="session manager shutdown") for s in live)
        )
        for handle in list(self._handles.values()):
            self._close_handle(handle, "session manager shutdown")
        await asyncio.gather(*(s.wait(timeout=5.0) for s in live))

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def _resolve(self, session_id: SessionId | str) -> SessionId:
        if isinstance(session_id, SessionId):
            return session_id
        try:
            return SessionId.parse(session_id)
        except ValueError as e:
            raise SessionNotFoundError(session_id) from e

    def get_session(self, session_id: SessionId | str) -> AgentSession:
        """Look up a session.

        Raises:
            SessionNotFoundError: If no session has this id.
        """
        sid = self._resolve(session_id)
        session = self._sessions.get(sid)
        if session is None:
            raise SessionNotFoundError(sid)
        return session

    def has_session(self, session_id: SessionId | str) -> bool:
        try:
            self.get_session(session_id)
        except SessionNotFoundError:
            return False
        return True

    async def create_session(
        self,
        run_id: str,
        task_id: str,
        kind: AgentKind,
        prompt: str,
        work_dir: Path,
        upstream_context: str = "",
        terminal_size: TerminalSize | None = None,
    ) -> SessionId:
        """Spawn and register a new session, publishing ``created``.

        A terminal session with the same id is replaced, which is how a task
        re-run reuses its id.

        Raises:
            SessionAlreadyExistsError: If a live session holds the id.
            SessionLimitError: If ``max_sessions`` live sessions exist.
            SpawnError: If the process could not be started.
        """
        sid = SessionId(run_id=run_id, task_id=task_id)
        async with self._lock:
            existing = self._sessions.get(sid)
            if existing is not None and not existing.state.is_terminal:
                raise SessionAlreadyExistsError(sid)

            live = sum(1 for s in self._sessions.values() if not s.state.is_terminal)
            limit = self.config.session.max_sessions
            if live >= limit:
                raise SessionLimitError(limit, sid)

            agent = self.config.agents.get(kind.value)
            if agent is None:
                raise SpawnError(f"No command configured for agent kind {kind.value}", sid)

            if existing is not None:
                self._remove(existing)

            session = AgentSession(
                session_id=sid,
                agent_kind=kind,
                prompt=prompt,
                work_dir=work_dir,
                agent=agent,
                events=self.events,
                session_config=self.config.session,
                monitor_config=self.config.monitor,
                upstream_context=upstream_context,
                terminal_size=terminal_size,
            )
            self._sessions[sid] = session
            self.events.publish(
                SessionEvent(
                    type=SessionEventType.created,
                    session_id=sid,
                    new_state=session.state,
                )
            )
            try:
                await session.spawn()
            except SpawnError:
                self._remove(session)
                raise

        self._logger.info(
            "session_created", session_id=str(sid), agent_kind=kind.value
        )
        return sid

    def _remove(self, session: AgentSession) -> None:
        for handle in list(session.observers.values()):
            self._close_handle(handle, "session removed")
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]
            self.events.publish(
                SessionEvent(
                    type=SessionEventType.removed,
                    session_id=session.id,
                    old_state=session.state,
                )
            )

    def reap(self, session_id: SessionId | str) -> bool:
        """Drop a terminated session from the registry.

        Returns:
            False if the session is still alive and was kept.
        """
        session = self.get_session(session_id)
        if not session.state.is_terminal:
            return False
        self._remove(session)
        return True

    def list_sessions(self, filter: SessionFilter | None = None) -> list[SessionSummary]:
        """Snapshot of matching sessions, oldest first.

        Raises:
            RegistryInvariantError: Only if the registry is corrupt.
        """
        summaries: list[SessionSummary] = []
        for sid, session in list(self._sessions.items()):
            if session.id != sid:
                raise RegistryInvariantError(
                    f"Registry key {sid} holds session {session.id}"
                )
            summary = session.summary()
            if filter is None or filter.matches(summary):
                summaries.append(summary)
        summaries.sort(key=lambda s: s.created_at)
        return summaries

    def sessions_for_run(self, run_id: str) -> list[AgentSession]:
        return [s for s in self._sessions.values() if s.id.run_id == run_id]

    def count_active(self, run_id: str | None = None) -> int:
        """Sessions occupying a concurrency slot (spawning through blocked)."""
        return sum(
            1
            for s in self._sessions.values()
            if s.state.is_active and (run_id is None or s.id.run_id == run_id)
        )

    def subscribe(
        self,
        run_id: str | None = None,
        types: Iterable[SessionEventType] | None = None,
    ) -> EventSubscription:
        """Open an independent event subscription."""
        return self.events.subscribe(run_id=run_id, types=types)

    # ------------------------------------------------------------------
    # Attach
    # ------------------------------------------------------------------

    def attach(
        self,
        session_id: SessionId | str,
        observer_id: str,
        mode: AttachMode = AttachMode.exclusive,
        force: bool = False,
    ) -> AttachHandle:
        """Bind an observer to a session.

        The tap and the replay snapshot are taken together, so the observer
        sees every byte exactly once.

        Raises:
            SessionNotFoundError: Unknown session.
            AlreadyAttachedError: Another exclusive writer holds the session
                and ``force`` is False.
            SessionClosedError: Exclusive attach to a terminated session.
        """
        session = self.get_session(session_id)
        if mode is AttachMode.exclusive:
            if session.state.is_terminal:
                raise SessionClosedError(session.id, session.state)
            current = session.writer
            if current is not None and not current.closed:
                if not force:
                    raise AlreadyAttachedError(session.id, current.observer_id)
                self._close_handle(current, f"revoked by {observer_id}", revoked=True)

        replay_lines = session.buffer.tail(self.config.session.replay_lines)
        if session.buffer.partial_line:
            replay_lines.append(session.buffer.partial_line)
        handle = AttachHandle(
            handle_id=uuid4().hex,
            session_id=session.id,
            observer_id=observer_id,
            mode=mode,
            generation=session.next_generation(),
            tap=session.open_tap(),
            replay="\r\n".join(replay_lines),
        )
        session.observers[handle.handle_id] = handle
        self._handles[handle.handle_id] = handle
        if mode is AttachMode.exclusive:
            session.writer = handle
            session.set_attached()
        self._check_attach_invariants(session)

        self.events.publish(
            SessionEvent(
                type=SessionEventType.attached,
                session_id=session.id,
                observer_id=observer_id,
                generation=handle.generation,
                reason=mode.value,
            )
        )
        self._logger.info(
            "session_attached",
            session_id=str(session.id),
            observer_id=observer_id,
            mode=mode.value,
            generation=handle.generation,
        )
        return handle

    def detach(self, handle: AttachHandle | str, reason: str = "detached") -> bool:
        """Release an attach; safe on stale or already-closed handles.

        Args:
            handle: The handle or its id.
            reason: Close reason recorded on the handle and the event.

        Returns:
            True if this call closed the handle.
        """
        if isinstance(handle, str):
            found = self._handles.get(handle)
            if found is None:
                return False
            handle = found
        if handle.closed:
            return False
        self._close_handle(handle, reason)
        return True

    def get_handle(self, handle_id: str) -> AttachHandle | None:
        return self._handles.get(handle_id)

    def _close_handle(
        self, handle: AttachHandle, reason: str, revoked: bool = False
    ) -> None:
        if handle.closed:
            return
        handle.closed = True
        handle.revoked = revoked
        handle.close_reason = handle.close_reason or reason
        self._handles.pop(handle.handle_id, None)

        session = self._sessions.get(handle.session_id)
        if session is not None and session.observers.get(handle.handle_id) is handle:
            del session.observers[handle.handle_id]
            if session.writer is handle:
                session.writer = None
                session.set_detached()
            session.close_tap(handle.tap)
        else:
            handle.tap.close()

        self.events.publish(
            SessionEvent(
                type=SessionEventType.detached,
                session_id=handle.session_id,
                observer_id=handle.observer_id,
                generation=handle.generation,
                reason=handle.close_reason,
            )
        )
        self._logger.info(
            "session_detached",
            session_id=str(handle.session_id),
            observer_id=handle.observer_id,
            reason=handle.close_reason,
        )

    def _check_attach_invariants(self, session: AgentSession) -> None:
        writers = [h for h in session.observers.values() if h.is_writer and not h.closed]
        if len(writers) > 1:
            raise RegistryInvariantError(
                f"Session {session.id} has {len(writers)} exclusive writers"
            )
        if writers and session.writer is not writers[0]:
            raise RegistryInvariantError(
                f"Session {session.id} writer slot does not match its observers"
            )

    def write(self, handle: AttachHandle, data: str | bytes) -> bool:
        """Input from an attached writer.

        Dropped for closed, read-only or superseded handles.
        """
        if handle.closed or not handle.is_writer:
            return False
        session = self._sessions.get(handle.session_id)
        if session is None or session.writer is not handle:
            return False
        return self._deliver_input(session, data, handle.observer_id)

    def resize_attached(self, handle: AttachHandle, cols: int, rows: int) -> bool:
        if handle.closed or not handle.is_writer:
            return False
        session = self._sessions.get(handle.session_id)
        if session is None or session.writer is not handle:
            return False
        return session.resize(cols, rows)

    def _deliver_input(
        self, session: AgentSession, data: str | bytes, source: str
    ) -> bool:
        if (
            session.state is SessionState.blocked
            and self.config.session.recover_on_input
        ):
            session.mark_recovered(f"input from {source}", send_prompt=False)
        return session.send_input(data)

    # ------------------------------------------------------------------
    # Administrative passthrough
    # ------------------------------------------------------------------

    def send_input(
        self, session_id: SessionId | str, text: str | bytes, source: str = "operator"
    ) -> bool:
        """One-shot input; False if the process has already exited."""
        return self._deliver_input(self.get_session(session_id), text, source)

    def resize(self, session_id: SessionId | str, cols: int, rows: int) -> bool:
        return self.get_session(session_id).resize(cols, rows)

    def get_output(self, session_id: SessionId | str) -> str:
        """Buffered output; still available after the session terminated."""
        return self.get_session(session_id).read_output_snapshot()

    def mark_blocked(self, session_id: SessionId | str, reason: str) -> bool:
        return self.get_session(session_id).mark_blocked(reason)

    def mark_recovered(self, session_id: SessionId | str) -> bool:
        return self.get_session(session_id).mark_recovered("operator recovery")

    async def kill(
        self,
        session_id: SessionId | str,
        reason: str | None = None,
        signal_kind: signal.Signals = signal.SIGTERM,
    ) -> bool:
        """Terminate a session; killing a terminal session is a no-op.

        The exclusive writer is force-detached; read-only observers receive
        the final state before their feed ends.

        Returns:
            True if the session moved to ``killed``.
        """
        session = self.get_session(session_id)
        for handle in list(session.observers.values()):
            if handle.is_writer:
                self._close_handle(handle, reason or "session killed")
        changed = await session.terminate(signal_kind, reason=reason or "killed by operator")
        if changed:
            self._logger.info("session_killed", session_id=str(session.id), reason=reason)
        return changed

    async def kill_run(self, run_id: str, reason: str | None = None) -> int:
        """Kill every live session of a run. Returns how many were killed."""
        live = [s for s in self.sessions_for_run(run_id) if not s.state.is_terminal]
        results = await asyncio.gather(
            *(self.kill(s.id, reason=reason or "run cancelled") for s in live)
        )
        return sum(1 for changed in results if changed)
