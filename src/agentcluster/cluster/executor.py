"""Cluster executor: binds a task graph to the session manager.

One executor drives one run. Each iteration it

1. asks the graph for ready nodes,
2. computes the free slots as ``concurrency_limit`` minus the run's
   active sessions (spawning, running, attached and blocked all count),
3. builds each started task's prompt from its dependencies' stored
   outputs and creates its session,
4. applies the lifecycle events received on its own subscription:
   completed output is persisted before the node is marked completed,
   failures are retried within budget, blocked nodes keep their slot,
   killed sessions fail their node without consuming a retry,
5. waits for the next event or the poll interval.

The loop ends when the graph is finished or the run is cancelled.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

from agentcluster.cluster.errors import SpawnError
from agentcluster.cluster.events import (
    LIFECYCLE_EVENT_TYPES,
    EventSubscription,
    SessionEvent,
    SessionEventType,
)
from agentcluster.cluster.graph import NodeStatus, TaskGraph
from agentcluster.cluster.manager import SessionManager
from agentcluster.cluster.models import SessionId
from agentcluster.cluster.plan import DecisionLevel, RunPlan, TaskSpec
from agentcluster.config import ExecutorConfig
from agentcluster.context.prompt import PromptBuilder
from agentcluster.context.store import ContextStore
from agentcluster.logging import get_logger

logger = get_logger(__name__)

BlockedCallback = Callable[[SessionId, str], None]


class RunStatus(str, Enum):
    """Overall status of a run."""

    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class ExecutionReport(BaseModel):
    """Outcome of a finished run."""

    run_id: str
    status: RunStatus
    completed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failure_reason: str | None = None
    duration_seconds: float = 0.0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    outputs: dict[str, str] = Field(default_factory=dict)


class ExecutionStats(BaseModel):
    """Live counters of a run."""

    run_id: str
    status: RunStatus
    total: int
    pending: int
    running: int
    blocked: int
    completed: int
    failed: int
    skipped: int
    active_sessions: int
    concurrency_limit: int
    awaiting_approval: list[str] = Field(default_factory=list)


class ClusterExecutor:
    """Schedules one run's task graph onto agent sessions.

    Args:
        manager: Session manager shared with other runs and observers.
        store: Context store for task outputs.
        plan: The run to execute.
        config: Executor settings; plan-level overrides take precedence.
        on_blocked: Called with (session id, reason) whenever a task blocks.
    """

    def __init__(
        self,
        manager: SessionManager,
        store: ContextStore,
        plan: RunPlan,
        config: ExecutorConfig | None = None,
        on_blocked: BlockedCallback | None = None,
    ) -> None:
        self.config = config or ExecutorConfig()
        self.manager = manager
        self.store = store
        self.plan = plan
        self.run_id = plan.run_id
        self.graph = TaskGraph.from_plan(plan, failure_mode=self.config.failure_mode)
        self.concurrency_limit = plan.concurrency_limit or self.config.concurrency_limit
        self.max_retries = (
            plan.max_retries if plan.max_retries is not None else self.config.max_retries
        )
        self.prompts = PromptBuilder(store, max_chars=self.config.context_max_chars)
        self.on_blocked = on_blocked

        self.status = RunStatus.pending
        self.max_observed_active = 0
        self._attempts: dict[str, int] = {}
        self._blocked_since: dict[str, float] = {}
        self._escalated: set[str] = set()
        self._kills: set[asyncio.Task[bool]] = set()
        self._cancel_reason: str | None = None
        self._subscription: EventSubscription | None = None
        self._started_at: datetime | None = None
        self._report: ExecutionReport | None = None
        self._logger = logger.bind(component="ClusterExecutor", run_id=self.run_id)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def report(self) -> ExecutionReport | None:
        return self._report

    def attempts(self, task_id: str) -> int:
        return self._attempts.get(task_id, 0)

    def session_id(self, task_id: str) -> SessionId:
        return SessionId(run_id=self.run_id, task_id=task_id)

    def approve(self, task_id: str) -> bool:
        """Approve a confirm/vote task so it can be scheduled."""
        return self.graph.approve(task_id)

    def cancel(self, reason: str = "run cancelled") -> None:
        """Ask the loop to stop; sessions are killed on the way out."""
        if self._cancel_reason is None:
            self._cancel_reason = reason
            self._logger.info("run_cancel_requested", reason=reason)

    def get_stats(self) -> ExecutionStats:
        counts = self.graph.counts()
        return ExecutionStats(
            run_id=self.run_id,
            status=self.status,
            total=len(self.graph),
            pending=counts[NodeStatus.pending],
            running=counts[NodeStatus.running],
            blocked=counts[NodeStatus.blocked],
            completed=counts[NodeStatus.completed],
            failed=counts[NodeStatus.failed],
            skipped=counts[NodeStatus.skipped],
            active_sessions=self.manager.count_active(self.run_id),
            concurrency_limit=self.concurrency_limit,
            awaiting_approval=self.graph.awaiting_approval(),
        )

    async def run(self) -> ExecutionReport:
        """Execute the run to completion.

        Returns:
            The execution report. Retry exhaustion and fail-fast aborts are
            reported as ``failed``; they are not raised.
        """
        if self.status is not RunStatus.pending:
            raise RuntimeError(f"Run {self.run_id} was already started")
        self.status = RunStatus.running
        self._started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        self._subscription = self.manager.subscribe(
            run_id=self.run_id, types=LIFECYCLE_EVENT_TYPES
        )
        self._logger.info(
            "run_started",
            tasks=len(self.graph),
            concurrency_limit=self.concurrency_limit,
            max_retries=self.max_retries,
        )
        try:
            pending: list[SessionEvent] = []
            while True:
                if self._cancel_reason is not None:
                    break
                await self._process_events(pending + self._subscription.drain())
                pending = []
                if self.graph.run_failed:
                    await self._abort_sessions(self.graph.failure_reason or "run failed")
                if self.graph.is_finished():
                    break
                await self._schedule_ready()
                self._check_blocked_timeouts()
                event = await self._subscription.get(
                    timeout=self.config.poll_interval_seconds
                )
                if event is not None:
                    pending.append(event)
        finally:
            await self._finish_run()

        report = self._build_report(time.monotonic() - start)
        self._report = report
        self._logger.info(
            "run_finished",
            status=report.status.value,
            completed=len(report.completed),
            failed=len(report.failed),
            skipped=len(report.skipped),
            duration_seconds=round(report.duration_seconds, 3),
        )
        return report

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _schedule_ready(self) -> None:
        ready = self.graph.ready_nodes()
        if not ready:
            return
        available = self.concurrency_limit - self.manager.count_active(self.run_id)
        for task_id in ready[: max(0, available)]:
            await self._start_task(self.graph.node(task_id).spec)
            self.max_observed_active = max(
                self.max_observed_active, self.manager.count_active(self.run_id)
            )

    def _work_dir_for(self, spec: TaskSpec) -> Path:
        if spec.work_dir is not None:
            return spec.work_dir
        work_dir = self.config.base_work_dir / self.run_id / spec.id
        work_dir.mkdir(parents=True, exist_ok=True)
        return work_dir

    def _retry_budget(self, spec: TaskSpec) -> int:
        return spec.max_retries if spec.max_retries is not None else self.max_retries

    async def _start_task(self, spec: TaskSpec) -> None:
        attempt = self._attempts.get(spec.id, 0) + 1
        self._attempts[spec.id] = attempt
        dependencies = self.graph.dependencies(spec.id)
        context = await self.prompts.build_context(self.run_id, dependencies)

        if spec.decision_level is DecisionLevel.notify:
            self._logger.warning("task_notification", task_id=spec.id, attempt=attempt)

        try:
            sid = await self.manager.create_session(
                run_id=self.run_id,
                task_id=spec.id,
                kind=spec.agent_kind,
                prompt=spec.prompt,
                work_dir=self._work_dir_for(spec),
                upstream_context=context,
            )
        except SpawnError as e:
            self._logger.warning(
                "task_spawn_failed", task_id=spec.id, attempt=attempt, error=str(e)
            )
            if attempt > self._retry_budget(spec):
                self.graph.mark(spec.id, NodeStatus.failed, f"spawn failed: {e}")
            return

        self.graph.mark(spec.id, NodeStatus.running, f"attempt {attempt}")
        self._logger.info(
            "task_started",
            task_id=spec.id,
            session_id=str(sid),
            attempt=attempt,
            dependencies=dependencies,
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _process_events(self, events: list[SessionEvent]) -> None:
        for event in events:
            await self._apply_event(event)

    async def _apply_event(self, event: SessionEvent) -> None:
        task_id = event.session_id.task_id
        if task_id not in self.graph:
            return
        node = self.graph.node(task_id)
        if node.status not in (NodeStatus.running, NodeStatus.blocked):
            return

        if event.type is SessionEventType.completed:
            output = self.manager.get_output(event.session_id)
            await self.store.save(self.run_id, task_id, output, event.exit_code)
            self._clear_blocked(task_id)
            self.graph.mark(task_id, NodeStatus.completed)

        elif event.type is SessionEventType.failed:
            self._clear_blocked(task_id)
            reason = event.reason or "process failed"
            attempt = self._attempts.get(task_id, 1)
            if attempt <= self._retry_budget(node.spec):
                self._logger.info(
                    "task_retry_scheduled", task_id=task_id, attempt=attempt, reason=reason
                )
                self.manager.reap(event.session_id)
                self.graph.mark(task_id, NodeStatus.pending, f"retrying after: {reason}")
            else:
                self.graph.mark(task_id, NodeStatus.failed, reason)

        elif event.type is SessionEventType.killed:
            self._clear_blocked(task_id)
            self.graph.mark(task_id, NodeStatus.failed, event.reason or "session killed")

        elif event.type is SessionEventType.blocked:
            if node.status is NodeStatus.running:
                self.graph.mark(task_id, NodeStatus.blocked, event.reason)
                self._blocked_since[task_id] = time.monotonic()
                if self.on_blocked is not None:
                    self.on_blocked(event.session_id, event.reason or "")

        elif event.type is SessionEventType.recovered:
            if node.status is NodeStatus.blocked:
                self._clear_blocked(task_id)
                self.graph.mark(task_id, NodeStatus.running, "recovered")

    def _clear_blocked(self, task_id: str) -> None:
        self._blocked_since.pop(task_id, None)
        self._escalated.discard(task_id)

    def _check_blocked_timeouts(self) -> None:
        timeout = self.config.blocked_timeout_seconds
        if timeout is None:
            return
        now = time.monotonic()
        for task_id, since in list(self._blocked_since.items()):
            if task_id in self._escalated or now - since < timeout:
                continue
            self._escalated.add(task_id)
            sid = self.session_id(task_id)
            self._logger.warning(
                "task_blocked_timeout",
                task_id=task_id,
                blocked_seconds=round(now - since, 1),
                action=self.config.blocked_timeout_action,
            )
            self.manager.events.publish(
                SessionEvent(
                    type=SessionEventType.escalated,
                    session_id=sid,
                    reason=f"blocked for more than {timeout}s",
                )
            )
            if self.config.blocked_timeout_action == "kill":
                kill = asyncio.create_task(
                    self.manager.kill(sid, reason="blocked timeout exceeded"),
                    name=f"kill-{sid}",
                )
                self._kills.add(kill)
                kill.add_done_callback(self._on_kill_done)

    def _on_kill_done(self, task: asyncio.Task[bool]) -> None:
        self._kills.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning(
                "blocked_timeout_kill_failed", task=task.get_name(), error=str(exc)
            )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _abort_sessions(self, reason: str) -> None:
        killed = await self.manager.kill_run(self.run_id, reason=reason)
        if killed:
            self._logger.info("run_sessions_killed", count=killed, reason=reason)
        assert self._subscription is not None
        await self._process_events(self._subscription.drain())

    async def _finish_run(self) -> None:
        assert self._subscription is not None
        try:
            if self._kills:
                await asyncio.gather(*self._kills, return_exceptions=True)
            if self._cancel_reason is not None:
                self.graph.abort(self._cancel_reason)
                await self._abort_sessions(self._cancel_reason)
            elif self.config.cleanup_on_finish:
                await self._abort_sessions("run finished")
            # Nodes whose session is gone without an event cannot finish
            for node in self.graph.nodes:
                if node.status in (NodeStatus.running, NodeStatus.blocked):
                    self.graph.mark(node.task_id, NodeStatus.failed, "run stopped")
        finally:
            self._subscription.close()
            if self._cancel_reason is not None:
                self.status = RunStatus.cancelled
            elif self.graph.succeeded:
                self.status = RunStatus.completed
            else:
                self.status = RunStatus.failed

    def _build_report(self, duration: float) -> ExecutionReport:
        completed = [n.task_id for n in self.graph.nodes if n.status is NodeStatus.completed]
        failed = [n.task_id for n in self.graph.nodes if n.status is NodeStatus.failed]
        skipped = [n.task_id for n in self.graph.nodes if n.status is NodeStatus.skipped]
        outputs = {
            task_id: self.manager.get_output(self.session_id(task_id))
            for task_id in completed
            if self.manager.has_session(self.session_id(task_id))
        }
        failure_reason = self.graph.failure_reason
        if failure_reason is None and failed:
            failure_reason = "; ".join(
                f"{tid}: {self.graph.node(tid).reason}" for tid in failed
            )
        return ExecutionReport(
            run_id=self.run_id,
            status=self.status,
            completed=completed,
            failed=failed,
            skipped=skipped,
            failure_reason=self._cancel_reason or failure_reason,
            duration_seconds=duration,
            started_at=self._started_at,
            finished_at=datetime.now(timezone.utc),
            outputs=outputs,
        )
