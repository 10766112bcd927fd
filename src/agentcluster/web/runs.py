"""Run registry: executors started through the API.

Each run executes as a background asyncio task owned by the registry.
Executor errors are not swallowed: they are logged and kept on the
record so ``GET /runs/{run_id}`` reports them.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone

from agentcluster.cluster.executor import ClusterExecutor, ExecutionReport, RunStatus
from agentcluster.cluster.manager import SessionManager
from agentcluster.cluster.plan import RunPlan
from agentcluster.config import ExecutorConfig
from agentcluster.context.store import ContextStore
from agentcluster.logging import get_logger

logger = get_logger(__name__)


class RunExistsError(ValueError):
    """A run with the same id is already registered and active."""


@dataclass
class RunRecord:
    executor: ClusterExecutor
    task: asyncio.Task[ExecutionReport]
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: str | None = None

    @property
    def run_id(self) -> str:
        return self.executor.run_id

    @property
    def done(self) -> bool:
        return self.task.done()


class RunRegistry:
    """Starts, tracks and cancels executor runs."""

    def __init__(
        self,
        manager: SessionManager,
        store: ContextStore,
        config: ExecutorConfig,
    ) -> None:
        self.manager = manager
        self.store = store
        self.config = config
        self._runs: dict[str, RunRecord] = {}
        self._logger = logger.bind(component="RunRegistry")

    def start(self, plan: RunPlan) -> RunRecord:
        """Build an executor for ``plan`` and run it in the background.

        Raises:
            RunExistsError: If an unfinished run has the same id.
            GraphError: If the plan's dependencies are invalid.
        """
        existing = self._runs.get(plan.run_id)
        if existing is not None and not existing.done:
            raise RunExistsError(f"Run {plan.run_id} is already active")
        executor = ClusterExecutor(self.manager, self.store, plan, config=self.config)
        task = asyncio.create_task(executor.run(), name=f"run-{plan.run_id}")
        record = RunRecord(executor=executor, task=task)
        task.add_done_callback(lambda t: self._on_run_done(record, t))
        self._runs[plan.run_id] = record
        self._logger.info("run_submitted", run_id=plan.run_id, tasks=len(plan.tasks))
        return record

    def _on_run_done(self, record: RunRecord, task: asyncio.Task[ExecutionReport]) -> None:
        if task.cancelled():
            record.error = "run task cancelled"
            return
        exc = task.exception()
        if exc is not None:
            record.error = f"{type(exc).__name__}: {exc}"
            self._logger.error(
                "run_crashed", run_id=record.run_id, error=record.error, exc_info=exc
            )

    def get(self, run_id: str) -> RunRecord | None:
        return self._runs.get(run_id)

    def list_runs(self) -> list[RunRecord]:
        return sorted(self._runs.values(), key=lambda r: r.submitted_at)

    def cancel(self, run_id: str, reason: str = "cancelled via API") -> bool:
        """Request cancellation. Returns False if the run already ended."""
        record = self._runs.get(run_id)
        if record is None or record.done:
            return False
        record.executor.cancel(reason)
        return True

    def active_count(self) -> int:
        return sum(
            1
            for r in self._runs.values()
            if not r.done and r.executor.status is RunStatus.running
        )

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Cancel every unfinished run and wait for the executors to unwind."""
        pending = [r for r in self._runs.values() if not r.done]
        for record in pending:
            record.executor.cancel("server shutdown")
        if pending:
            done, still_running = await asyncio.wait(
                [r.task for r in pending], timeout=timeout
            )
            for task in still_running:
                task.cancel()
            self._logger.info(
                "run_registry_shutdown", finished=len(done), forced=len(still_running)
            )
