"""Run endpoints: submit a plan, follow its progress, approve, cancel."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from agentcluster.cluster.errors import ClusterError
from agentcluster.cluster.executor import ExecutionReport, ExecutionStats
from agentcluster.cluster.plan import RunPlan
from agentcluster.logging import get_logger
from agentcluster.web.dependencies import get_runs
from agentcluster.web.errors import http_error
from agentcluster.web.runs import RunExistsError, RunRecord, RunRegistry

logger = get_logger(__name__)


class TaskStatusResponse(BaseModel):
    task_id: str
    status: str
    attempts: int
    reason: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class RunResponse(BaseModel):
    """Run snapshot.

    Attributes:
        run_id: Run identifier.
        name: Optional human readable name from the plan.
        stats: Live node and session counters.
        tasks: Per-task status in declaration order.
        report: Final report once the run finished.
        error: Executor crash description, if it crashed.
    """

    run_id: str
    name: str | None = None
    submitted_at: datetime
    stats: ExecutionStats
    tasks: list[TaskStatusResponse]
    report: ExecutionReport | None = None
    error: str | None = None


def _to_response(record: RunRecord) -> dict[str, Any]:
    executor = record.executor
    return {
        "run_id": record.run_id,
        "name": executor.plan.name,
        "submitted_at": record.submitted_at,
        "stats": executor.get_stats(),
        "tasks": [
            {
                "task_id": node.task_id,
                "status": node.status.value,
                "attempts": executor.attempts(node.task_id),
                "reason": node.reason,
                "started_at": node.started_at,
                "finished_at": node.finished_at,
            }
            for node in executor.graph.nodes
        ],
        "report": executor.report,
        "error": record.error,
    }


def create_runs_router() -> APIRouter:
    """Create the run routes.

    Routes:
        POST /runs - Submit a run plan
        GET /runs - List submitted runs
        GET /runs/{run_id} - Run progress and final report
        POST /runs/{run_id}/tasks/{task_id}/approve - Release a gated task
        POST /runs/{run_id}/cancel - Cancel a run and kill its sessions
    """
    router = APIRouter(prefix="/runs", tags=["runs"])

    def _get_record(runs: RunRegistry, run_id: str) -> RunRecord:
        record = runs.get(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
        return record

    @router.post("", response_model=RunResponse, status_code=202)
    async def submit_run(
        plan: RunPlan,
        runs: RunRegistry = Depends(get_runs),  # noqa: B008
    ) -> dict[str, Any]:
        """Start executing a plan in the background.

        Raises:
            HTTPException: 400 for an invalid graph, 409 if the run is active.
        """
        try:
            record = runs.start(plan)
        except RunExistsError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ClusterError as exc:
            logger.warning("run_rejected", run_id=plan.run_id, error=str(exc))
            raise http_error(exc) from exc
        return _to_response(record)

    @router.get("", response_model=list[RunResponse])
    async def list_runs(
        runs: RunRegistry = Depends(get_runs),  # noqa: B008
    ) -> list[dict[str, Any]]:
        return [_to_response(record) for record in runs.list_runs()]

    @router.get("/{run_id}", response_model=RunResponse)
    async def get_run(
        run_id: str,
        runs: RunRegistry = Depends(get_runs),  # noqa: B008
    ) -> dict[str, Any]:
        return _to_response(_get_record(runs, run_id))

    @router.post("/{run_id}/tasks/{task_id}/approve", response_model=RunResponse)
    async def approve_task(
        run_id: str,
        task_id: str,
        runs: RunRegistry = Depends(get_runs),  # noqa: B008
    ) -> dict[str, Any]:
        """Approve a ``confirm`` or ``vote`` task.

        Raises:
            HTTPException: 404 for unknown run or task, 409 if the task is
                not waiting for approval.
        """
        record = _get_record(runs, run_id)
        try:
            approved = record.executor.approve(task_id)
        except ClusterError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        if not approved:
            raise HTTPException(
                status_code=409, detail=f"Task {task_id} is not awaiting approval"
            )
        return _to_response(record)

    @router.post("/{run_id}/cancel", response_model=RunResponse)
    async def cancel_run(
        run_id: str,
        runs: RunRegistry = Depends(get_runs),  # noqa: B008
    ) -> dict[str, Any]:
        record = _get_record(runs, run_id)
        if not runs.cancel(run_id):
            raise HTTPException(status_code=409, detail=f"Run {run_id} already finished")
        return _to_response(record)

    return router
