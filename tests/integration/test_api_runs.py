"""Integration tests for run API endpoints.

Plans are submitted as JSON, executed by a background executor driving
``/bin/sh`` sessions, and followed by polling ``GET /runs/{run_id}``.
"""

from __future__ import annotations

from typing import Any

import pytest
from httpx import AsyncClient

pytestmark = pytest.mark.pty


def shell_task(task_id: str, command: str, *deps: str, **extra: Any) -> dict[str, Any]:
    return {
        "id": task_id,
        "prompt": command,
        "agent_kind": "shell",
        "depends_on": list(deps),
        **extra,
    }


async def wait_finished(poll_json: Any, client: AsyncClient, run_id: str) -> dict[str, Any]:
    return await poll_json(
        lambda: client.get(f"/runs/{run_id}"),
        lambda body: body["report"] is not None,
        timeout=20.0,
    )


class TestSubmitRun:
    """Plan submission and run progress."""

    @pytest.mark.asyncio
    async def test_run_completes_with_context(
        self, async_client: AsyncClient, poll_json: Any
    ) -> None:
        plan = {
            "run_id": "pipeline",
            "name": "two step",
            "tasks": [
                shell_task("build", "echo built-artifact"),
                shell_task(
                    "test",
                    'printf "%s\\n" "$AGENTCLUSTER_UPSTREAM_CONTEXT"',
                    "build",
                ),
            ],
        }
        response = await async_client.post("/runs", json=plan)
        assert response.status_code == 202
        accepted = response.json()
        assert accepted["run_id"] == "pipeline"
        assert accepted["name"] == "two step"
        assert [t["task_id"] for t in accepted["tasks"]] == ["build", "test"]

        body = await wait_finished(poll_json, async_client, "pipeline")
        report = body["report"]
        assert report["status"] == "completed"
        assert report["completed"] == ["build", "test"]
        assert "built-artifact" in report["outputs"]["test"]
        assert all(t["status"] == "completed" for t in body["tasks"])
        assert all(t["attempts"] == 1 for t in body["tasks"])
        assert body["error"] is None

    @pytest.mark.asyncio
    async def test_failed_run_reports_reason(
        self, async_client: AsyncClient, poll_json: Any
    ) -> None:
        plan = {
            "run_id": "broken",
            "max_retries": 0,
            "tasks": [shell_task("a", "exit 3"), shell_task("b", "true", "a")],
        }
        assert (await async_client.post("/runs", json=plan)).status_code == 202

        body = await wait_finished(poll_json, async_client, "broken")
        assert body["report"]["status"] == "failed"
        assert body["report"]["skipped"] == ["b"]
        statuses = {t["task_id"]: t["status"] for t in body["tasks"]}
        assert statuses == {"a": "failed", "b": "skipped"}

    @pytest.mark.asyncio
    async def test_cycle_rejected(self, async_client: AsyncClient) -> None:
        plan = {
            "tasks": [shell_task("a", "true", "b"), shell_task("b", "true", "a")],
        }
        response = await async_client.post("/runs", json=plan)
        assert response.status_code == 400
        assert "cycle" in response.json()["detail"].lower()

    @pytest.mark.asyncio
    async def test_invalid_plan_is_unprocessable(self, async_client: AsyncClient) -> None:
        plan = {"tasks": [shell_task("a", "true"), shell_task("a", "true")]}
        response = await async_client.post("/runs", json=plan)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_active_run_id_conflicts(self, async_client: AsyncClient) -> None:
        plan = {"run_id": "busy", "tasks": [shell_task("a", "sleep 30")]}
        assert (await async_client.post("/runs", json=plan)).status_code == 202
        assert (await async_client.post("/runs", json=plan)).status_code == 409

    @pytest.mark.asyncio
    async def test_list_runs(self, async_client: AsyncClient, poll_json: Any) -> None:
        assert (await async_client.get("/runs")).json() == []
        await async_client.post("/runs", json={"run_id": "one", "tasks": [shell_task("a", "true")]})
        await wait_finished(poll_json, async_client, "one")
        runs = (await async_client.get("/runs")).json()
        assert [r["run_id"] for r in runs] == ["one"]

    @pytest.mark.asyncio
    async def test_unknown_run(self, async_client: AsyncClient) -> None:
        assert (await async_client.get("/runs/ghost")).status_code == 404


class TestRunControl:
    """Approval and cancellation."""

    @pytest.mark.asyncio
    async def test_approve_gated_task(self, async_client: AsyncClient, poll_json: Any) -> None:
        plan = {
            "run_id": "gated",
            "tasks": [shell_task("deploy", "echo shipped", decision_level="confirm")],
        }
        await async_client.post("/runs", json=plan)
        body = await poll_json(
            lambda: async_client.get("/runs/gated"),
            lambda body: body["stats"]["awaiting_approval"] == ["deploy"],
        )
        assert body["stats"]["active_sessions"] == 0

        response = await async_client.post("/runs/gated/tasks/deploy/approve")
        assert response.status_code == 200
        again = await async_client.post("/runs/gated/tasks/deploy/approve")
        assert again.status_code == 409

        finished = await wait_finished(poll_json, async_client, "gated")
        assert finished["report"]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_approve_unknown_task(self, async_client: AsyncClient) -> None:
        plan = {"run_id": "r", "tasks": [shell_task("a", "sleep 30")]}
        await async_client.post("/runs", json=plan)
        assert (await async_client.post("/runs/r/tasks/nope/approve")).status_code == 404
        assert (await async_client.post("/runs/ghost/tasks/a/approve")).status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_run(self, async_client: AsyncClient, poll_json: Any) -> None:
        plan = {
            "run_id": "long",
            "tasks": [shell_task("a", "sleep 30"), shell_task("b", "true", "a")],
        }
        await async_client.post("/runs", json=plan)
        await poll_json(
            lambda: async_client.get("/runs/long"),
            lambda body: body["stats"]["running"] == 1,
        )

        response = await async_client.post("/runs/long/cancel")
        assert response.status_code == 200

        body = await wait_finished(poll_json, async_client, "long")
        assert body["report"]["status"] == "cancelled"
        assert body["report"]["skipped"] == ["b"]
        sessions = (await async_client.get("/sessions", params={"run_id": "long"})).json()
        assert [s["state"] for s in sessions] == ["killed"]

        assert (await async_client.post("/runs/long/cancel")).status_code == 409
