"""Health check endpoints.

- ``/health/``: liveness, with live session and run counts
- ``/health/ready``: readiness, verifying the context store database
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text

from agentcluster.cluster.manager import SessionManager
from agentcluster.context.store import ContextStore
from agentcluster.logging import get_logger
from agentcluster.web.dependencies import get_manager, get_runs, get_store
from agentcluster.web.runs import RunRegistry

logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Liveness response.

    Attributes:
        status: "ok" while the session manager is running
        active_sessions: Sessions occupying a concurrency slot
        active_runs: Runs still executing
    """

    status: str
    active_sessions: int
    active_runs: int


class ReadinessResponse(BaseModel):
    status: str
    database: str


def create_health_router() -> APIRouter:
    """Create the health check router."""
    router = APIRouter(prefix="/health", tags=["health"])

    @router.get("/", response_model=HealthResponse)
    async def health(
        manager: SessionManager = Depends(get_manager),  # noqa: B008
        runs: RunRegistry = Depends(get_runs),  # noqa: B008
    ) -> dict[str, Any]:
        return {
            "status": "ok" if manager.is_running else "stopping",
            "active_sessions": manager.count_active(),
            "active_runs": runs.active_count(),
        }

    @router.get("/ready", response_model=ReadinessResponse)
    async def readiness(
        store: ContextStore = Depends(get_store),  # noqa: B008
    ) -> dict[str, Any]:
        """Readiness check running a trivial query on the context store."""
        try:
            async with store.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:
            logger.warning("readiness_check_failed", database="disconnected", error=str(exc))
            return {"status": "unhealthy", "database": "disconnected"}
        logger.debug("readiness_check_passed", database="connected")
        return {"status": "ok", "database": "connected"}

    return router
