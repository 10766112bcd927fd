"""FastAPI application factory.

The app owns one SessionManager, one ContextStore and the run and
long-poll attach registries, created on startup and kept on ``app.state``:

    >>> from agentcluster.web.app import create_app
    >>> import uvicorn
    >>> uvicorn.run(create_app(), host="127.0.0.1", port=8765)

``startup`` and ``shutdown`` are the two halves of the lifespan; tests
call them directly when they drive the app without a server.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentcluster import __version__
from agentcluster.cluster.manager import SessionManager
from agentcluster.config import AgentClusterConfig
from agentcluster.context.store import ContextStore
from agentcluster.logging import get_logger
from agentcluster.web.attachments import AttachmentRegistry
from agentcluster.web.middleware import RequestLoggingMiddleware
from agentcluster.web.routes.attach import create_attach_router
from agentcluster.web.routes.events import create_events_router
from agentcluster.web.routes.health import create_health_router
from agentcluster.web.routes.runs import create_runs_router
from agentcluster.web.routes.sessions import create_sessions_router
from agentcluster.web.runs import RunRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)


async def startup(app: FastAPI) -> None:
    """Create the services and store them on ``app.state``."""
    config: AgentClusterConfig = app.state.config
    logger.info("app_startup_begin", host=config.web.host, port=config.web.port)

    manager = SessionManager(config)
    await manager.start()
    store = await ContextStore.open(config.database)

    app.state.manager = manager
    app.state.store = store
    app.state.runs = RunRegistry(manager, store, config.executor)
    app.state.attachments = AttachmentRegistry(
        manager, idle_seconds=config.web.long_poll_idle_seconds
    )
    app.state.attachments.start()
    logger.info(
        "app_startup_complete",
        max_sessions=config.session.max_sessions,
        concurrency_limit=config.executor.concurrency_limit,
    )


async def shutdown(app: FastAPI) -> None:
    """Cancel runs, close attaches, kill sessions and close the store."""
    logger.info("app_shutdown_begin")
    await app.state.runs.shutdown()
    await app.state.attachments.shutdown()
    manager: SessionManager = app.state.manager
    await manager.stop()
    manager.events.close_all()
    await app.state.store.close()
    logger.info("app_shutdown_complete")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    await startup(app)
    try:
        yield
    finally:
        await shutdown(app)


def create_app(config: AgentClusterConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Cluster configuration; defaults are used when omitted.

    Returns:
        The application. Services are created by its lifespan.
    """
    if config is None:
        config = AgentClusterConfig()

    app = FastAPI(
        title="agentcluster",
        version=__version__,
        description="Concurrent interactive agent sessions with live attach",
        lifespan=lifespan,
    )
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.web.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(create_health_router())
    app.include_router(create_sessions_router())
    app.include_router(create_attach_router())
    app.include_router(create_events_router())
    app.include_router(create_runs_router())

    logger.info("app_created", cors_origins=config.web.cors_origins, version=__version__)
    return app
