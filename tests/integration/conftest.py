"""Pytest fixtures for integration tests.

The FastAPI app is driven in-process. ``httpx.ASGITransport`` does not
run the lifespan, so ``app`` calls the startup and shutdown halves
directly; the web socket tests use starlette's TestClient, which runs
the lifespan itself.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from agentcluster.config import AgentClusterConfig
from agentcluster.web.app import create_app, shutdown, startup


@pytest_asyncio.fixture
async def app(config: AgentClusterConfig) -> AsyncGenerator[FastAPI, None]:
    """Application with running services on ``app.state``."""
    application = create_app(config)
    await startup(application)
    yield application
    await shutdown(application)


@pytest_asyncio.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing the FastAPI app.

    Yields:
        AsyncClient configured to test the application.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _poll_json(
    fetch: Callable[[], Awaitable[Any]],
    predicate: Callable[[dict[str, Any]], bool],
    timeout: float = 10.0,
) -> dict[str, Any]:
    async def _poll() -> dict[str, Any]:
        while True:
            body = (await fetch()).json()
            if predicate(body):
                return body
            await asyncio.sleep(0.05)

    return await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def poll_json() -> Callable[..., Awaitable[dict[str, Any]]]:
    """Repeat a GET until its JSON body satisfies a predicate."""
    return _poll_json
