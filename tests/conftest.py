"""Shared pytest fixtures.

Sessions in these tests are real processes on real pseudo-terminals,
running ``/bin/sh`` snippets through the ``shell`` agent kind. Timings
are shortened so a full run stays well under a second per scenario.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio

from agentcluster.cluster.events import EventBus
from agentcluster.cluster.manager import SessionManager
from agentcluster.config import (
    AgentClusterConfig,
    DatabaseConfig,
    ExecutorConfig,
    MonitorConfig,
    SessionConfig,
)
from agentcluster.context.store import ContextStore


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path: Path) -> AgentClusterConfig:
    """Configuration tuned for fast, isolated tests."""
    return AgentClusterConfig(
        database=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'context.db'}"),
        session=SessionConfig(
            terminate_grace_seconds=1.0,
            drain_timeout_seconds=0.5,
            prompt_delay_seconds=0.05,
            replay_lines=20,
        ),
        monitor=MonitorConfig(check_interval_seconds=0.05),
        executor=ExecutorConfig(
            poll_interval_seconds=0.05,
            base_work_dir=tmp_path / "runs",
        ),
    )


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest_asyncio.fixture
async def manager(
    config: AgentClusterConfig, event_bus: EventBus
) -> AsyncGenerator[SessionManager, None]:
    """Running session manager; every session is killed on teardown."""
    async with SessionManager(config, events=event_bus) as session_manager:
        yield session_manager


@pytest_asyncio.fixture
async def store(config: AgentClusterConfig) -> AsyncGenerator[ContextStore, None]:
    context_store = await ContextStore.open(config.database)
    yield context_store
    await context_store.close()
