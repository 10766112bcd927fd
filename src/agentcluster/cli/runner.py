"""In-process execution of a run plan for ``agentcluster run``."""

from __future__ import annotations

import asyncio
import signal

import structlog
from rich.console import Console
from rich.markup import escape

from agentcluster.cli.terminal import DETACH_HINT, attach_local
from agentcluster.cluster.errors import ClusterError
from agentcluster.cluster.executor import ClusterExecutor, ExecutionReport
from agentcluster.cluster.manager import SessionManager
from agentcluster.cluster.models import SessionId, SessionState
from agentcluster.cluster.plan import RunPlan
from agentcluster.config import AgentClusterConfig
from agentcluster.context.store import ContextStore
from agentcluster.logging import get_logger

logger = get_logger(__name__)


async def _attach_on_block(
    manager: SessionManager,
    blocked: asyncio.Queue[tuple[SessionId, str]],
    console: Console,
) -> None:
    """Hand the local terminal to each session that blocks, one at a time."""
    while True:
        sid, reason = await blocked.get()
        try:
            session = manager.get_session(sid)
        except ClusterError:
            continue
        if session.state is not SessionState.blocked:
            continue
        console.print(
            f"[yellow]Task {sid.task_id} is waiting for input:[/yellow] {escape(reason)}\n"
            f"[dim]Attaching; press {DETACH_HINT} to detach.[/dim]"
        )
        with structlog.contextvars.bound_contextvars(run_id=sid.run_id, task_id=sid.task_id):
            try:
                ended = await attach_local(manager, sid, force=True)
            except ClusterError as e:
                console.print(f"[red]Attach failed:[/red] {e}")
                continue
        console.print(f"[dim]Detached from {sid.task_id}: {ended}[/dim]")


async def run_plan(
    config: AgentClusterConfig,
    plan: RunPlan,
    attach_on_block: bool = False,
    console: Console | None = None,
) -> ExecutionReport:
    """Execute ``plan`` with a private session manager and context store.

    SIGINT cancels the run; its sessions are killed before returning.
    """
    console = console or Console()
    store = await ContextStore.open(config.database)
    blocked: asyncio.Queue[tuple[SessionId, str]] = asyncio.Queue()
    try:
        async with SessionManager(config) as manager:
            executor = ClusterExecutor(
                manager,
                store,
                plan,
                config=config.executor,
                on_blocked=(lambda sid, reason: blocked.put_nowait((sid, reason)))
                if attach_on_block
                else None,
            )
            loop = asyncio.get_running_loop()
            try:
                loop.add_signal_handler(signal.SIGINT, executor.cancel, "interrupted")
            except (NotImplementedError, RuntimeError):
                logger.debug("sigint_handler_unavailable")

            attacher = (
                asyncio.create_task(_attach_on_block(manager, blocked, console))
                if attach_on_block
                else None
            )
            try:
                return await executor.run()
            finally:
                if attacher is not None:
                    attacher.cancel()
                    await asyncio.gather(attacher, return_exceptions=True)
                try:
                    loop.remove_signal_handler(signal.SIGINT)
                except (NotImplementedError, RuntimeError):
                    pass
    finally:
        await store.close()
