"""Main CLI entry point for agentcluster.

Usage:
    agentcluster serve --port 8765
    agentcluster run plan.toml --attach-on-block
    agentcluster sessions list
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from agentcluster.cli import sessions as sessions_cli
from agentcluster.cluster.errors import ClusterError
from agentcluster.cluster.executor import ExecutionReport, RunStatus
from agentcluster.cluster.plan import RunPlan
from agentcluster.config import AgentClusterConfig, load_config
from agentcluster.logging import get_logger, setup_logging

app = typer.Typer(
    name="agentcluster",
    help="Run and supervise concurrent interactive agent sessions",
    no_args_is_help=True,
)
app.add_typer(sessions_cli.app, name="sessions", help="Inspect and control sessions")

console = Console()
logger = get_logger(__name__)


class AppContext:
    """Settings shared by all commands of one invocation.

    Attributes:
        config: Loaded configuration
        server_url: Server URL override for the sessions commands
    """

    def __init__(self, config: AgentClusterConfig, server_url: str | None = None):
        self.config = config
        self.server_url = server_url


_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Return the context created by the main callback.

    Raises:
        RuntimeError: If the callback has not run.
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: AgentClusterConfig, server_url: str | None = None) -> AppContext:
    global _app_context
    _app_context = AppContext(config, server_url=server_url)
    return _app_context


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    server: Annotated[
        Optional[str],
        typer.Option("--server", "-s", help="Server URL for session commands"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Load configuration and set up logging."""
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1) from e

    if verbose:
        config.logging.level = "DEBUG"
    setup_logging(config.logging)
    initialize_context(config, server_url=server)


@app.command()
def serve(
    host: Annotated[
        Optional[str],
        typer.Option("--host", "-h", help="Host to bind to (default from config)"),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Port to bind to (default from config)"),
    ] = None,
) -> None:
    """Start the API server hosting the session manager."""
    import uvicorn

    from agentcluster.web.app import create_app

    config = get_app_context().config
    bind_host = host or config.web.host
    bind_port = port or config.web.port

    console.print("[bold cyan]Starting agentcluster server[/bold cyan]")
    console.print(f"[dim]Listening on[/dim] http://{bind_host}:{bind_port}")

    uvicorn.run(
        create_app(config),
        host=bind_host,
        port=bind_port,
        log_level=config.logging.level.lower(),
    )


def _print_report(report: ExecutionReport) -> None:
    style = {
        RunStatus.completed: "green",
        RunStatus.failed: "red",
        RunStatus.cancelled: "yellow",
    }.get(report.status, "white")

    table = Table(title=f"Run {report.run_id}")
    table.add_column("Task", style="cyan")
    table.add_column("Result")
    for task_id in report.completed:
        table.add_row(task_id, "[green]completed[/green]")
    for task_id in report.failed:
        table.add_row(task_id, "[red]failed[/red]")
    for task_id in report.skipped:
        table.add_row(task_id, "[dim]skipped[/dim]")
    console.print(table)
    console.print(
        f"[{style}]{report.status.value}[/{style}] in {report.duration_seconds:.1f}s"
    )
    if report.failure_reason:
        console.print(f"[red]Reason:[/red] {report.failure_reason}")


@app.command()
def run(
    plan_path: Annotated[
        Path,
        typer.Argument(help="Run plan (TOML)", exists=True, dir_okay=False, readable=True),
    ],
    attach_on_block: Annotated[
        bool,
        typer.Option(
            "--attach-on-block",
            help="Attach this terminal to any session that stops for input",
        ),
    ] = False,
    concurrency: Annotated[
        Optional[int],
        typer.Option("--concurrency", "-j", min=1, help="Override the concurrency limit"),
    ] = None,
) -> None:
    """Execute a run plan in this process and print its report."""
    from agentcluster.cli.runner import run_plan

    config = get_app_context().config
    try:
        plan = RunPlan.from_toml(plan_path)
    except ValueError as e:
        console.print(f"[red]Invalid plan:[/red] {e}")
        raise typer.Exit(code=1) from e
    if concurrency is not None:
        plan.concurrency_limit = concurrency

    console.print(
        f"[bold cyan]Run {plan.run_id}[/bold cyan] [dim]({len(plan.tasks)} tasks)[/dim]"
    )
    try:
        report = asyncio.run(
            run_plan(config, plan, attach_on_block=attach_on_block, console=console)
        )
    except ClusterError as e:
        console.print(f"[red]Run failed to start:[/red] {e}")
        raise typer.Exit(code=1) from e

    _print_report(report)
    if report.status is not RunStatus.completed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
