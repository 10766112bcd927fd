"""Session commands against a running agentcluster server.

Usage:
    agentcluster sessions list --run r1
    agentcluster sessions output r1:build --tail 50
    agentcluster sessions send r1:build "yes"
    agentcluster sessions unblock r1:build --input y
    agentcluster sessions attach r1:build
    agentcluster sessions kill r1:build
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable
from typing import Annotated, Optional, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from agentcluster.cli.client import ClientError, ClusterClient
from agentcluster.cli.terminal import DETACH_HINT, attach_remote
from agentcluster.cluster.models import SessionState

app = typer.Typer(help="Inspect and control agent sessions on a server")
console = Console()

T = TypeVar("T")

STATE_STYLES = {
    SessionState.spawning: "cyan",
    SessionState.running_detached: "green",
    SessionState.attached: "bold green",
    SessionState.blocked: "bold yellow",
    SessionState.completed: "dim",
    SessionState.failed: "red",
    SessionState.killed: "magenta",
}


def _server_url() -> str:
    from agentcluster.main import get_app_context

    ctx = get_app_context()
    if ctx.server_url:
        return ctx.server_url
    return f"http://{ctx.config.web.host}:{ctx.config.web.port}"


def _call(action: Callable[[ClusterClient], Awaitable[T]]) -> T:
    """Run one client action, turning client errors into exit code 1."""

    async def _run() -> T:
        async with ClusterClient(_server_url()) as client:
            return await action(client)

    try:
        return asyncio.run(_run())
    except ClientError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from e


@app.command("list")
def list_sessions(
    run_id: Annotated[
        Optional[str],
        typer.Option("--run", "-r", help="Only sessions of this run"),
    ] = None,
    state: Annotated[
        Optional[list[SessionState]],
        typer.Option("--state", "-s", help="Only sessions in this state (repeatable)"),
    ] = None,
) -> None:
    """List sessions with their state and a short output preview."""
    states = [s.value for s in state] if state else None
    sessions = _call(lambda c: c.list_sessions(run_id=run_id, states=states))

    if not sessions:
        console.print("[yellow]No sessions found[/yellow]")
        return

    table = Table(title=f"Sessions ({len(sessions)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Agent")
    table.add_column("State")
    table.add_column("Runtime", justify="right")
    table.add_column("Observer")
    table.add_column("Last output")
    for s in sessions:
        style = STATE_STYLES.get(s.state, "white")
        preview = s.output_preview[-1] if s.output_preview else ""
        table.add_row(
            s.short_id,
            s.agent_kind.value,
            f"[{style}]{s.state.value}[/{style}]",
            f"{s.runtime_seconds:.0f}s",
            s.writer or "-",
            escape(preview[:60]),
        )
    console.print(table)


@app.command()
def output(
    session_id: Annotated[str, typer.Argument(help="Session id <run_id>:<task_id>")],
    tail: Annotated[
        Optional[int],
        typer.Option("--tail", "-n", min=1, help="Only the last N lines"),
    ] = None,
) -> None:
    """Print a session's buffered output."""
    text = _call(lambda c: c.get_output(session_id, tail=tail))
    console.print(text, markup=False, highlight=False)


@app.command()
def send(
    session_id: Annotated[str, typer.Argument(help="Session id <run_id>:<task_id>")],
    text: Annotated[str, typer.Argument(help="Text to type into the session")],
    no_enter: Annotated[
        bool,
        typer.Option("--no-enter", help="Do not press Enter after the text"),
    ] = False,
) -> None:
    """Send one line of input without attaching."""
    accepted = _call(lambda c: c.send_input(session_id, text, newline=not no_enter))
    if not accepted:
        console.print(f"[yellow]Session {session_id} is no longer running[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"[green]Sent to {session_id}[/green]")


@app.command()
def kill(
    session_id: Annotated[str, typer.Argument(help="Session id <run_id>:<task_id>")],
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="SIGKILL immediately"),
    ] = False,
    reason: Annotated[
        Optional[str],
        typer.Option("--reason", help="Reason recorded on the session"),
    ] = None,
) -> None:
    """Terminate a session. Killing a finished session is harmless."""
    result = _call(lambda c: c.kill(session_id, reason=reason, force=force))
    if result["changed"]:
        console.print(f"[green]Killed {session_id}[/green]")
    else:
        console.print(f"[dim]{session_id} already {result['state']}[/dim]")


@app.command()
def unblock(
    session_id: Annotated[str, typer.Argument(help="Session id <run_id>:<task_id>")],
    input_text: Annotated[
        Optional[str],
        typer.Option("--input", "-i", help="Answer to type before resuming"),
    ] = None,
) -> None:
    """Resume a blocked session, optionally answering its prompt."""

    async def _unblock(client: ClusterClient) -> dict:
        if input_text is not None:
            await client.send_input(session_id, input_text, newline=True)
        return await client.recover(session_id)

    result = _call(_unblock)
    console.print(f"{session_id}: [bold]{result['state']}[/bold]")


@app.command()
def attach(
    session_id: Annotated[str, typer.Argument(help="Session id <run_id>:<task_id>")],
    read_only: Annotated[
        bool,
        typer.Option("--read-only", help="Watch without taking the input slot"),
    ] = False,
    force: Annotated[
        bool,
        typer.Option("--force", help="Take over from the current observer"),
    ] = False,
    observer: Annotated[
        Optional[str],
        typer.Option("--observer", help="Observer name shown to others"),
    ] = None,
) -> None:
    """Attach this terminal to a session."""
    observer_id = observer or f"{os.environ.get('USER', 'user')}@cli-{os.getpid()}"
    console.print(f"[dim]Attaching to {session_id}; press {DETACH_HINT} to detach.[/dim]")
    reason = _call(
        lambda c: attach_remote(c, session_id, observer_id, read_only=read_only, force=force)
    )
    console.print(f"\n[dim]Detached: {reason}[/dim]")
