"""Container environment CLI commands.

This module provides CLI commands for showing a container's environment,
recreating it with new variables, and restoring a retained backup.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Annotated, Optional, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from dockpilot.errors import DockpilotError, RollbackFailed
from dockpilot.orchestrator.recreate import (
    RecreateOrchestrator,
    RecreateRequest,
    RecreateResult,
    RecreateStatus,
)

app = typer.Typer(help="Container environment commands")
console = Console()

T = TypeVar("T")

MASK = "********"


def parse_assignments(assignments: list[str]) -> dict[str, str]:
    """Parse ``KEY=VALUE`` arguments; the value may itself contain ``=``.

    Raises:
        typer.BadParameter: If an argument has no ``=`` or an empty key.
    """
    env: dict[str, str] = {}
    for item in assignments:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected KEY=VALUE, got {item!r}")
        env[key] = value
    return env


def _run(operation: Callable[[RecreateOrchestrator], Awaitable[T]]) -> T:
    """Run one orchestrator operation against a fresh runtime connection.

    Operator-facing errors are printed and turned into exit code 1.
    """
    from dockpilot.main import get_app_context

    runtime, orchestrator = get_app_context().create_orchestrator()

    async def _execute() -> T:
        try:
            return await operation(orchestrator)
        finally:
            await runtime.close()

    try:
        return asyncio.run(_execute())
    except RollbackFailed as e:
        console.print(f"[bold red]{e.code}:[/bold red] {escape(e.message)}")
        console.print(f"[red]Cause:[/red] {escape(e.cause)}")
        console.print(f"[red]Restore step:[/red] {escape(e.detail)}")
        if e.result is not None and e.result.rollback_container_name:
            console.print(
                f"[yellow]Original container is kept as[/yellow] {e.result.rollback_container_name}"
            )
        raise typer.Exit(code=1)
    except DockpilotError as e:
        console.print(f"[red]{e.code}:[/red] {escape(e.message)}")
        if e.result is not None and e.result.status == RecreateStatus.RESTORED:
            console.print("[yellow]The original container was restored.[/yellow]")
        raise typer.Exit(code=1)


def _print_result(result: RecreateResult, title: str) -> None:
    lines = [
        f"[bold]Container:[/bold] {result.container_name}",
        f"[bold]Status:[/bold] {result.status.value}",
        f"[bold]Previous ID:[/bold] {result.previous_container_id[:12]}",
        f"[bold]New ID:[/bold] {(result.new_container_id or '-')[:12]}",
        f"[bold]Rollback container:[/bold] {result.rollback_container_name or '-'}",
    ]
    for warning in result.warnings:
        lines.append(f"[yellow]Warning:[/yellow] {escape(warning)}")
    console.print(Panel("\n".join(lines), title=title, border_style="green"))


@app.command()
def show(
    container: Annotated[str, typer.Argument(help="Container name or ID")],
    reveal: Annotated[
        bool,
        typer.Option("--reveal", help="Print values of secret-looking variables"),
    ] = False,
) -> None:
    """Show a container's current environment."""
    view = _run(lambda orchestrator: orchestrator.describe_env(container))

    state = "[green]running[/green]" if view.running else "[dim]stopped[/dim]"
    table = Table(title=f"{view.container_name} ({view.image}, {state})")
    table.add_column("Variable", style="cyan")
    table.add_column("Value")

    secret = set(view.secret_keys)
    for key in sorted(view.env):
        value = MASK if key in secret and not reveal else view.env[key]
        table.add_row(key, value)

    console.print(table)
    console.print(f"\n[dim]Total: {len(view.env)} variables[/dim]")


@app.command("set")
def set_env(
    container: Annotated[str, typer.Argument(help="Container name or ID")],
    assignments: Annotated[list[str], typer.Argument(help="KEY=VALUE pairs")],
    merge: Annotated[
        bool,
        typer.Option("--merge", help="Keep variables not listed instead of replacing the whole env"),
    ] = False,
    keep_backup: Annotated[
        Optional[bool],
        typer.Option(
            "--keep-backup/--discard-backup",
            help="Keep the stopped original after success (default from config)",
        ),
    ] = None,
    no_rollback: Annotated[
        bool,
        typer.Option("--no-rollback", help="Leave a failed replacement in place for debugging"),
    ] = False,
    timeout: Annotated[
        Optional[float],
        typer.Option("--timeout", "-t", help="Seconds to wait for the new container to run"),
    ] = None,
) -> None:
    """Recreate a container with a new environment.

    Without --merge, the listed variables become the complete environment.
    """
    env = parse_assignments(assignments)
    if timeout is not None and timeout <= 0:
        raise typer.BadParameter("must be greater than 0", param_hint="'--timeout'")
    request = RecreateRequest(
        container=container,
        env=env,
        recreate=True,
        rollback_on_failure=not no_rollback,
        keep_rollback_container=keep_backup,
        merge=merge,
        health_timeout_seconds=timeout,
    )

    result = _run(lambda orchestrator: orchestrator.recreate(request))
    _print_result(result, "Environment Updated")


@app.command()
def restore(
    container: Annotated[str, typer.Argument(help="Canonical container name")],
    backup: Annotated[str, typer.Argument(help="Name of the retained backup container")],
) -> None:
    """Put a retained backup back under the container's name."""
    result = _run(lambda orchestrator: orchestrator.restore(container, backup))
    _print_result(result, "Backup Restored")
