"""Main CLI entry point for DockPilot.

This module provides the main Typer application with the web server command
and the ``env`` sub-commands for reading and changing container environments.

Usage:
    dockpilot serve --port 3001
    dockpilot env show web
    dockpilot env set web APP_ENV=prod LOG_LEVEL=debug
    dockpilot env restore web rollback_web
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape

from dockpilot.cli import env as env_cli
from dockpilot.config import DockpilotConfig, load_config
from dockpilot.logging import setup_logging
from dockpilot.orchestrator.recreate import RecreateOrchestrator
from dockpilot.pipeline.container import DockerRuntimeClient

app = typer.Typer(
    name="dockpilot",
    help="DockPilot: safe container environment reconfiguration",
    no_args_is_help=True,
)

app.add_typer(env_cli.app, name="env", help="Read and change container environments")

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded DockPilot configuration
    """

    def __init__(self, config: DockpilotConfig):
        self.config = config

    def create_orchestrator(self) -> tuple[DockerRuntimeClient, RecreateOrchestrator]:
        """Connect a runtime client and build an orchestrator over it.

        The caller owns the runtime and must close it.
        """
        runtime = DockerRuntimeClient(self.config.docker)
        orchestrator = RecreateOrchestrator(
            runtime,
            self.config.recreate,
            stop_timeout_seconds=self.config.docker.stop_timeout_seconds,
        )
        return runtime, orchestrator


# Global context holder
_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: DockpilotConfig) -> AppContext:
    """Initialize the global application context."""
    global _app_context
    _app_context = AppContext(config)
    return _app_context


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
    """Start the DockPilot web server.

    Runs the FastAPI application with uvicorn, serving the container
    environment API and health endpoints.
    """
    import uvicorn

    from dockpilot.web.app import create_app

    config = get_app_context().config
    bind_host = host or config.web.host
    bind_port = port or config.web.port

    console.print("[bold cyan]Starting DockPilot Web Server[/bold cyan]")
    console.print(f"[dim]Host:[/dim] {bind_host}")
    console.print(f"[dim]Port:[/dim] {bind_port}")
    console.print()

    uvicorn.run(
        create_app(config),
        host=bind_host,
        port=bind_port,
        log_level=config.logging.level.lower(),
    )


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
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure global options and initialize application context."""
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)

    if verbose:
        config.logging.level = "DEBUG"

    # Logs go to stderr so command output stays clean
    setup_logging(config.logging, stream=sys.stderr)
    initialize_context(config)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
