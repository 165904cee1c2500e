"""autosetup serve — Serve a tour file over a local tour API."""

from __future__ import annotations

import threading
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from autosetup.models import DEFAULT_STUB_PORT
from autosetup.server.stub_api import TourApiServer

console = Console(stderr=True)


def serve(
    tour_file: Path = typer.Argument(..., help="Tour file (YAML or JSON) with configuration.api_key set."),
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind."),
    port: int = typer.Option(DEFAULT_STUB_PORT, "--port", "-p", help="Port to bind (0 picks a free one)."),
    prefix: str = typer.Option("/functions/v1", "--prefix", help="Path prefix in front of the endpoints."),
) -> None:
    """Serve get-configuration / save-progress / save-branch-choice for one tour.

    Progress lives in memory and is gone when the server stops.
    """
    try:
        server = TourApiServer(tour_file, host=host, port=port, path_prefix=prefix)
    except (FileNotFoundError, ValueError) as exc:
        console.print(Panel(f"[red]{exc}[/red]", title="[red]Input Error[/red]", border_style="red"))
        raise typer.Exit(code=2)

    config = server.store.tour.configuration
    if not config.api_key:
        console.print(
            Panel(
                "[red]The tour file has no configuration.api_key.[/red]\n\n"
                "Every request would be rejected. Add an api_key to the configuration block.",
                title="[red]Config Error[/red]",
                border_style="red",
            )
        )
        raise typer.Exit(code=2)

    try:
        server.start()
    except OSError as exc:
        console.print(Panel(f"[red]Could not bind {host}:{port}:[/red] {exc}", border_style="red"))
        raise typer.Exit(code=2)

    console.print(
        Panel(
            f"[bold]Tour:[/bold]      {config.name or config.id}\n"
            f"[bold]Config ID:[/bold] {config.id}\n"
            f"[bold]API base:[/bold]  {server.url}\n\n"
            "Press Ctrl+C to stop.",
            title="[bold cyan]AutoSetup Stub API[/bold cyan]",
            border_style="cyan",
        )
    )
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping.[/yellow]")
    finally:
        server.stop()
