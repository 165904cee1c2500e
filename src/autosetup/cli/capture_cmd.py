"""autosetup capture — Import a captured element or step into a tour file.

The clipboard fallback of the capture bridge: paste the JSON the page capture
script or the browser extension copied, and it becomes a new step appended to
the tour.  Typed messages must carry the session token; the extension's bare
``{"selector": ...}`` payload is accepted as-is.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from autosetup.capture.bridge import (
    CAPTURE_ELEMENT,
    CAPTURE_READY,
    CAPTURE_SCAN,
    CaptureBridge,
    CaptureError,
    step_from_capture,
    step_from_message,
)
from autosetup.engine.tour import Tour

console = Console(stderr=True)


def _read_payload(payload: str) -> str:
    if payload == "-":
        return sys.stdin.read()
    candidate = Path(payload)
    if not payload.lstrip().startswith("{") and candidate.is_file():
        return candidate.read_text(encoding="utf-8")
    return payload


def capture(
    tour_file: Path = typer.Argument(..., help="Tour file (YAML or JSON) to append to."),
    payload: str = typer.Argument(..., help="Captured JSON, a file holding it, or - for stdin."),
    token: str = typer.Option("", "--token", help="Session token the capture script was started with."),
    step_type: Optional[str] = typer.Option(
        None,
        "--type",
        help="Step type for an element capture (click, input, wait, highlight, modal).",
    ),
    title: Optional[str] = typer.Option(None, "--title", help="Title for the new step."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the step without writing the tour file."),
) -> None:
    """Append a captured step to a tour file.

    \b
    Examples:
      autosetup capture tours/onboarding.yaml '{"selector": "#save"}' --type click
      pbpaste | autosetup capture tours/onboarding.yaml - --token abc123
    """
    try:
        tour = Tour.from_file(tour_file)
    except (FileNotFoundError, ValueError) as exc:
        console.print(Panel(f"[red]{exc}[/red]", title="[red]Input Error[/red]", border_style="red"))
        raise typer.Exit(code=2)

    bridge = CaptureBridge(token=token, builder_origin="http://localhost")
    try:
        message = bridge.receive_clipboard(_read_payload(payload))
    except CaptureError as exc:
        console.print(Panel(f"[red]{escape(str(exc))}[/red]", title="[red]Capture Error[/red]", border_style="red"))
        raise typer.Exit(code=2)
    if message is None:
        console.print(
            Panel(
                "[red]Capture ignored.[/red]\n\n"
                "The payload is malformed or its token does not match --token.",
                title="[red]Capture Error[/red]",
                border_style="red",
            )
        )
        raise typer.Exit(code=1)

    if message.type == CAPTURE_READY:
        console.print("[green]Capture script is ready.[/green] Nothing to import.")
        return
    if message.type == CAPTURE_SCAN:
        console.print(f"Scan lists {len(message.elements)} element(s); capture one of them to add a step.")
        for element in message.elements:
            console.print(f"  [cyan]{escape(element.selector)}[/cyan]  [dim]{escape(element.label)}[/dim]")
        return

    if message.type == CAPTURE_ELEMENT and message.element is not None:
        step = step_from_capture(
            message.element.selector,
            step_type=step_type or "highlight",
            title=title or message.element.label or None,
        )
    else:
        step = step_from_message(message)
        if title:
            step.title = title

    tour.append_step(step)
    action_note = f" with a {step.actions[0].action_type} action" if step.actions else ""
    console.print(
        f"[green]✓[/green] Step [bold]{escape(step.title)}[/bold] ({step.id}) at order {step.step_order}"
        f"{action_note}: [cyan]{escape(step.target_selector or '')}[/cyan]"
    )
    if dry_run:
        return
    tour.write(tour_file)
    console.print(f"[dim]Wrote {tour_file}[/dim]")
