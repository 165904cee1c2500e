"""autosetup selectors — Synthesize selectors from a saved HTML page.

Prints a ``TOUR_CAPTURE_SCAN`` message on stdout (the same payload the page
capture script posts to the builder) and a summary table on stderr.  Save the
page with layout via ``PlaywrightPage.snapshot()`` to get real rects.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import soupsieve
import typer
from bs4 import BeautifulSoup
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from autosetup.capture.bridge import CAPTURE_SCAN
from autosetup.engine.selector import describe_element, scan_interactive
from autosetup.models import SCAN_LIMIT

console = Console(stderr=True)


def selectors(
    html_file: Path = typer.Argument(..., help="Saved HTML page."),
    css: Optional[str] = typer.Option(
        None,
        "--css",
        help="Describe the elements matching this selector instead of scanning interactive ones.",
    ),
    limit: int = typer.Option(SCAN_LIMIT, "--limit", "-n", help="Maximum elements to report."),
    token: str = typer.Option("", "--token", help="Session token to stamp on the payload."),
) -> None:
    """Print capture payloads for elements of a saved page.

    \b
    Examples:
      autosetup selectors page.html
      autosetup selectors page.html --css "form button"
    """
    if not html_file.is_file():
        console.print(
            Panel(f"[red]File not found:[/red] {html_file}", title="[red]Input Error[/red]", border_style="red")
        )
        raise typer.Exit(code=2)

    soup = BeautifulSoup(html_file.read_text(encoding="utf-8"), "html.parser")
    if css:
        try:
            matched = soupsieve.select(css, soup, limit=limit)
        except soupsieve.SelectorSyntaxError as exc:
            console.print(Panel(f"[red]Invalid selector:[/red] {exc}", title="[red]Input Error[/red]", border_style="red"))
            raise typer.Exit(code=2)
        elements = [describe_element(el, soup) for el in matched]
    else:
        elements = scan_interactive(soup, limit=limit)

    table = Table(title=f"{len(elements)} element(s) in {html_file.name}")
    table.add_column("Tag", style="dim")
    table.add_column("Label")
    table.add_column("Selector", style="cyan")
    for element in elements:
        table.add_row(element["tagName"], escape(element["label"]), escape(element["selector"]))
    console.print(table)

    typer.echo(json.dumps({"type": CAPTURE_SCAN, "token": token, "elements": elements}, indent=2))

    if not elements:
        raise typer.Exit(code=1)
