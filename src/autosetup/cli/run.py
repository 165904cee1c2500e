"""autosetup run — Run a tour against a live page.

Loads the tour (from the tour API or a local tour file), opens the target URL
in Chromium via Playwright, embeds the engine and reports step progress with
Rich.  In ``--auto`` mode every step is completed as soon as its actions have
run, which walks the whole tour unattended; otherwise the tour waits for the
user to drive it from the overlay in a visible browser.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from autosetup.config import AutoSetupConfig, AutoSetupConfigError, WidgetOptions
from autosetup.credentials import lookup_api_key, mask_key
from autosetup.engine.api_client import TourApiClient
from autosetup.engine.errors import ConfigFetchFailed, TourEngineError
from autosetup.engine.events import TourEvent
from autosetup.engine.progress_store import JsonFileCache, LocalCache, client_id_for
from autosetup.engine.state_machine import FINISHED, IDLE
from autosetup.engine.tour import Tour
from autosetup.engine.widget import TourEngine

console = Console(stderr=True)

logger = logging.getLogger("autosetup.cli.run")


def _parse_viewport(viewport_str: str) -> tuple[int, int]:
    """Parse a 'WIDTHxHEIGHT' string into a (width, height) tuple."""
    try:
        parts = viewport_str.lower().split("x")
        if len(parts) != 2:
            raise ValueError
        return (int(parts[0]), int(parts[1]))
    except (ValueError, IndexError):
        console.print(
            Panel(
                f"[red]Invalid viewport format:[/red] {viewport_str}\n\n"
                "Expected format: WIDTHxHEIGHT (e.g., 1280x720)",
                title="[red]Config Error[/red]",
                border_style="red",
            )
        )
        raise typer.Exit(code=2)


def _resolve_project_dir() -> Path:
    """Find the .autosetup/ project directory, searching upward from cwd."""
    current = Path.cwd()
    candidate = current / ".autosetup"
    if candidate.is_dir():
        return candidate
    for parent in current.parents:
        candidate = parent / ".autosetup"
        if candidate.is_dir():
            return candidate
    return current / ".autosetup"


def _load_config(project_dir: Path) -> AutoSetupConfig:
    config_path = project_dir / "config.yaml"
    if config_path.is_file():
        return AutoSetupConfig.from_file(config_path)
    config = AutoSetupConfig()
    config.project_dir = project_dir
    config.cache_path = project_dir / "cache.json"
    return config


def _config_error(exc: Exception, title: str = "Config Error") -> typer.Exit:
    console.print(Panel(f"[red]{exc}[/red]", title=f"[red]{title}[/red]", border_style="red"))
    return typer.Exit(code=2)


def _print_run_header(
    tour_name: str,
    url: str,
    source: str,
    viewport: tuple[int, int],
    headless: bool,
    auto: bool,
    api_key_display: str,
) -> None:
    """Print a styled header before the run starts."""
    info_lines = [
        f"[bold]Tour:[/bold]      {tour_name}",
        f"[bold]Source:[/bold]    {source}",
        f"[bold]URL:[/bold]       {url}",
        f"[bold]Viewport:[/bold]  {viewport[0]}x{viewport[1]}",
        f"[bold]Headless:[/bold]  {headless}",
        f"[bold]Mode:[/bold]      {'auto' if auto else 'interactive'}",
        f"[bold]API Key:[/bold]   {api_key_display}",
    ]
    console.print()
    console.print(
        Panel(
            "\n".join(info_lines),
            title="[bold cyan]AutoSetup Run[/bold cyan]",
            border_style="cyan",
        )
    )
    console.print()


def _attach_reporters(engine: TourEngine) -> None:
    """Print engine events as they happen."""

    def on_step(event: dict[str, Any]) -> None:
        step = event["step"]
        console.print(f"  [cyan]→[/cyan] Step {event['index'] + 1}/{event['total']}: [bold]{escape(step['title'])}[/bold]")

    def on_action(event: dict[str, Any]) -> None:
        action = event["action"]
        target = action.get("selector") or action.get("redirect_url") or ""
        console.print(f"    [green]✓[/green] [dim]{action['action_type']} {escape(target)}[/dim]")

    def on_action_error(event: dict[str, Any]) -> None:
        action = event["action"]
        error = event.get("error") or ""
        error_short = error if len(error) <= 120 else error[:117] + "..."
        console.print(f"    [red]✗[/red] {action['action_type']}  [dim red]{escape(error_short)}[/dim red]")

    def on_branch(event: dict[str, Any]) -> None:
        console.print(f"    [magenta]↳[/magenta] branch {event['branch_id']} -> {event['next_step_id'] or 'end'}")

    def on_error(event: dict[str, Any]) -> None:
        console.print(f"    [yellow]![/yellow] {escape(str(event.get('error')))}")

    engine.on(TourEvent.STEP_CHANGE, on_step)
    engine.on(TourEvent.ACTION_EXECUTED, on_action)
    engine.on(TourEvent.ACTION_ERROR, on_action_error)
    engine.on(TourEvent.BRANCH_CHOSEN, on_branch)
    engine.on(TourEvent.ERROR, on_error)


async def _run_tour(
    options: WidgetOptions,
    url: str,
    tour: Tour | None,
    client: TourApiClient | None,
    cache: LocalCache,
    config: AutoSetupConfig,
    viewport: tuple[int, int],
    headless: bool,
    auto: bool,
    timeout_s: float,
) -> dict[str, Any]:
    from playwright.async_api import async_playwright

    from autosetup.engine.playwright_page import PlaywrightPage

    async with async_playwright() as pw:
        browser = await pw.chromium.launch(headless=headless)
        try:
            page = await browser.new_page(viewport={"width": viewport[0], "height": viewport[1]})
            driver = PlaywrightPage(page)
            await driver.install()
            await page.goto(url, wait_until="load")

            engine = TourEngine(
                driver,
                options,
                client=client,
                cache=cache,
                tour=tour,
                element_timeout_ms=config.element_timeout_ms,
                sync_debounce_ms=config.sync_debounce_ms,
            )
            done = asyncio.Event()
            engine.on(TourEvent.COMPLETE, lambda _event: done.set())
            _attach_reporters(engine)

            await engine.init()
            try:
                if auto:
                    await _auto_walk(engine, timeout_s)
                else:
                    await asyncio.wait_for(done.wait(), timeout=timeout_s)
            except asyncio.TimeoutError:
                console.print(f"\n[yellow]Tour not finished after {timeout_s:.0f}s.[/yellow]")
            progress = engine.get_progress()
            await engine.destroy()
            return progress
        finally:
            await browser.close()


async def _auto_walk(engine: TourEngine, timeout_s: float) -> None:
    """Complete each step once its presentation (and actions) settle."""
    deadline = time.monotonic() + timeout_s
    machine = engine.machine
    if machine.state == IDLE:
        await engine.start()
    while machine.current_step is not None and machine.state != FINISHED:
        if time.monotonic() > deadline:
            raise asyncio.TimeoutError
        await engine.settle()
        await engine.complete_step()
    await engine.settle()


def _print_summary_panel(progress: dict[str, Any], duration: float) -> None:
    finished = progress["state"] == "completed"
    border = "green" if finished else "yellow"
    verdict = "[bold green]TOUR COMPLETE[/bold green]" if finished else "[bold yellow]TOUR INCOMPLETE[/bold yellow]"

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_row("Completed", f"{progress['completed']}/{progress['total']}")
    table.add_row("Skipped", str(progress["skipped"]))
    table.add_row("Progress", f"{progress['percentage']}%")
    table.add_row("Duration", f"{duration:.1f}s")

    console.print()
    console.print(Panel(table, title=verdict, border_style=border))
    console.print()


# ── CLI command ───────────────────────────────────────────────────────────


def run(
    tour_file: Optional[Path] = typer.Option(
        None,
        "--tour",
        "-t",
        help="Local tour file (YAML or JSON). Omit to fetch the tour from the API.",
    ),
    config_id: Optional[str] = typer.Option(
        None,
        "--config-id",
        "-c",
        help="Configuration ID to fetch. Defaults to config_id in .autosetup/config.yaml.",
    ),
    api_key: Optional[str] = typer.Option(
        None,
        "--api-key",
        help="Configuration API key. Defaults to AUTOSETUP_API_KEY / config files.",
    ),
    api_base: Optional[str] = typer.Option(
        None,
        "--api-base",
        help="Tour API base URL.",
    ),
    url: Optional[str] = typer.Option(
        None,
        "--url",
        "-u",
        help="Page to open. Defaults to the configuration's target_url.",
    ),
    viewport: str = typer.Option(
        "1280x720",
        "--viewport",
        help="Browser viewport as WIDTHxHEIGHT.",
    ),
    headless: bool = typer.Option(
        True,
        "--headless/--no-headless",
        help="Run browser in headless mode (default) or visible.",
    ),
    auto: bool = typer.Option(
        True,
        "--auto/--interactive",
        help="Complete steps automatically (default) or wait for the user to drive the overlay.",
    ),
    timeout: float = typer.Option(
        300.0,
        "--timeout",
        help="Seconds to wait for the tour to finish.",
    ),
    output_format: str = typer.Option(
        "text",
        "--output",
        "-o",
        help="Output format: text or json.",
    ),
) -> None:
    """Run a tour in Chromium and report its progress.

    \b
    Examples:
      autosetup run -t tours/onboarding.yaml -u http://localhost:3000
      autosetup run -c cfg_123 --no-headless --interactive
    """
    if output_format not in ("text", "json"):
        console.print(
            Panel(
                f"[red]Invalid output format:[/red] {output_format}\n\n"
                "Valid formats: text, json",
                title="[red]Config Error[/red]",
                border_style="red",
            )
        )
        raise typer.Exit(code=2)

    vp = _parse_viewport(viewport)
    project_dir = _resolve_project_dir()

    try:
        config = _load_config(project_dir)
    except AutoSetupConfigError as exc:
        raise _config_error(exc)
    if api_base:
        config.api_base = api_base.rstrip("/")

    tour: Tour | None = None
    client: TourApiClient | None = None
    cache = JsonFileCache(config.cache_path)
    try:
        if tour_file is not None:
            tour = Tour.from_file(tour_file)
            key = api_key or tour.configuration.api_key or "local"
            options = config.widget_options(config_id=tour.configuration.id, api_key=key)
            source = str(tour_file)
            key_display = mask_key(key)
        else:
            # The project config is one of the lookup sources
            credential = lookup_api_key(project_dir, explicit=api_key)
            options = config.widget_options(config_id=config_id, api_key=credential.value)
            key_display = credential.display
            options.client_id = options.client_id or client_id_for(cache)
            client = TourApiClient(config.api_base)
            tour = client.fetch_configuration(options.config_id, options.api_key, options.client_id)
            source = config.api_base
    except (AutoSetupConfigError, FileNotFoundError, ValueError) as exc:
        raise _config_error(exc)
    except ConfigFetchFailed as exc:
        raise _config_error(exc, title="Tour Load Error")

    target_url = url or tour.configuration.target_url
    if not target_url:
        raise _config_error(
            AutoSetupConfigError("No page to open\n\nTo fix: pass --url or set target_url on the configuration")
        )

    if output_format == "text":
        _print_run_header(
            tour_name=tour.configuration.name or tour.configuration.id,
            url=target_url,
            source=source,
            viewport=vp,
            headless=headless,
            auto=auto,
            api_key_display=key_display,
        )

    start_time = time.monotonic()
    try:
        progress = asyncio.run(
            _run_tour(options, target_url, tour, client, cache, config, vp, headless, auto, timeout)
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Run interrupted by user.[/yellow]")
        raise typer.Exit(code=1)
    except TourEngineError as exc:
        console.print(Panel(f"[red]{exc}[/red]", title="[red]Engine Error[/red]", border_style="red"))
        raise typer.Exit(code=1)
    except Exception as exc:
        logger.exception("Unexpected error during run")
        console.print(
            Panel(
                f"[red]Unexpected error:[/red] {exc}\n\n"
                "Run with [bold]--verbose[/bold] for full traceback.",
                title="[red]Infrastructure Error[/red]",
                border_style="red",
            )
        )
        raise typer.Exit(code=3)
    finally:
        if client is not None:
            client.close()

    duration = time.monotonic() - start_time
    if output_format == "json":
        typer.echo(json.dumps({**progress, "duration_seconds": round(duration, 2)}, indent=2))
    else:
        _print_summary_panel(progress, duration)

    if progress["state"] != "completed":
        raise typer.Exit(code=1)
