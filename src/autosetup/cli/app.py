"""AutoSetup CLI — Main Typer entry point.

Registers all subcommands and provides --version / --verbose global options.
"""

from __future__ import annotations

import typer
from rich.console import Console

from autosetup import __version__

# ── ASCII Banner ──────────────────────────────────────────────────────────

BANNER = r"""
 █████╗ ██╗   ██╗████████╗ ██████╗ ███████╗███████╗████████╗██╗   ██╗██████╗
██╔══██╗██║   ██║╚══██╔══╝██╔═══██╗██╔════╝██╔════╝╚══██╔══╝██║   ██║██╔══██╗
███████║██║   ██║   ██║   ██║   ██║███████╗█████╗     ██║   ██║   ██║██████╔╝
██╔══██║██║   ██║   ██║   ██║   ██║╚════██║██╔══╝     ██║   ██║   ██║██╔═══╝
██║  ██║╚██████╔╝   ██║   ╚██████╔╝███████║███████╗   ██║   ╚██████╔╝██║
╚═╝  ╚═╝ ╚═════╝    ╚═╝    ╚═════╝ ╚══════╝╚══════╝   ╚═╝    ╚═════╝ ╚═╝
"""

TAGLINE = "Guided setup tours that click through your app with your users."

console = Console()

# ── Version callback ──────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print(BANNER, style="bold cyan")
        console.print(f"  {TAGLINE}", style="dim")
        console.print(f"  v{__version__}\n", style="bold")
        raise typer.Exit()


# ── Main app ──────────────────────────────────────────────────────────────

app = typer.Typer(
    name="autosetup",
    help=f"{BANNER}\n{TAGLINE}",
    rich_markup_mode="rich",
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show AutoSetup version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose output.",
    ),
) -> None:
    """AutoSetup -- interactive onboarding tours for web apps.

    Tours are data. Steps run actions, branch, and remember progress.
    """
    if verbose:
        import logging

        logging.basicConfig(level=logging.DEBUG, format="%(name)s  %(message)s")


# ── Register subcommands ──────────────────────────────────────────────────
# Each subcommand is a separate module to keep this file lean.

from autosetup.cli.capture_cmd import capture  # noqa: E402
from autosetup.cli.run import run  # noqa: E402
from autosetup.cli.selectors import selectors  # noqa: E402
from autosetup.cli.serve import serve  # noqa: E402
from autosetup.cli.validate import validate  # noqa: E402

app.command(name="run", help="Run a tour against a live page in Chromium.")(run)
app.command(name="validate", help="Validate a tour file without opening a browser.")(validate)
app.command(name="selectors", help="Synthesize selectors from a saved HTML page.")(selectors)
app.command(name="capture", help="Import a captured element or step into a tour file.")(capture)
app.command(name="serve", help="Serve a tour file over a local tour API.")(serve)
