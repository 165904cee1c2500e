"""autosetup validate — Check a tour file without opening a browser.

Validates the tour against the JSON schema, then checks the step graph:
duplicate ids and orders, dangling branch / default targets, branch points
without branches, actions missing the fields their type needs, and selectors
that do not parse.  With ``--snapshot`` every selector is also resolved
against a saved HTML page.  Zero network.
"""

from __future__ import annotations

import json
from collections import Counter
from pathlib import Path
from typing import Any

import soupsieve
import typer
import yaml
from bs4 import BeautifulSoup
from jsonschema import Draft7Validator
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from autosetup.engine.tour import Tour

console = Console(stderr=True)

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "schemas" / "tour.schema.json"

# Action types that act on an element and so need a selector
_SELECTOR_ACTIONS = {"click", "input", "scroll", "highlight", "open_modal"}

# ── Severity ordering ─────────────────────────────────────────────────────

_SEVERITY_ORDER = {"error": 0, "warning": 1, "info": 2}


def _issue(severity: str, field: str, message: str) -> dict[str, Any]:
    return {"severity": severity, "field": field, "message": message}


# ── Validation helpers ────────────────────────────────────────────────────


def load_tour_data(path: Path) -> tuple[dict[str, Any] | None, list[dict[str, Any]]]:
    """Parse a YAML/JSON tour file.  Returns (data, issues)."""
    try:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        return None, [_issue("error", "syntax", f"Parse error: {exc}")]
    if not isinstance(data, dict):
        return None, [_issue("error", "root", "Tour file must be a mapping")]
    return data, []


def schema_issues(data: dict[str, Any]) -> list[dict[str, Any]]:
    """JSON Schema (draft 7) errors for a raw tour document."""
    schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
    validator = Draft7Validator(schema)
    issues = []
    for err in sorted(validator.iter_errors(data), key=lambda e: list(e.path)):
        loc = ".".join(str(p) for p in err.path) if err.path else "root"
        issues.append(_issue("error", f"schema.{loc}", f"Schema validation error: {err.message}"))
    return issues


def _selector_ok(selector: str) -> bool:
    try:
        soupsieve.compile(selector)
    except soupsieve.SelectorSyntaxError:
        return False
    return True


def graph_issues(tour: Tour) -> list[dict[str, Any]]:
    """Structural problems in the step graph of a parsed tour."""
    issues: list[dict[str, Any]] = []
    step_ids = {s.id for s in tour.steps}

    if not tour.steps:
        issues.append(_issue("warning", "steps", "Tour has no steps"))

    for step_id, count in Counter(s.id for s in tour.steps).items():
        if count > 1:
            issues.append(_issue("error", "steps[].id", f"Step id '{step_id}' is used {count} times"))
    for order, count in Counter(s.step_order for s in tour.steps).items():
        if count > 1:
            issues.append(_issue("error", "steps[].step_order", f"step_order {order} is shared by {count} steps"))

    for step in tour.steps:
        where = f"steps[{step.id}]"

        if step.target_selector and not _selector_ok(step.target_selector):
            issues.append(_issue("error", f"{where}.target_selector", f"Invalid selector: {step.target_selector}"))

        if step.default_next_step_id and step.default_next_step_id not in step_ids:
            issues.append(
                _issue("error", f"{where}.default_next_step_id", f"Unknown step '{step.default_next_step_id}'")
            )
        if step.default_next_step_id == step.id:
            issues.append(_issue("warning", f"{where}.default_next_step_id", "Step continues to itself"))

        if step.is_branch_point and not step.branches:
            issues.append(
                _issue("warning", f"{where}.branches", "Branch point has no branches; it advances linearly")
            )
        if step.branches and not step.is_branch_point:
            issues.append(
                _issue("warning", f"{where}.is_branch_point", "Branches are ignored unless is_branch_point is set")
            )

        for order, count in Counter(a.action_order for a in step.actions).items():
            if count > 1:
                issues.append(
                    _issue("error", f"{where}.actions", f"action_order {order} is shared by {count} actions")
                )

        for branch in step.branches:
            bwhere = f"{where}.branches[{branch.id}]"
            if branch.next_step_id and branch.next_step_id not in step_ids:
                issues.append(_issue("error", f"{bwhere}.next_step_id", f"Unknown step '{branch.next_step_id}'"))
            if branch.next_step_id is None:
                issues.append(_issue("info", f"{bwhere}.next_step_id", "No target; choosing it keeps the step pending"))
            if branch.condition_type in ("click", "selector"):
                if not branch.condition_value:
                    issues.append(
                        _issue("error", f"{bwhere}.condition_value", f"{branch.condition_type} branch needs a selector")
                    )
                elif not _selector_ok(branch.condition_value):
                    issues.append(
                        _issue("error", f"{bwhere}.condition_value", f"Invalid selector: {branch.condition_value}")
                    )

        for action in step.actions:
            awhere = f"{where}.actions[{action.action_order}]"
            if action.action_type in _SELECTOR_ACTIONS and not action.selector:
                issues.append(_issue("error", f"{awhere}.selector", f"{action.action_type} action needs a selector"))
            elif action.selector and not _selector_ok(action.selector):
                issues.append(_issue("error", f"{awhere}.selector", f"Invalid selector: {action.selector}"))
            if action.action_type == "redirect" and not action.redirect_url:
                issues.append(_issue("error", f"{awhere}.redirect_url", "redirect action needs a redirect_url"))
            if action.action_type == "input" and action.value is None:
                issues.append(_issue("warning", f"{awhere}.value", "input action has no value; the field is cleared"))

    return issues


def snapshot_issues(tour: Tour, snapshot: Path) -> list[dict[str, Any]]:
    """Selectors in ``tour`` that match nothing in the saved page."""
    soup = BeautifulSoup(snapshot.read_text(encoding="utf-8"), "html.parser")
    issues: list[dict[str, Any]] = []

    def check(field: str, selector: str | None) -> None:
        if not selector or not _selector_ok(selector):
            return
        if soupsieve.select_one(selector, soup) is None:
            issues.append(_issue("warning", field, f"Selector matches nothing in {snapshot.name}: {selector}"))

    for step in tour.steps:
        check(f"steps[{step.id}].target_selector", step.target_selector)
        for action in step.actions:
            check(f"steps[{step.id}].actions[{action.action_order}].selector", action.selector)
        for branch in step.branches:
            if branch.condition_type == "selector":
                check(f"steps[{step.id}].branches[{branch.id}].condition_value", branch.condition_value)
    return issues


def validate_tour_file(path: Path, snapshot: Path | None = None) -> list[dict[str, Any]]:
    """Every issue for one tour file."""
    data, issues = load_tour_data(path)
    if data is None:
        return issues
    issues.extend(schema_issues(data))
    tour = Tour.from_dict(data)
    issues.extend(graph_issues(tour))
    if snapshot is not None:
        issues.extend(snapshot_issues(tour, snapshot))
    return issues


def _print_file_result(path: Path, issues: list[dict[str, Any]]) -> None:
    """Print validation results for a single file."""
    errors = [i for i in issues if i["severity"] == "error"]
    warnings = [i for i in issues if i["severity"] == "warning"]

    if not errors and not warnings:
        console.print(f"  [green]✓[/green] [dim]{path}[/dim]  [green]OK[/green]")
    elif errors:
        status = f"[bold red]{len(errors)} error(s)[/bold red]"
        if warnings:
            status += f", [yellow]{len(warnings)} warning(s)[/yellow]"
        console.print(f"  [red]✗[/red] [bold]{path}[/bold]  {status}")
    else:
        console.print(f"  [yellow]![/yellow] [dim]{path}[/dim]  [yellow]{len(warnings)} warning(s)[/yellow]")

    for issue in sorted(issues, key=lambda i: _SEVERITY_ORDER.get(i["severity"], 99)):
        sev_label = {
            "error": "[bold red]ERROR[/bold red]",
            "warning": "[yellow]WARN[/yellow]",
            "info": "[dim]INFO[/dim]",
        }.get(issue["severity"], issue["severity"])
        field = issue.get("field", "")
        field_str = f"[dim] ({escape(field)})[/dim]" if field else ""
        console.print(f"      {sev_label}{field_str}  {escape(issue['message'])}")


# ── CLI command ───────────────────────────────────────────────────────────


def validate(
    tour_files: list[Path] = typer.Argument(..., help="Tour files (YAML or JSON) to validate."),
    snapshot: Path | None = typer.Option(
        None,
        "--snapshot",
        "-s",
        help="Saved HTML page to resolve every selector against.",
    ),
    strict: bool = typer.Option(
        False,
        "--strict",
        help="Exit 1 on warnings as well as errors (default: exit 1 on errors only).",
    ),
) -> None:
    """Validate tour files without opening a browser.

    \b
    Examples:
      autosetup validate tours/onboarding.yaml
      autosetup validate tours/*.yaml --snapshot page.html --strict
    """
    if snapshot is not None and not snapshot.is_file():
        console.print(
            Panel(
                f"[red]Snapshot not found:[/red] {snapshot}",
                title="[red]Input Error[/red]",
                border_style="red",
            )
        )
        raise typer.Exit(code=2)

    total_errors = 0
    total_warnings = 0
    for path in tour_files:
        if not path.is_file():
            issues = [_issue("error", "file", f"File not found: {path}")]
        else:
            issues = validate_tour_file(path, snapshot)
        total_errors += sum(1 for i in issues if i["severity"] == "error")
        total_warnings += sum(1 for i in issues if i["severity"] == "warning")
        _print_file_result(path, issues)

    # ── Summary ────────────────────────────────────────────────────────
    console.print()
    if total_errors == 0 and total_warnings == 0:
        console.print(Panel("[bold green]All tours valid. No errors or warnings.[/bold green]", border_style="green"))
    elif total_errors > 0:
        console.print(
            Panel(
                f"[bold red]Validation failed.[/bold red]  "
                f"{total_errors} error(s), {total_warnings} warning(s)\n\n"
                "Fix the errors above before running the tour.",
                border_style="red",
            )
        )
        raise typer.Exit(code=1)
    elif strict:
        console.print(
            Panel(
                f"[bold yellow]Validation warnings found (--strict mode).[/bold yellow]  "
                f"{total_warnings} warning(s)",
                border_style="yellow",
            )
        )
        raise typer.Exit(code=1)
    else:
        console.print(
            Panel(
                f"[yellow]Validation passed with {total_warnings} warning(s).[/yellow]  "
                "Use [bold]--strict[/bold] to fail on warnings.",
                border_style="yellow",
            )
        )
