"""Tour data model — steps, actions, branches and per-client progress records.

Steps, actions and branches are authoring-time records owned by a
configuration.  Progress entries and branch choices are runtime records
owned by a (client, configuration) pair.  Everything here is built from the
``get-configuration`` response shape and serialized back to it, so the same
document can live in a local YAML/JSON tour file or come over the wire.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
import logging
from pathlib import Path
from typing import Any

import yaml

from autosetup.engine.theme import ThemeOverride

logger = logging.getLogger("autosetup.engine.tour")

ACTION_TYPES = ("click", "input", "scroll", "wait", "highlight", "open_modal", "redirect")
TARGET_TYPES = ("page", "modal")
PROGRESS_STATUSES = ("pending", "completed", "skipped")
BRANCH_CONDITION_TYPES = ("click", "selector", "custom")
REDIRECT_TYPES = ("push", "replace")
TOOLTIP_POSITIONS = ("top", "bottom", "left", "right", "auto")

PENDING = "pending"
COMPLETED = "completed"
SKIPPED = "skipped"


def _coerce_str(val: Any) -> str:
    if val is None:
        return ""
    return str(val)


def _coerce_opt_str(val: Any) -> str | None:
    if val is None or val == "":
        return None
    return str(val)


def _coerce_int(val: Any, default: int = 0) -> int:
    try:
        return int(val)
    except (TypeError, ValueError):
        return default


def _coerce_bool(val: Any, default: bool = False) -> bool:
    if val is None:
        return default
    if isinstance(val, str):
        return val.strip().lower() in ("1", "true", "yes", "on")
    return bool(val)


def _choice(val: Any, allowed: tuple[str, ...], default: str) -> str:
    text = _coerce_str(val).strip().lower()
    if text in allowed:
        return text
    if text:
        logger.warning("Unknown value %r (expected one of %s), using %r", val, allowed, default)
    return default


def utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds")


@dataclasses.dataclass
class Action:
    """One automated DOM interaction executed as part of a step."""

    id: str
    step_id: str
    action_type: str  # click, input, scroll, wait, highlight, open_modal, redirect
    action_order: int
    selector: str | None = None
    value: str | None = None
    input_type: str = "text"
    delay_ms: int = 0
    wait_for_element: bool = False
    scroll_to_element: bool = False
    scroll_behavior: str = "smooth"
    scroll_position: str = "center"
    highlight_color: str | None = None
    highlight_duration_ms: int = 2000
    highlight_animation: str = "pulse"
    redirect_url: str | None = None
    redirect_type: str = "push"
    redirect_delay_ms: int = 0
    redirect_wait_for_load: bool = False
    description: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], step_id: str = "") -> Action:
        return cls(
            id=_coerce_str(data.get("id")),
            step_id=_coerce_str(data.get("step_id") or step_id),
            action_type=_choice(data.get("action_type"), ACTION_TYPES, "wait"),
            action_order=_coerce_int(data.get("action_order")),
            selector=_coerce_opt_str(data.get("selector")),
            value=None if data.get("value") is None else str(data.get("value")),
            input_type=_coerce_str(data.get("input_type")) or "text",
            delay_ms=max(0, _coerce_int(data.get("delay_ms"))),
            wait_for_element=_coerce_bool(data.get("wait_for_element")),
            scroll_to_element=_coerce_bool(data.get("scroll_to_element")),
            scroll_behavior=_coerce_str(data.get("scroll_behavior")) or "smooth",
            scroll_position=_coerce_str(data.get("scroll_position")) or "center",
            highlight_color=_coerce_opt_str(data.get("highlight_color")),
            highlight_duration_ms=max(0, _coerce_int(data.get("highlight_duration_ms"), 2000)),
            highlight_animation=_coerce_str(data.get("highlight_animation")) or "pulse",
            redirect_url=_coerce_opt_str(data.get("redirect_url")),
            redirect_type=_choice(data.get("redirect_type"), REDIRECT_TYPES, "push"),
            redirect_delay_ms=max(0, _coerce_int(data.get("redirect_delay_ms"))),
            redirect_wait_for_load=_coerce_bool(data.get("redirect_wait_for_load")),
            description=_coerce_opt_str(data.get("description")),
        )

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class Branch:
    """A conditional edge from a branch-point step to another step."""

    id: str
    step_id: str
    condition_type: str  # click, selector, custom
    condition_label: str
    branch_order: int
    condition_value: str | None = None
    next_step_id: str | None = None  # None: no-op, the step stays pending

    @classmethod
    def from_dict(cls, data: dict[str, Any], step_id: str = "") -> Branch:
        return cls(
            id=_coerce_str(data.get("id")),
            step_id=_coerce_str(data.get("step_id") or step_id),
            condition_type=_choice(data.get("condition_type"), BRANCH_CONDITION_TYPES, "custom"),
            condition_label=_coerce_str(data.get("condition_label")),
            branch_order=_coerce_int(data.get("branch_order")),
            condition_value=_coerce_opt_str(data.get("condition_value")),
            next_step_id=_coerce_opt_str(data.get("next_step_id")),
        )

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class Step:
    """One unit of a tour, optionally tied to a DOM target."""

    id: str
    step_order: int
    title: str
    description: str | None = None
    instructions: str | None = None
    tips: str | None = None
    image_url: str | None = None
    target_type: str = "page"  # page, modal
    target_selector: str | None = None
    target_url: str | None = None
    position: str = "auto"  # tooltip placement preference
    is_required: bool = False
    is_branch_point: bool = False
    default_next_step_id: str | None = None
    show_next_button: bool = True
    theme_override: ThemeOverride | None = None
    actions: list[Action] = dataclasses.field(default_factory=list)
    branches: list[Branch] = dataclasses.field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Step:
        step_id = _coerce_str(data.get("id"))
        actions = [Action.from_dict(a, step_id) for a in data.get("actions") or []]
        branches = [Branch.from_dict(b, step_id) for b in data.get("branches") or []]
        override = data.get("theme_override")
        return cls(
            id=step_id,
            step_order=_coerce_int(data.get("step_order")),
            title=_coerce_str(data.get("title")),
            description=_coerce_opt_str(data.get("description")),
            instructions=_coerce_opt_str(data.get("instructions")),
            tips=_coerce_opt_str(data.get("tips")),
            image_url=_coerce_opt_str(data.get("image_url")),
            target_type=_choice(data.get("target_type"), TARGET_TYPES, "page"),
            target_selector=_coerce_opt_str(data.get("target_selector")),
            target_url=_coerce_opt_str(data.get("target_url")),
            position=_choice(data.get("position"), TOOLTIP_POSITIONS, "auto"),
            is_required=_coerce_bool(data.get("is_required")),
            is_branch_point=_coerce_bool(data.get("is_branch_point")),
            default_next_step_id=_coerce_opt_str(data.get("default_next_step_id")),
            show_next_button=_coerce_bool(data.get("show_next_button"), default=True),
            theme_override=ThemeOverride.from_dict(override) if isinstance(override, dict) else None,
            actions=sorted(actions, key=lambda a: a.action_order),
            branches=sorted(branches, key=lambda b: b.branch_order),
        )

    @property
    def has_branches(self) -> bool:
        """True when next-step resolution is governed by branch logic."""
        return self.is_branch_point and len(self.branches) > 0

    def branch(self, branch_id: str) -> Branch | None:
        for b in self.branches:
            if b.id == branch_id:
                return b
        return None

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["theme_override"] = self.theme_override.to_dict() if self.theme_override else None
        data["actions"] = [a.to_dict() for a in self.actions]
        data["branches"] = [b.to_dict() for b in self.branches]
        return data


@dataclasses.dataclass
class ProgressEntry:
    """Persisted completion/skip status of one step for one client."""

    step_id: str
    status: str  # pending, completed, skipped
    completed_at: str | None = None
    skipped_at: str | None = None

    @classmethod
    def from_dict(cls, step_id: str, data: dict[str, Any]) -> ProgressEntry:
        return cls(
            step_id=step_id,
            status=_choice(data.get("status"), PROGRESS_STATUSES, PENDING),
            completed_at=_coerce_opt_str(data.get("completed_at") or data.get("completedAt")),
            skipped_at=_coerce_opt_str(data.get("skipped_at") or data.get("skippedAt")),
        )

    @classmethod
    def stamped(cls, step_id: str, status: str) -> ProgressEntry:
        """Build an entry for ``status`` timestamped now."""
        now = utc_now_iso()
        return cls(
            step_id=step_id,
            status=status,
            completed_at=now if status == COMPLETED else None,
            skipped_at=now if status == SKIPPED else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status}
        if self.completed_at:
            data["completed_at"] = self.completed_at
        if self.skipped_at:
            data["skipped_at"] = self.skipped_at
        return data


@dataclasses.dataclass
class BranchChoice:
    """The branch a client took at a branch point."""

    step_id: str
    branch_id: str


@dataclasses.dataclass
class TourConfiguration:
    """Configuration-level settings delivered alongside the steps."""

    id: str
    name: str = ""
    description: str | None = None
    target_url: str | None = None
    widget_position: str = "top-bar"
    auto_start: bool = True
    allowed_routes: list[str] = dataclasses.field(default_factory=list)
    theme: dict[str, Any] = dataclasses.field(default_factory=dict)
    api_key: str | None = None  # only present in local tour files

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TourConfiguration:
        routes = data.get("allowed_routes") or data.get("allowedRoutes") or []
        return cls(
            id=_coerce_str(data.get("id")),
            name=_coerce_str(data.get("name")),
            description=_coerce_opt_str(data.get("description")),
            target_url=_coerce_opt_str(data.get("target_url")),
            widget_position=_coerce_str(data.get("widget_position")) or "top-bar",
            auto_start=_coerce_bool(data.get("auto_start"), default=True),
            allowed_routes=[str(r) for r in routes if r],
            theme=dict(data.get("theme") or {}),
            api_key=_coerce_opt_str(data.get("api_key")),
        )

    def to_dict(self, include_secrets: bool = False) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        if not include_secrets:
            data.pop("api_key", None)
        return data


@dataclasses.dataclass
class Tour:
    """A configuration with its ordered steps plus any client progress."""

    configuration: TourConfiguration
    steps: list[Step]
    progress: dict[str, ProgressEntry] = dataclasses.field(default_factory=dict)
    branch_choices: dict[str, str] = dataclasses.field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Tour:
        steps = [Step.from_dict(s) for s in data.get("steps") or []]
        progress_raw = data.get("progress") or {}
        progress = {
            str(step_id): ProgressEntry.from_dict(str(step_id), entry)
            for step_id, entry in progress_raw.items()
            if isinstance(entry, dict)
        }
        choices = data.get("branchChoices") or data.get("branch_choices") or {}
        return cls(
            configuration=TourConfiguration.from_dict(data.get("configuration") or {}),
            steps=sorted(steps, key=lambda s: s.step_order),
            progress=progress,
            branch_choices={str(k): str(v) for k, v in choices.items() if v},
        )

    def to_dict(self, include_secrets: bool = False) -> dict[str, Any]:
        return {
            "configuration": self.configuration.to_dict(include_secrets=include_secrets),
            "steps": [s.to_dict() for s in self.steps],
            "progress": {k: v.to_dict() for k, v in self.progress.items()},
            "branchChoices": dict(self.branch_choices),
        }

    @classmethod
    def from_file(cls, path: Path) -> Tour:
        """Load a tour file.  JSON is a subset of YAML, so one loader serves both."""
        if not path.exists():
            raise FileNotFoundError(f"Tour file not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
        if not isinstance(raw, dict):
            raise ValueError(f"Tour file must contain a mapping: {path}")
        return cls.from_dict(raw)

    def write(self, path: Path) -> None:
        """Write the tour back, as JSON for a .json path and YAML otherwise."""
        data = self.to_dict(include_secrets=True)
        with open(path, "w", encoding="utf-8") as f:
            if path.suffix == ".json":
                json.dump(data, f, indent=2)
                f.write("\n")
            else:
                yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)

    def step(self, step_id: str) -> Step | None:
        for s in self.steps:
            if s.id == step_id:
                return s
        return None

    # -- Authoring operations ------------------------------------------------

    def append_step(self, step: Step) -> Step:
        """Add a step with the provisional order ``max + 1``."""
        step.step_order = max((s.step_order for s in self.steps), default=0) + 1
        self.steps.append(step)
        return step

    def reorder(self, step_ids: list[str]) -> None:
        """Renumber every step to follow ``step_ids`` (1..n).

        The new order is computed in full before any step is touched, so a
        bad id leaves the tour unchanged.
        """
        by_id = {s.id: s for s in self.steps}
        if sorted(step_ids) != sorted(by_id):
            raise ValueError("reorder() needs every step id exactly once")
        reordered = [by_id[sid] for sid in step_ids]
        for order, s in enumerate(reordered, start=1):
            s.step_order = order
        self.steps = reordered

    def remove_step(self, step_id: str) -> Step | None:
        """Delete a step together with its actions and branches."""
        target = self.step(step_id)
        if target is None:
            return None
        self.steps = [s for s in self.steps if s.id != step_id]
        self.progress.pop(step_id, None)
        self.branch_choices.pop(step_id, None)
        return target
