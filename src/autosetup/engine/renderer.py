"""AutoSetup Renderer — highlight boxes, tooltips, modals and widget chrome.

All step-level visuals share one overlay node (``autosetup-overlay``):
painting a new highlight, tooltip or modal always removes the previous one
first.  The widget chrome (top bar with its progress roadmap, minimized pill,
completion banner) lives in a second node (``autosetup-widget``) with the
same singleton rule, and the action status pill in a third
(``autosetup-indicator``).

Markup comes from Jinja2 templates with HTML autoescaping, since titles and
descriptions are authored content.  The overlay container never takes
pointer events; only its own buttons do.  Each button carries a
``data-autosetup-command`` attribute that the page driver forwards to the
engine's command listener.
"""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

from autosetup.engine.protocols import Overlay, PageDriver, Rect, Viewport
from autosetup.engine.theme import HIGHLIGHT_ANIMATIONS, Theme
from autosetup.engine.tour import PENDING, Step
from autosetup.engine.visibility import VisibleStep
from autosetup.models import DEFAULT_WIDGET_POSITION

logger = logging.getLogger("autosetup.engine.renderer")

_TEMPLATES_DIR = Path(__file__).parent / "templates"

OVERLAY_ID = "autosetup-overlay"
CHROME_ID = "autosetup-widget"
INDICATOR_ID = "autosetup-indicator"

TOOLTIP_GAP = 12
VIEWPORT_MARGIN = 8
ARROW_PADDING = 16
HIGHLIGHT_PADDING = 4
TOOLTIP_SIZE = (320, 180)  # estimated width, height

_OPPOSITE = {"top": "bottom", "bottom": "top", "left": "right", "right": "left"}
_PERPENDICULAR = {
    "top": ("right", "left"),
    "bottom": ("right", "left"),
    "left": ("bottom", "top"),
    "right": ("bottom", "top"),
}
_AUTO_ORDER = ("bottom", "top", "right", "left")


# ---------------------------------------------------------------------------
# Tooltip placement
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class Placement:
    """Where a tooltip goes and where its arrow points.

    ``arrow_offset`` is measured from the tooltip's left edge for top/bottom
    placements and from its top edge for left/right placements.
    """

    side: str
    top: float
    left: float
    arrow_offset: float
    clamped: bool = False


def _candidate_sides(preferred: str) -> tuple[str, ...]:
    if preferred not in _OPPOSITE:
        return _AUTO_ORDER
    return (preferred, _OPPOSITE[preferred], *_PERPENDICULAR[preferred])


def _raw_position(side: str, target: Rect, width: float, height: float, gap: float) -> tuple[float, float]:
    if side == "top":
        return target.top - gap - height, target.center_x - width / 2
    if side == "bottom":
        return target.bottom + gap, target.center_x - width / 2
    if side == "left":
        return target.center_y - height / 2, target.left - gap - width
    return target.center_y - height / 2, target.right + gap


def _fits(side: str, top: float, left: float, width: float, height: float, viewport: Viewport, margin: float) -> bool:
    # Only the main axis decides; the cross axis is always clamped afterwards
    if side == "top":
        return top >= margin
    if side == "bottom":
        return top + height <= viewport.height - margin
    if side == "left":
        return left >= margin
    return left + width <= viewport.width - margin


def _clamp(value: float, size: float, limit: float, margin: float) -> float:
    upper = limit - margin - size
    if upper < margin:
        return margin
    return min(max(value, margin), upper)


def compute_tooltip_placement(
    target: Rect,
    size: tuple[float, float],
    viewport: Viewport,
    preferred: str = "auto",
    gap: float = TOOLTIP_GAP,
    margin: float = VIEWPORT_MARGIN,
) -> Placement:
    """Place a ``size`` tooltip next to ``target`` inside ``viewport``.

    Tries the preferred side, then the opposite side, then the two
    perpendicular sides (``auto`` tries bottom, top, right, left).  If no side
    fits, the first candidate is used anyway.  The result is clamped to the
    viewport margins, and the arrow offset is recomputed so the arrow still
    points at the target's center.
    """
    width, height = size
    sides = _candidate_sides(preferred)
    chosen = sides[0]
    for side in sides:
        top, left = _raw_position(side, target, width, height, gap)
        if _fits(side, top, left, width, height, viewport, margin):
            chosen = side
            break

    raw_top, raw_left = _raw_position(chosen, target, width, height, gap)
    top = _clamp(raw_top, height, viewport.height, margin)
    left = _clamp(raw_left, width, viewport.width, margin)

    if chosen in ("top", "bottom"):
        arrow = target.center_x - left
        arrow = min(max(arrow, ARROW_PADDING), max(ARROW_PADDING, width - ARROW_PADDING))
    else:
        arrow = target.center_y - top
        arrow = min(max(arrow, ARROW_PADDING), max(ARROW_PADDING, height - ARROW_PADDING))

    return Placement(
        side=chosen,
        top=round(top, 2),
        left=round(left, 2),
        arrow_offset=round(arrow, 2),
        clamped=(top, left) != (raw_top, raw_left),
    )


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------


def step_commands(step: Step, step_number: int) -> list[str]:
    """Buttons a step's tooltip or modal offers, as overlay commands."""
    commands: list[str] = []
    if step_number > 1:
        commands.append("prev")
    if step.has_branches:
        commands.extend(f"branch:{b.id}" for b in step.branches if b.condition_type == "custom")
    if step.show_next_button:
        commands.append("complete")
    if not step.is_required:
        commands.append("skip")
    commands.append("minimize")
    return commands


@dataclasses.dataclass(frozen=True)
class RoadmapEntry:
    """One unlocked step in the top bar's progress roadmap."""

    index: int  # position in step order, the argument of goto:/reset:
    title: str
    status: str
    active: bool
    branch_path: str | None
    awaiting_choice: bool
    commands: tuple[str, ...]


def roadmap_entries(visible: list[VisibleStep], steps: list[Step]) -> list[RoadmapEntry]:
    """Roadmap rows for the unlocked part of a visible-step projection.

    Every row but the active one can be jumped to (``goto:<index>``); rows
    that already carry progress can also be restarted (``reset:<index>``).
    Locked steps get no row.
    """
    index_of = {step.id: index for index, step in enumerate(steps)}
    entries: list[RoadmapEntry] = []
    for item in visible:
        if item.locked or item.step.id not in index_of:
            continue
        index = index_of[item.step.id]
        commands: list[str] = []
        if not item.active:
            commands.append(f"goto:{index}")
        if item.status != PENDING:
            commands.append(f"reset:{index}")
        entries.append(
            RoadmapEntry(
                index=index,
                title=item.step.title,
                status=item.status,
                active=item.active,
                branch_path=item.branch_path,
                awaiting_choice=item.has_locked_branches and not item.branch_path,
                commands=tuple(commands),
            )
        )
    return entries


class OverlayRenderer:
    """Paints engine-owned overlay nodes through a :class:`PageDriver`."""

    def __init__(self, page: PageDriver, theme: Theme | None = None, position: str = DEFAULT_WIDGET_POSITION) -> None:
        self._page = page
        self.theme = theme or Theme()
        self.position = position
        self.current: Overlay | None = None
        self.chrome: Overlay | None = None
        self.indicator: Overlay | None = None
        self._env = Environment(
            loader=FileSystemLoader(str(_TEMPLATES_DIR)),
            autoescape=select_autoescape(["html"]),
        )

    def _render(self, template: str, **context: Any) -> str:
        return self._env.get_template(template).render(**context)

    def _css(self, theme: Theme) -> str:
        return self._render("styles.css", theme=theme)

    async def _mount(self, overlay: Overlay) -> Overlay:
        await self.clear()
        await self._page.mount_overlay(overlay)
        self.current = overlay
        return overlay

    async def clear(self) -> None:
        """Remove the step overlay, if one is mounted."""
        if self.current is None:
            return
        self.current = None
        await self._page.remove_overlay(OVERLAY_ID)

    # -- Step visuals --------------------------------------------------------

    async def highlight(
        self,
        element: Any,
        theme: Theme | None = None,
        color: str | None = None,
        animation: str | None = None,
    ) -> Overlay | None:
        """Draw an animated box around ``element``."""
        theme = theme or self.theme
        rect = await self._page.bounding_box(element)
        if rect is None:
            logger.debug("Element has no box; skipping highlight")
            return None
        html = self._render(
            "highlight.html",
            box=_padded(rect),
            color=color or theme.primary_color,
            animation=animation if animation in HIGHLIGHT_ANIMATIONS else theme.highlight_animation,
            theme=theme,
        )
        return await self._mount(Overlay(OVERLAY_ID, "highlight", html, self._css(theme)))

    async def tooltip(
        self,
        step: Step,
        element: Any,
        theme: Theme | None = None,
        step_number: int = 1,
        total: int = 1,
    ) -> Overlay | None:
        """Highlight ``element`` and attach the step's tooltip next to it."""
        theme = theme or self.theme
        rect = await self._page.bounding_box(element)
        if rect is None:
            logger.debug("Step %s target has no box; falling back to modal", step.id)
            return await self.modal(step, theme, step_number, total)
        viewport = await self._page.viewport()
        placement = compute_tooltip_placement(rect, TOOLTIP_SIZE, viewport, step.position)
        commands = step_commands(step, step_number)
        html = self._render(
            "tooltip.html",
            step=step,
            box=_padded(rect),
            placement=placement,
            size=TOOLTIP_SIZE,
            theme=theme,
            commands=commands,
            step_number=step_number,
            total=total,
        )
        return await self._mount(Overlay(OVERLAY_ID, "tooltip", html, self._css(theme), commands))

    async def modal(
        self,
        step: Step,
        theme: Theme | None = None,
        step_number: int = 1,
        total: int = 1,
    ) -> Overlay:
        """Centered modal card, used when a step has no target element."""
        theme = theme or self.theme
        commands = step_commands(step, step_number)
        html = self._render(
            "modal.html",
            step=step,
            theme=theme,
            commands=commands,
            step_number=step_number,
            total=total,
        )
        return await self._mount(Overlay(OVERLAY_ID, "modal", html, self._css(theme), commands))

    # -- Widget chrome -------------------------------------------------------

    async def _mount_chrome(self, overlay: Overlay) -> Overlay:
        await self.hide_chrome()
        await self._page.mount_overlay(overlay)
        self.chrome = overlay
        return overlay

    async def hide_chrome(self) -> None:
        if self.chrome is None:
            return
        self.chrome = None
        await self._page.remove_overlay(CHROME_ID)

    async def show_topbar(
        self,
        title: str,
        step: Step | None,
        progress: dict[str, Any],
        visible: list[VisibleStep] | None = None,
        steps: list[Step] | None = None,
    ) -> Overlay:
        """Top bar (or modal-position header) with tour title and progress.

        When the visible-step projection is passed, the bar also lists the
        unlocked steps as a roadmap and counts the locked ones.
        """
        roadmap = roadmap_entries(visible, steps) if visible and steps else []
        locked_count = sum(1 for item in visible or [] if item.locked)
        commands = ["minimize", "close"]
        for entry in roadmap:
            commands.extend(entry.commands)
        html = self._render(
            "topbar.html",
            title=title,
            step=step,
            progress=progress,
            roadmap=roadmap,
            locked_count=locked_count,
            position=self.position,
            theme=self.theme,
        )
        return await self._mount_chrome(Overlay(CHROME_ID, "topbar", html, self._css(self.theme), commands))

    async def show_minimized(self, progress: dict[str, Any]) -> Overlay:
        html = self._render("minimized.html", progress=progress, theme=self.theme)
        return await self._mount_chrome(Overlay(CHROME_ID, "minimized", html, self._css(self.theme), ["restore"]))

    async def show_complete(self, title: str, progress: dict[str, Any]) -> Overlay:
        """Completion banner shown once every reachable step is done."""
        await self.clear()
        html = self._render("complete.html", title=title, progress=progress, theme=self.theme)
        return await self._mount_chrome(Overlay(CHROME_ID, "complete", html, self._css(self.theme), ["close"]))

    # -- Action indicator ----------------------------------------------------

    async def show_indicator(self, text: str) -> Overlay:
        """Status pill naming what the automated actions are doing right now."""
        html = self._render("indicator.html", text=text, theme=self.theme)
        overlay = Overlay(INDICATOR_ID, "indicator", html, self._css(self.theme))
        # Mounting an existing node id replaces it in place
        await self._page.mount_overlay(overlay)
        self.indicator = overlay
        return overlay

    async def hide_indicator(self) -> None:
        if self.indicator is None:
            return
        self.indicator = None
        await self._page.remove_overlay(INDICATOR_ID)


def _padded(rect: Rect) -> Rect:
    return Rect(
        top=rect.top - HIGHLIGHT_PADDING,
        left=rect.left - HIGHLIGHT_PADDING,
        width=rect.width + HIGHLIGHT_PADDING * 2,
        height=rect.height + HIGHLIGHT_PADDING * 2,
    )
