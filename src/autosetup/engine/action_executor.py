"""AutoSetup Action Executor — runs a step's automated actions against the page.

Actions run strictly in ascending ``action_order``, one at a time, with the
configured inter-action delay between them.  Each action goes through the
same pipeline:

1. ``wait_for_element``: locate the selector with a bounded timeout.
2. ``delay_ms``: a plain pause (the ``wait`` type uses it as its duration).
3. ``scroll_to_element``: scroll the element into view, then settle.
4. The type-specific effect (click, input, scroll, wait, highlight,
   open_modal, redirect).

While a run is active the renderer shows a status pill naming the current
stage; it is removed when the run ends, however it ends.

A failing action is reported and the pipeline moves on; the executor never
raises for an action failure.  Cancellation is cooperative: every pause waits
on the run's abort event, and the abort flag is checked before each action,
so a DOM write already in flight always finishes first.  At most one run is
active per executor; ``run()`` cancels and awaits any previous run.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Any

from autosetup.engine.errors import ActionAborted, ElementNotFound
from autosetup.engine.events import EventBus, TourEvent
from autosetup.engine.locator import locate
from autosetup.engine.protocols import PageDriver
from autosetup.engine.renderer import OverlayRenderer
from autosetup.engine.tour import Action
from autosetup.models import (
    CLICK_SETTLE_MS,
    DEFAULT_ACTION_DELAY_MS,
    DEFAULT_ELEMENT_TIMEOUT_MS,
    DEFAULT_WAIT_MS,
    OPEN_MODAL_SETTLE_MS,
    SCROLL_SETTLE_MS,
)

logger = logging.getLogger("autosetup.engine.action_executor")

# Action types whose effect needs a resolved element
_ELEMENT_ACTIONS = {"click", "input", "scroll", "highlight", "open_modal"}

# Status pill text per pipeline stage and action type
INDICATOR_TEXT = {
    "wait_for_element": "Waiting for element\u2026",
    "delay": "Waiting\u2026",
    "scroll_to_element": "Scrolling\u2026",
    "click": "Clicking\u2026",
    "input": "Filling in\u2026",
    "scroll": "Scrolling\u2026",
    "wait": "Waiting\u2026",
    "highlight": "Highlighting\u2026",
    "open_modal": "Opening\u2026",
    "redirect": "Redirecting\u2026",
}


@dataclasses.dataclass
class ActionResult:
    """Result of executing a single action against the page."""

    success: bool
    action: str  # action type
    target: str  # selector or redirect URL
    action_id: str = ""
    error: str | None = None
    duration_ms: float = 0.0


@dataclasses.dataclass
class RunReport:
    """Outcome of one ``ActionExecutor.run()`` call."""

    step_id: str | None
    results: list[ActionResult] = dataclasses.field(default_factory=list)
    aborted: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)


class ActionExecutor:
    """Sequential, cancellable runner for a step's actions."""

    def __init__(
        self,
        page: PageDriver,
        renderer: OverlayRenderer | None = None,
        events: EventBus | None = None,
        action_delay_ms: int = DEFAULT_ACTION_DELAY_MS,
        element_timeout_ms: int = DEFAULT_ELEMENT_TIMEOUT_MS,
        page_ready: asyncio.Event | None = None,
    ) -> None:
        """
        Args:
            page: Driver for the page the actions run against.
            renderer: Overlay renderer used by ``highlight`` actions and for
                the stage indicator.
            events: Bus receiving actionsStart/actionExecuted/actionError/
                actionsComplete notifications.
            action_delay_ms: Pause between consecutive actions.
            element_timeout_ms: Bound for ``wait_for_element`` lookups.
            page_ready: Gate cleared while a ``redirect_wait_for_load``
                redirect is waiting for the new page.
        """
        self._page = page
        self._renderer = renderer
        self._events = events or EventBus()
        self._action_delay_ms = action_delay_ms
        self._element_timeout_ms = element_timeout_ms
        self._page_ready = page_ready
        self._abort: asyncio.Event | None = None
        self._done: asyncio.Event | None = None

    @property
    def is_running(self) -> bool:
        return self._done is not None and not self._done.is_set()

    async def cancel(self) -> None:
        """Abort the active run (if any) and wait for it to stop."""
        if self._abort is not None:
            self._abort.set()
        if self._done is not None:
            await self._done.wait()

    async def run(self, actions: list[Action], step_id: str | None = None) -> RunReport:
        """Execute ``actions`` in order.  Cancels any previous run first."""
        while self.is_running:
            await self.cancel()

        abort = asyncio.Event()
        done = asyncio.Event()
        self._abort = abort
        self._done = done

        ordered = sorted(actions, key=lambda a: a.action_order)
        report = RunReport(step_id=step_id)
        self._events.emit(TourEvent.ACTIONS_START, {"step_id": step_id, "actions_count": len(ordered)})
        try:
            for index, action in enumerate(ordered):
                if abort.is_set():
                    report.aborted = True
                    break
                try:
                    result = await self._execute(action, abort)
                except ActionAborted:
                    report.aborted = True
                    break
                report.results.append(result)
                self._report(step_id, action, result)

                if index < len(ordered) - 1:
                    try:
                        await self._sleep(self._action_delay_ms, abort)
                    except ActionAborted:
                        report.aborted = True
                        break
        finally:
            try:
                await self._indicate(None)
            finally:
                done.set()
                if self._abort is abort:
                    self._abort = None

        if report.aborted:
            logger.debug("Action run for step %s aborted after %d action(s)", step_id, len(report.results))
        self._events.emit(
            TourEvent.ACTIONS_COMPLETE,
            {
                "step_id": step_id,
                "actions_count": len(ordered),
                "executed": len(report.results),
                "aborted": report.aborted,
            },
        )
        return report

    def _report(self, step_id: str | None, action: Action, result: ActionResult) -> None:
        payload: dict[str, Any] = {"step_id": step_id, "action": action.to_dict(), "success": result.success}
        if result.success:
            self._events.emit(TourEvent.ACTION_EXECUTED, payload)
        else:
            payload["error"] = result.error
            self._events.emit(TourEvent.ACTION_ERROR, payload)

    # -- Pipeline ------------------------------------------------------------

    async def _sleep(self, ms: int, abort: asyncio.Event) -> None:
        """Pause for ``ms`` or until the run is aborted."""
        if ms <= 0:
            return
        try:
            await asyncio.wait_for(abort.wait(), timeout=ms / 1000)
        except asyncio.TimeoutError:
            return
        raise ActionAborted("action run cancelled")

    async def _execute(self, action: Action, abort: asyncio.Event) -> ActionResult:
        start = time.monotonic()
        target = action.redirect_url if action.action_type == "redirect" else action.selector

        def _result(success: bool, error: str | None = None) -> ActionResult:
            return ActionResult(
                success=success,
                action=action.action_type,
                target=target or "",
                action_id=action.id,
                error=error,
                duration_ms=(time.monotonic() - start) * 1000,
            )

        try:
            if action.selector and action.wait_for_element:
                await self._indicate(INDICATOR_TEXT["wait_for_element"])
            element = await self._resolve(action, abort)
            if element is None and action.action_type in _ELEMENT_ACTIONS:
                raise ElementNotFound(action.selector or "<no selector>", 0)

            if action.delay_ms and action.action_type != "wait":
                await self._indicate(INDICATOR_TEXT["delay"])
                await self._sleep(action.delay_ms, abort)

            if action.scroll_to_element and element is not None:
                await self._indicate(INDICATOR_TEXT["scroll_to_element"])
                await self._page.scroll_into_view(element, action.scroll_behavior, action.scroll_position)
                await self._sleep(SCROLL_SETTLE_MS, abort)

            await self._indicate(INDICATOR_TEXT.get(action.action_type))
            await self._dispatch(action, element, abort)
        except ActionAborted:
            raise
        except Exception as exc:
            logger.warning("Action %s (%s) failed: %s", action.id, action.action_type, exc)
            return _result(False, f"{type(exc).__name__}: {exc}")

        logger.debug("Action %s (%s) done", action.id, action.action_type)
        return _result(True)

    async def _resolve(self, action: Action, abort: asyncio.Event) -> Any | None:
        if not action.selector:
            return None
        if action.wait_for_element:
            return await locate(self._page, action.selector, self._element_timeout_ms, abort=abort)
        return await self._page.query(action.selector)

    async def _dispatch(self, action: Action, element: Any | None, abort: asyncio.Event) -> None:
        kind = action.action_type
        if kind == "click":
            await self._page.click(element)
            await self._sleep(CLICK_SETTLE_MS, abort)
        elif kind == "input":
            await self._page.fill(element, action.value or "")
        elif kind == "scroll":
            await self._page.scroll_into_view(element, action.scroll_behavior, action.scroll_position)
            await self._sleep(SCROLL_SETTLE_MS, abort)
        elif kind == "wait":
            await self._sleep(action.delay_ms or DEFAULT_WAIT_MS, abort)
        elif kind == "highlight":
            await self._highlight(action, element, abort)
        elif kind == "open_modal":
            await self._page.click(element)
            await self._sleep(OPEN_MODAL_SETTLE_MS, abort)
        elif kind == "redirect":
            await self._redirect(action, abort)

    async def _highlight(self, action: Action, element: Any, abort: asyncio.Event) -> None:
        if self._renderer is None:
            logger.debug("No renderer attached; highlight %s is a plain wait", action.id)
            await self._sleep(action.highlight_duration_ms, abort)
            return
        await self._renderer.highlight(
            element,
            color=action.highlight_color,
            animation=action.highlight_animation,
        )
        try:
            await self._sleep(action.highlight_duration_ms, abort)
        finally:
            await self._renderer.clear()

    async def _redirect(self, action: Action, abort: asyncio.Event) -> None:
        if not action.redirect_url:
            raise ValueError("redirect action has no redirect_url")
        await self._sleep(action.redirect_delay_ms, abort)
        replace = action.redirect_type == "replace"
        if not action.redirect_wait_for_load or self._page_ready is None:
            await self._page.navigate(action.redirect_url, replace=replace)
            return
        self._page_ready.clear()
        try:
            await self._page.navigate(action.redirect_url, replace=replace)
            await self._page.wait_for_ready()
        finally:
            self._page_ready.set()

    async def _indicate(self, text: str | None) -> None:
        """Show ``text`` in the status pill, or remove the pill for ``None``.

        The pill is cosmetic: a page that refuses it never fails the action.
        """
        if self._renderer is None:
            return
        try:
            if text is None:
                await self._renderer.hide_indicator()
            else:
                await self._renderer.show_indicator(text)
        except Exception as exc:
            logger.debug("Action indicator update failed: %s", exc)
