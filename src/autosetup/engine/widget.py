"""AutoSetup Tour Engine — one embedded tour on one page.

Wires the state machine, action executor, renderer, progress store and event
bus together behind a small command surface (``start``, ``complete_step``,
``skip_step``, ``choose_branch``, ``go_to``, ``reset`` ...).  Each embed gets
its own instance with lifecycle ``init -> active -> destroyed``.

Every step transition first releases the shared resources held by the
outgoing step: the action run is cancelled and the overlay cleared.  Render
failures are logged and never block progression commands.

Usage::

    engine = TourEngine(page, WidgetOptions(config_id="cfg", api_key="key"), client=TourApiClient(base))
    engine.on(TourEvent.STEP_CHANGE, lambda e: print(e["step_id"]))
    await engine.init()          # fetch, merge progress, auto-start
    await engine.complete_step()
    await engine.destroy()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from autosetup.config import WidgetOptions
from autosetup.engine.action_executor import ActionExecutor, RunReport
from autosetup.engine.api_client import TourApiClient
from autosetup.engine.branching import BranchPredicate
from autosetup.engine.errors import (
    ActionAborted,
    ConfigFetchFailed,
    ElementNotFound,
    EngineStateError,
    TourEngineError,
)
from autosetup.engine.events import EventBus, Listener, TourEvent
from autosetup.engine.locator import locate
from autosetup.engine.progress_store import LocalCache, ProgressStore
from autosetup.engine.protocols import PageDriver
from autosetup.engine.renderer import OverlayRenderer
from autosetup.engine.routes import route_allowed
from autosetup.engine.state_machine import FINISHED, IDLE, RUNNING, StepStateMachine, Transition
from autosetup.engine.theme import Theme
from autosetup.engine.tour import COMPLETED, SKIPPED, Step, Tour
from autosetup.engine.visibility import VisibleStep
from autosetup.models import DEFAULT_ELEMENT_TIMEOUT_MS, RENDER_ELEMENT_TIMEOUT_MS, SYNC_DEBOUNCE_MS

logger = logging.getLogger("autosetup.engine.widget")

INIT = "init"
ACTIVE = "active"
DESTROYED = "destroyed"


class TourEngine:
    """Runtime engine for one tour embed."""

    def __init__(
        self,
        page: PageDriver,
        options: WidgetOptions,
        client: TourApiClient | None = None,
        cache: LocalCache | None = None,
        tour: Tour | None = None,
        element_timeout_ms: int = DEFAULT_ELEMENT_TIMEOUT_MS,
        render_timeout_ms: int = RENDER_ELEMENT_TIMEOUT_MS,
        sync_debounce_ms: int = SYNC_DEBOUNCE_MS,
    ) -> None:
        """
        Args:
            page: Driver for the host page.
            options: Embed parameters.
            client: Tour API client.  Required unless ``tour`` is given;
                without one, progress stays local.
            cache: Local key-value store for progress (defaults to memory).
            tour: A preloaded tour (local tour file) instead of a remote fetch.
            element_timeout_ms: Bound for ``wait_for_element`` in actions.
            render_timeout_ms: Bound for finding a step's target to render.
            sync_debounce_ms: Remote progress sync debounce window.
        """
        self.page = page
        self.options = options
        self.events = EventBus()
        self.lifecycle = INIT
        self.tour: Tour | None = tour
        self.hidden = False
        self.minimized = False
        self.page_ready = asyncio.Event()
        self.page_ready.set()

        self._client = client
        self._cache = cache
        self._element_timeout_ms = element_timeout_ms
        self._render_timeout_ms = render_timeout_ms
        self._sync_debounce_ms = sync_debounce_ms

        self.store: ProgressStore | None = None
        self.machine: StepStateMachine | None = None
        self.renderer: OverlayRenderer | None = None
        self.executor: ActionExecutor | None = None

        self._allowed_routes: list[str] = list(options.allowed_routes)
        self._clicked_branches: set[str] = set()
        self._signals: set[str] = set()
        self._step_task: asyncio.Task | None = None
        self._step_abort: asyncio.Event | None = None
        self._background: set[asyncio.Task] = set()

    # -- Events --------------------------------------------------------------

    def on(self, event: TourEvent | str, listener: Listener) -> Callable[[], None]:
        return self.events.on(event, listener)

    def off(self, event: TourEvent | str, listener: Listener) -> None:
        self.events.off(event, listener)

    # -- Lifecycle -----------------------------------------------------------

    def _require_active(self) -> StepStateMachine:
        if self.lifecycle != ACTIVE or self.machine is None:
            raise EngineStateError(f"Engine is {self.lifecycle}, not active")
        return self.machine

    async def init(self) -> None:
        """Load the tour, merge progress, hook the page and auto-start.

        Raises:
            ConfigFetchFailed: The tour could not be loaded.  The error event
                is emitted first and nothing is rendered.
        """
        if self.lifecycle != INIT:
            raise EngineStateError(f"init() called on a {self.lifecycle} engine")

        self.store = ProgressStore(
            self.options.config_id,
            self.options.api_key,
            cache=self._cache,
            client=self._client,
            client_id=self.options.client_id,
            debounce_ms=self._sync_debounce_ms,
        )
        try:
            tour = self.tour or await self._fetch()
        except ConfigFetchFailed as exc:
            logger.error("Tour %s failed to load: %s", self.options.config_id, exc)
            self.events.emit(TourEvent.ERROR, {"error": str(exc), "fatal": True})
            raise
        self.tour = tour

        self.store.load(tour.progress, tour.branch_choices)
        self.machine = StepStateMachine(tour.steps, self.store.progress, self.store.branch_choices)
        self.renderer = OverlayRenderer(self.page, Theme.from_dict(tour.configuration.theme), self.options.position)
        self.executor = ActionExecutor(
            self.page,
            renderer=self.renderer,
            events=self.events,
            action_delay_ms=self.options.action_delay_ms,
            element_timeout_ms=self._element_timeout_ms,
            page_ready=self.page_ready,
        )
        if not self._allowed_routes:
            self._allowed_routes = list(tour.configuration.allowed_routes)

        self.page.add_click_listener(self._on_click)
        self.page.add_route_listener(self._on_route)
        self.page.add_command_listener(self._on_command)

        self.lifecycle = ACTIVE
        self.hidden = not route_allowed(await self.page.current_path(), self._allowed_routes)
        self.events.emit(
            TourEvent.READY,
            {
                "config_id": tour.configuration.id,
                "client_id": self.store.client_id,
                "steps": len(tour.steps),
                "progress": self.machine.get_progress(),
            },
        )
        if self.hidden:
            logger.info("Route %s not in allowedRoutes; widget stays hidden", await self.page.current_path())
        elif self.options.auto_start and tour.configuration.auto_start:
            await self.start()

    async def _fetch(self) -> Tour:
        if self._client is None:
            raise ConfigFetchFailed("No API client configured and no local tour given")
        return await asyncio.to_thread(
            self._client.fetch_configuration,
            self.options.config_id,
            self.options.api_key,
            self.store.client_id if self.store else None,
        )

    async def destroy(self) -> None:
        """Tear everything down.  Safe to call more than once."""
        if self.lifecycle == DESTROYED:
            return
        if self.lifecycle == ACTIVE:
            await self._release()
            await self._safe(self.renderer.hide_chrome(), "hide widget")
            self.page.remove_click_listener(self._on_click)
            self.page.remove_route_listener(self._on_route)
            self.page.remove_command_listener(self._on_command)
        for task in list(self._background):
            task.cancel()
        if self.store is not None:
            await self.store.close()
        self.lifecycle = DESTROYED
        self.events.emit(TourEvent.DESTROY, {})
        self.events.clear()

    async def settle(self) -> None:
        """Wait for the current step's presentation and background work."""
        while True:
            pending = [t for t in (self._step_task, *self._background) if t is not None and not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # -- Tour commands -------------------------------------------------------

    async def start(self) -> None:
        machine = self._require_active()
        transition = machine.start()
        self.events.emit(TourEvent.START, {"step_id": transition.to_step_id})
        if transition.to_step_id is None:
            await self._finish()
            return
        await self._activate()

    async def complete_step(self) -> Transition:
        """Mark the current step completed and move on."""
        machine = self._require_active()
        await self.page_ready.wait()
        step = self._current(machine)
        satisfied = await self._branch_predicate(step)
        transition = machine.complete(satisfied)
        self.store.save(step.id, COMPLETED)
        self.events.emit(TourEvent.STEP_COMPLETE, {"step_id": step.id, "progress": machine.get_progress()})
        await self._after(transition)
        return transition

    async def skip_step(self) -> Transition:
        """Skip the current step.

        Raises:
            StepRequiredError: The step is required.
        """
        machine = self._require_active()
        await self.page_ready.wait()
        step = self._current(machine)
        satisfied = await self._branch_predicate(step)
        transition = machine.skip(satisfied)
        self.store.save(step.id, SKIPPED)
        self.events.emit(TourEvent.STEP_SKIP, {"step_id": step.id, "progress": machine.get_progress()})
        await self._after(transition)
        return transition

    async def choose_branch(self, branch_id: str) -> Transition:
        """Take an explicit branch at the current branch point."""
        machine = self._require_active()
        await self.page_ready.wait()
        step = self._current(machine)
        transition = machine.choose_branch(branch_id)
        if transition.reason == "noop":
            return transition
        self.store.save(step.id, COMPLETED)
        self.events.emit(TourEvent.STEP_COMPLETE, {"step_id": step.id, "progress": machine.get_progress()})
        await self._after(transition)
        return transition

    def signal(self, branch_id: str) -> None:
        """Satisfy a ``custom`` branch condition for the current step."""
        self._signals.add(branch_id)

    async def go_to(self, index: int) -> bool:
        machine = self._require_active()
        if machine.go_to(index) is None:
            return False
        await self._activate()
        return True

    async def previous(self) -> bool:
        machine = self._require_active()
        if machine.back() is None:
            return False
        await self._activate()
        return True

    async def reset(self, from_index: int | None = None) -> list[str]:
        """Clear progress from ``from_index`` on (or entirely) and restart there."""
        machine = self._require_active()
        start = from_index or 0
        self.store.clear([s.id for s in machine.steps[start:]])
        cleared = machine.reset(from_index)
        if machine.current_step is not None:
            await self._activate()
        return cleared

    async def pause(self) -> None:
        machine = self._require_active()
        machine.pause()
        await self._release()
        self.events.emit(TourEvent.PAUSE, {"step_id": self._current_id()})

    async def resume(self) -> None:
        machine = self._require_active()
        machine.resume()
        self.events.emit(TourEvent.RESUME, {"step_id": self._current_id()})
        if machine.state == RUNNING:
            await self._activate()

    async def minimize(self) -> None:
        self._require_active()
        self.minimized = True
        await self._release()
        await self._show_chrome()

    async def restore(self) -> None:
        machine = self._require_active()
        self.minimized = False
        if machine.state == RUNNING:
            await self._activate()
        else:
            await self._show_chrome()

    async def execute_actions(self) -> RunReport | None:
        """Run the current step's actions on demand."""
        machine = self._require_active()
        step = machine.current_step
        if step is None or not step.actions:
            return None
        return await self.executor.run(step.actions, step.id)

    def get_progress(self) -> dict[str, Any]:
        return self._require_active().get_progress()

    def visible_steps(self) -> list[VisibleStep]:
        return self._require_active().visible_steps()

    # -- Step presentation ---------------------------------------------------

    def _current(self, machine: StepStateMachine) -> Step:
        step = machine.current_step
        if step is None:
            raise EngineStateError("No active step")
        return step

    def _current_id(self) -> str | None:
        step = self.machine.current_step if self.machine else None
        return step.id if step else None

    async def _after(self, transition: Transition) -> None:
        if transition.branch_id and transition.from_step_id:
            self.store.save_branch_choice(transition.from_step_id, transition.branch_id)
            self.events.emit(
                TourEvent.BRANCH_CHOSEN,
                {
                    "step_id": transition.from_step_id,
                    "branch_id": transition.branch_id,
                    "next_step_id": transition.to_step_id,
                },
            )
        if self.machine.state == FINISHED:
            await self._finish()
        else:
            await self._activate()

    async def _release(self) -> None:
        """Cancel the outgoing step's actions and clear its overlay."""
        if self._step_abort is not None:
            self._step_abort.set()
        if self.executor is not None:
            await self.executor.cancel()
        task = self._step_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            await asyncio.gather(task, return_exceptions=True)
        self._step_task = None
        self._step_abort = None
        if self.renderer is not None:
            await self._safe(self.renderer.clear(), "clear overlay")

    async def _activate(self) -> None:
        await self._release()
        machine = self.machine
        step = machine.current_step
        if step is None:
            return
        self._clicked_branches.clear()
        self._signals.clear()
        self.events.emit(
            TourEvent.STEP_CHANGE,
            {
                "step_id": step.id,
                "index": machine.current_index,
                "total": len(machine.steps),
                "step": step.to_dict(),
            },
        )
        await self._show_chrome()
        if self.hidden or self.minimized or machine.state != RUNNING:
            return
        abort = asyncio.Event()
        self._step_abort = abort
        self._step_task = asyncio.get_running_loop().create_task(self._present(step, abort))

    async def _present(self, step: Step, abort: asyncio.Event) -> None:
        try:
            await self._render_step(step, abort)
            if self.options.auto_execute_actions and step.actions and not abort.is_set():
                await self.executor.run(step.actions, step.id)
                # Highlight actions share the overlay node; put the step back
                if not abort.is_set() and self.renderer.current is None:
                    await self._render_step(step, abort)
        except ActionAborted:
            logger.debug("Presentation of step %s aborted", step.id)

    async def _render_step(self, step: Step, abort: asyncio.Event) -> None:
        machine = self.machine
        theme = self.renderer.theme.merged(step.theme_override)
        number = (machine.current_index or 0) + 1
        total = len(machine.steps)
        try:
            if step.target_selector and step.target_type == "page":
                try:
                    element = await locate(self.page, step.target_selector, self._render_timeout_ms, abort=abort)
                except ElementNotFound as exc:
                    logger.warning("Step %s target missing, showing it as a modal: %s", step.id, exc)
                    await self.renderer.modal(step, theme, number, total)
                    return
                await self.renderer.tooltip(step, element, theme, number, total)
            else:
                await self.renderer.modal(step, theme, number, total)
        except ActionAborted:
            raise
        except Exception:
            logger.warning("Rendering step %s failed", step.id, exc_info=True)

    async def _show_chrome(self) -> None:
        renderer = self.renderer
        if self.hidden:
            await self._safe(renderer.hide_chrome(), "hide widget")
            return
        progress = self.machine.get_progress()
        if self.minimized:
            await self._safe(renderer.show_minimized(progress), "render minimized widget")
        else:
            title = self.tour.configuration.name if self.tour else ""
            machine = self.machine
            await self._safe(
                renderer.show_topbar(title, machine.current_step, progress, machine.visible_steps(), machine.steps),
                "render top bar",
            )

    async def _finish(self) -> None:
        await self._release()
        progress = self.machine.get_progress()
        self.events.emit(TourEvent.COMPLETE, {"progress": progress})
        if not self.hidden:
            await self._safe(self.renderer.show_complete(self.tour.configuration.name, progress), "render completion")

    async def _safe(self, coro: Awaitable[Any], what: str) -> None:
        try:
            await coro
        except Exception:
            logger.warning("Failed to %s", what, exc_info=True)

    # -- Branch conditions ---------------------------------------------------

    async def _branch_predicate(self, step: Step) -> BranchPredicate | None:
        if not step.has_branches:
            return None
        satisfied: dict[str, bool] = {}
        for branch in step.branches:
            if branch.condition_type == "selector":
                satisfied[branch.id] = bool(branch.condition_value) and (
                    await self.page.query(branch.condition_value) is not None
                )
            elif branch.condition_type == "click":
                satisfied[branch.id] = branch.id in self._clicked_branches
            else:
                satisfied[branch.id] = branch.id in self._signals
        return lambda b: satisfied.get(b.id, False)

    # -- Page listeners ------------------------------------------------------

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_click(self, element: Any) -> Awaitable[None] | None:
        step = self.machine.current_step if self.machine else None
        if step is None or not step.has_branches or self.lifecycle != ACTIVE:
            return None
        click_branches = [b for b in step.branches if b.condition_type == "click" and b.condition_value]
        if not click_branches:
            return None
        # Awaited by the driver, which releases the element handle afterwards
        return self._record_click(step.id, element, click_branches)

    async def _record_click(self, step_id: str, element: Any, branches: list) -> None:
        for branch in branches:
            if await self.page.matches(element, branch.condition_value):
                if self._current_id() == step_id:
                    logger.debug("Click satisfied branch %s of step %s", branch.id, step_id)
                    self._clicked_branches.add(branch.id)

    def _on_route(self, path: str) -> None:
        if self.lifecycle == ACTIVE:
            self._spawn(self._apply_route(path))

    async def _apply_route(self, path: str) -> None:
        allowed = route_allowed(path, self._allowed_routes)
        self.events.emit(TourEvent.ROUTE_CHANGE, {"path": path, "allowed": allowed})
        if not allowed and not self.hidden:
            self.hidden = True
            await self._release()
            await self._safe(self.renderer.hide_chrome(), "hide widget")
        elif allowed and self.hidden:
            self.hidden = False
            if self.machine.state == IDLE:
                if self.options.auto_start and self.tour.configuration.auto_start:
                    await self.start()
            elif self.machine.state == FINISHED:
                await self._finish()
            else:
                await self._activate()

    def _on_command(self, command: str) -> Awaitable[None]:
        return self.handle_command(command)

    def _roadmap_index(self, command: str) -> int:
        """Step index named by a roadmap command; it must be an unlocked step."""
        index = int(command.split(":", 1)[1])
        machine = self._require_active()
        unlocked = {machine.index_of(item.step.id) for item in machine.visible_steps() if not item.locked}
        if index not in unlocked:
            raise EngineStateError(f"Step {index} is locked or out of range")
        return index

    async def handle_command(self, command: str) -> None:
        """Dispatch an overlay button command.  Engine errors are reported, not raised."""
        handlers: dict[str, Callable[[], Awaitable[Any]]] = {
            "complete": self.complete_step,
            "skip": self.skip_step,
            "prev": self.previous,
            "minimize": self.minimize,
            "restore": self.restore,
            "close": self.pause,
        }
        try:
            if command.startswith("branch:"):
                await self.choose_branch(command.split(":", 1)[1])
            elif command.startswith("goto:"):
                await self.go_to(self._roadmap_index(command))
            elif command.startswith("reset:"):
                await self.reset(self._roadmap_index(command))
            elif command in handlers:
                await handlers[command]()
            else:
                logger.warning("Unknown overlay command: %s", command)
        except (TourEngineError, ValueError) as exc:
            logger.warning("Command %s rejected: %s", command, exc)
            self.events.emit(TourEvent.ERROR, {"error": str(exc), "command": command, "fatal": False})
