"""SnapshotPage — a PageDriver over a static HTML document.

Parses a saved page with BeautifulSoup and answers selector queries with
soupsieve.  There is no layout engine: element boxes come from an optional
``data-autosetup-rect`` attribute (written by ``PlaywrightPage.snapshot()``),
and every DOM interaction is recorded in :attr:`events` instead of running
page scripts.

Used by ``autosetup validate --snapshot``, ``autosetup selectors``, and the
test suite, where ``append_html()`` / ``remove()`` stand in for a page that
renders elements late.
"""

from __future__ import annotations

import inspect
import logging
from pathlib import Path
from typing import Any

import soupsieve
from bs4 import BeautifulSoup, Tag

from autosetup.engine.protocols import (
    ClickListener,
    CommandListener,
    MutationListener,
    Overlay,
    Rect,
    RouteListener,
    Viewport,
)
from autosetup.engine.routes import normalize_path
from autosetup.engine.selector import rect_from_attrs
from autosetup.models import DEFAULT_VIEWPORT

logger = logging.getLogger("autosetup.engine.snapshot_page")


class SnapshotPage:
    """In-memory page backed by a BeautifulSoup document."""

    def __init__(
        self,
        html: str,
        path: str = "/",
        viewport: tuple[int, int] = DEFAULT_VIEWPORT,
        pages: dict[str, str] | None = None,
    ) -> None:
        """
        Args:
            html: Document markup.
            path: Location pathname the document is served at.
            viewport: Viewport size reported to the renderer.
            pages: Optional pathname -> markup map; ``navigate()`` swaps the
                document when the target path is listed.
        """
        self.soup = BeautifulSoup(html, "html.parser")
        self.path = normalize_path(path)
        self.history: list[str] = [self.path]
        self.overlays: dict[str, Overlay] = {}
        self.events: list[tuple[str, str]] = []
        self._viewport = Viewport(*viewport)
        self._pages = dict(pages or {})
        self._mutation_listeners: list[MutationListener] = []
        self._click_listeners: list[ClickListener] = []
        self._route_listeners: list[RouteListener] = []
        self._command_listeners: list[CommandListener] = []

    @classmethod
    def from_file(cls, path: Path, **kwargs: Any) -> SnapshotPage:
        return cls(Path(path).read_text(encoding="utf-8"), **kwargs)

    def html(self) -> str:
        return str(self.soup)

    def _describe(self, element: Tag) -> str:
        el_id = element.get("id")
        return f"{element.name}#{el_id}" if el_id else element.name

    def _record(self, kind: str, element: Tag | None = None, detail: str = "") -> None:
        target = self._describe(element) if element is not None else detail
        self.events.append((kind, target))

    # -- Queries -------------------------------------------------------------

    async def query(self, selector: str) -> Tag | None:
        try:
            return soupsieve.select_one(selector, self.soup)
        except soupsieve.SelectorSyntaxError:
            logger.debug("Invalid selector: %s", selector)
            return None

    async def query_all(self, selector: str) -> list[Tag]:
        try:
            return list(soupsieve.select(selector, self.soup))
        except soupsieve.SelectorSyntaxError:
            logger.debug("Invalid selector: %s", selector)
            return []

    async def matches(self, element: Tag, selector: str) -> bool:
        try:
            # A click inside a matching element counts as a click on it
            return soupsieve.closest(selector, element) is not None
        except soupsieve.SelectorSyntaxError:
            return False

    # -- Interactions --------------------------------------------------------

    async def click(self, element: Tag) -> None:
        self._record("focus", element)
        self._record("click", element)
        for kind in ("mousedown", "mouseup", "click"):
            self._record(f"dispatch:{kind}", element)

    async def fill(self, element: Tag, value: str) -> None:
        self._record("focus", element)
        if element.name == "textarea":
            element.string = value
        else:
            element["value"] = value
        self._record("dispatch:input", element)
        self._record("dispatch:change", element)
        self._record("native-setter", element)
        self._record("dispatch:input", element)

    async def scroll_into_view(self, element: Tag, behavior: str = "smooth", block: str = "center") -> None:
        self._record(f"scroll:{behavior}:{block}", element)

    async def bounding_box(self, element: Tag) -> Rect | None:
        return Rect(**rect_from_attrs(element))

    async def viewport(self) -> Viewport:
        return self._viewport

    # -- Overlay -------------------------------------------------------------

    async def mount_overlay(self, overlay: Overlay) -> None:
        self.overlays[overlay.node_id] = overlay
        self._record("mount", detail=overlay.node_id)

    async def remove_overlay(self, node_id: str) -> None:
        if self.overlays.pop(node_id, None) is not None:
            self._record("unmount", detail=node_id)

    # -- Navigation ----------------------------------------------------------

    async def navigate(self, url: str, replace: bool = False) -> None:
        new_path = normalize_path(url)
        if replace and self.history:
            self.history[-1] = new_path
        else:
            self.history.append(new_path)
        self._record("navigate:replace" if replace else "navigate:push", detail=new_path)
        if new_path in self._pages:
            self.soup = BeautifulSoup(self._pages[new_path], "html.parser")
        self.set_path(new_path)

    async def wait_for_ready(self, timeout_ms: int = 30_000) -> None:
        return None

    async def current_path(self) -> str:
        return self.path

    def set_path(self, path: str) -> None:
        """Move to ``path`` and notify route listeners (a popstate, in effect)."""
        self.path = normalize_path(path)
        for listener in list(self._route_listeners):
            listener(self.path)

    # -- DOM mutation helpers ------------------------------------------------

    def append_html(self, parent_selector: str, html: str) -> None:
        """Parse ``html`` and append it under the first ``parent_selector`` match."""
        parent = soupsieve.select_one(parent_selector, self.soup)
        if parent is None:
            raise ValueError(f"No element matches {parent_selector!r}")
        fragment = BeautifulSoup(html, "html.parser")
        for node in list(fragment.contents):
            parent.append(node.extract())
        self._notify_mutation()

    def remove(self, selector: str) -> int:
        removed = 0
        for element in soupsieve.select(selector, self.soup):
            element.decompose()
            removed += 1
        if removed:
            self._notify_mutation()
        return removed

    def _notify_mutation(self) -> None:
        for listener in list(self._mutation_listeners):
            listener()

    # -- User input simulation -----------------------------------------------

    async def user_click(self, selector: str) -> Tag:
        """Simulate the end user clicking the first match of ``selector``."""
        element = await self.query(selector)
        if element is None:
            raise ValueError(f"No element matches {selector!r}")
        self._record("user-click", element)
        for listener in list(self._click_listeners):
            result = listener(element)
            if inspect.isawaitable(result):
                await result
        return element

    async def press(self, command: str) -> None:
        """Simulate a click on an overlay button carrying ``command``."""
        self._record("command", detail=command)
        for listener in list(self._command_listeners):
            result = listener(command)
            if inspect.isawaitable(result):
                await result

    # -- Listener registration -----------------------------------------------

    @property
    def mutation_listener_count(self) -> int:
        return len(self._mutation_listeners)

    async def add_mutation_listener(self, listener: MutationListener) -> None:
        self._mutation_listeners.append(listener)

    async def remove_mutation_listener(self, listener: MutationListener) -> None:
        if listener in self._mutation_listeners:
            self._mutation_listeners.remove(listener)

    def add_click_listener(self, listener: ClickListener) -> None:
        self._click_listeners.append(listener)

    def remove_click_listener(self, listener: ClickListener) -> None:
        if listener in self._click_listeners:
            self._click_listeners.remove(listener)

    def add_route_listener(self, listener: RouteListener) -> None:
        self._route_listeners.append(listener)

    def remove_route_listener(self, listener: RouteListener) -> None:
        if listener in self._route_listeners:
            self._route_listeners.remove(listener)

    def add_command_listener(self, listener: CommandListener) -> None:
        self._command_listeners.append(listener)

    def remove_command_listener(self, listener: CommandListener) -> None:
        if listener in self._command_listeners:
            self._command_listeners.remove(listener)
