"""Page driver protocol.

These protocols define the contract between the tour engine and whatever
actually owns the DOM.  The engine never touches a browser directly; it is
handed a PageDriver and only speaks through it.

PlaywrightPage maps to a live Chromium page (Playwright async API).
SnapshotPage maps to a static HTML document parsed with BeautifulSoup.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

MutationListener = Callable[[], None]
ClickListener = Callable[[Any], Any]  # receives the clicked element; may return an awaitable
RouteListener = Callable[[str], None]  # receives the new location pathname
CommandListener = Callable[[str], Any]  # receives an overlay button command


@dataclasses.dataclass(frozen=True)
class Rect:
    """Element bounding box in viewport (CSS pixel) coordinates."""

    top: float
    left: float
    width: float
    height: float

    @property
    def bottom(self) -> float:
        return self.top + self.height

    @property
    def right(self) -> float:
        return self.left + self.width

    @property
    def center_x(self) -> float:
        return self.left + self.width / 2

    @property
    def center_y(self) -> float:
        return self.top + self.height / 2

    def to_dict(self) -> dict[str, float]:
        return dataclasses.asdict(self)


@dataclasses.dataclass(frozen=True)
class Viewport:
    width: int
    height: int


@dataclasses.dataclass
class Overlay:
    """A single engine-owned DOM node to be mounted on the page."""

    node_id: str
    kind: str  # highlight, tooltip, modal, topbar, minimized, complete
    html: str
    css: str = ""
    commands: list[str] = dataclasses.field(default_factory=list)


@runtime_checkable
class PageDriver(Protocol):
    """Everything the engine needs from a page it does not control."""

    async def query(self, selector: str) -> Any | None: ...

    async def query_all(self, selector: str) -> list[Any]: ...

    async def matches(self, element: Any, selector: str) -> bool: ...

    async def click(self, element: Any) -> None: ...

    async def fill(self, element: Any, value: str) -> None: ...

    async def scroll_into_view(self, element: Any, behavior: str = "smooth", block: str = "center") -> None: ...

    async def bounding_box(self, element: Any) -> Rect | None: ...

    async def viewport(self) -> Viewport: ...

    async def mount_overlay(self, overlay: Overlay) -> None: ...

    async def remove_overlay(self, node_id: str) -> None: ...

    async def navigate(self, url: str, replace: bool = False) -> None: ...

    async def wait_for_ready(self, timeout_ms: int = 30_000) -> None: ...

    async def current_path(self) -> str: ...

    async def add_mutation_listener(self, listener: MutationListener) -> None: ...

    async def remove_mutation_listener(self, listener: MutationListener) -> None: ...

    def add_click_listener(self, listener: ClickListener) -> None: ...

    def remove_click_listener(self, listener: ClickListener) -> None: ...

    def add_route_listener(self, listener: RouteListener) -> None: ...

    def remove_route_listener(self, listener: RouteListener) -> None: ...

    def add_command_listener(self, listener: CommandListener) -> None: ...

    def remove_command_listener(self, listener: CommandListener) -> None: ...


AsyncCondition = Callable[[], Awaitable[Any]]
