"""PlaywrightPage — a PageDriver over a live Chromium page (Playwright async API).

``install()`` exposes four bindings to the page and injects a bootstrap
script (into the current document and every future one) that:

* forwards DOM mutations (subtree, childList) to mutation listeners while
  at least one is registered; the observer is disconnected otherwise,
* forwards clicks on overlay buttons as commands and every other click as an
  element handle to click listeners,
* intercepts ``history.pushState`` / ``replaceState`` and ``popstate`` to
  report SPA route changes.

Clicks and input are dispatched in page script so frameworks that listen for
synthetic events (or shadow the ``value`` setter) see them.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from autosetup.engine.protocols import (
    ClickListener,
    CommandListener,
    MutationListener,
    Overlay,
    Rect,
    RouteListener,
    Viewport,
)
from autosetup.models import DEFAULT_VIEWPORT

logger = logging.getLogger("autosetup.engine.playwright_page")

_BOOTSTRAP_JS = """
(() => {
  if (window.__autosetupInstalled) return;
  window.__autosetupInstalled = true;

  const notifyRoute = () => window.__autosetupRoute && window.__autosetupRoute(location.pathname);
  for (const name of ['pushState', 'replaceState']) {
    const original = history[name];
    history[name] = function (...args) {
      const result = original.apply(this, args);
      notifyRoute();
      return result;
    };
  }
  window.addEventListener('popstate', notifyRoute);

  document.addEventListener('click', (event) => {
    const button = event.target && event.target.closest && event.target.closest('[data-autosetup-command]');
    if (button) {
      window.__autosetupCommand && window.__autosetupCommand(button.getAttribute('data-autosetup-command'));
      return;
    }
    if (event.isTrusted && window.__autosetupClick) window.__autosetupClick(event.target);
  }, true);

  let observer = null;
  window.__autosetupObserve = (on) => {
    if (on && !observer && document.documentElement) {
      observer = new MutationObserver(() => window.__autosetupMutation && window.__autosetupMutation());
      observer.observe(document.documentElement, { childList: true, subtree: true });
    } else if (!on && observer) {
      observer.disconnect();
      observer = null;
    }
    return !!observer;
  };
})();
"""

_CLICK_JS = """
(el) => {
  if (el.focus) el.focus();
  el.click();
  for (const type of ['mousedown', 'mouseup', 'click']) {
    el.dispatchEvent(new MouseEvent(type, { bubbles: true, cancelable: true, view: window }));
  }
}
"""

_FILL_JS = """
(el, value) => {
  if (el.focus) el.focus();
  el.value = value;
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
  const proto = el instanceof HTMLTextAreaElement ? HTMLTextAreaElement.prototype
    : el instanceof HTMLSelectElement ? HTMLSelectElement.prototype
    : HTMLInputElement.prototype;
  const descriptor = Object.getOwnPropertyDescriptor(proto, 'value');
  if (descriptor && descriptor.set) {
    descriptor.set.call(el, value);
    el.dispatchEvent(new Event('input', { bubbles: true }));
  }
}
"""

_MOUNT_JS = """
([id, html, css]) => {
  const existing = document.getElementById(id);
  if (existing) existing.remove();
  const host = document.createElement('div');
  host.id = id;
  host.innerHTML = (css ? '<style>' + css + '</style>' : '') + html;
  document.body.appendChild(host);
}
"""

_OBSERVE_JS = "(on) => window.__autosetupObserve ? window.__autosetupObserve(on) : false"

_SNAPSHOT_JS = """
() => {
  for (const el of document.querySelectorAll('body *')) {
    const r = el.getBoundingClientRect();
    el.setAttribute('data-autosetup-rect', [r.top, r.left, r.width, r.height].map(v => v.toFixed(1)).join(','));
  }
  const html = document.documentElement.outerHTML;
  for (const el of document.querySelectorAll('[data-autosetup-rect]')) el.removeAttribute('data-autosetup-rect');
  return html;
}
"""


class PlaywrightPage:
    """PageDriver for a live :class:`playwright.async_api.Page`."""

    def __init__(self, page: Page) -> None:
        self._page = page
        self._installed = False
        self._mutation_listeners: list[MutationListener] = []
        self._click_listeners: list[ClickListener] = []
        self._route_listeners: list[RouteListener] = []
        self._command_listeners: list[CommandListener] = []

    @property
    def page(self) -> Page:
        return self._page

    async def install(self) -> None:
        """Expose the callback bindings and inject the bootstrap script."""
        if self._installed:
            return
        await self._page.expose_binding("__autosetupMutation", self._on_mutation)
        await self._page.expose_binding("__autosetupRoute", self._on_route)
        await self._page.expose_binding("__autosetupCommand", self._on_command)
        await self._page.expose_binding("__autosetupClick", self._on_click, handle=True)
        await self._page.add_init_script(_BOOTSTRAP_JS)
        await self._page.evaluate(_BOOTSTRAP_JS)
        self._installed = True
        if self._mutation_listeners:
            await self._observe(True)

    # -- Binding callbacks ---------------------------------------------------

    def _on_mutation(self, source: dict[str, Any]) -> None:
        for listener in list(self._mutation_listeners):
            listener()

    def _on_route(self, source: dict[str, Any], path: str) -> None:
        for listener in list(self._route_listeners):
            listener(path)

    async def _on_command(self, source: dict[str, Any], command: str) -> None:
        for listener in list(self._command_listeners):
            result = listener(command)
            if inspect.isawaitable(result):
                await result

    async def _on_click(self, source: dict[str, Any], handle: Any) -> None:
        element = handle.as_element()
        try:
            if element is None:
                return
            for listener in list(self._click_listeners):
                result = listener(element)
                if inspect.isawaitable(result):
                    await result
        finally:
            # One handle per trusted click; release it once every listener is done
            try:
                await handle.dispose()
            except PlaywrightError as exc:
                logger.debug("Disposing click handle failed: %s", exc)

    # -- Queries -------------------------------------------------------------

    async def query(self, selector: str) -> Any | None:
        try:
            return await self._page.query_selector(f"css={selector}")
        except PlaywrightError as exc:
            logger.debug("query(%s) failed: %s", selector, exc)
            return None

    async def query_all(self, selector: str) -> list[Any]:
        try:
            return await self._page.query_selector_all(f"css={selector}")
        except PlaywrightError as exc:
            logger.debug("query_all(%s) failed: %s", selector, exc)
            return []

    async def matches(self, element: Any, selector: str) -> bool:
        try:
            return bool(await element.evaluate("(el, sel) => !!el.closest(sel)", selector))
        except PlaywrightError:
            return False

    # -- Interactions --------------------------------------------------------

    async def click(self, element: Any) -> None:
        await element.evaluate(_CLICK_JS)

    async def fill(self, element: Any, value: str) -> None:
        await element.evaluate(_FILL_JS, value)

    async def scroll_into_view(self, element: Any, behavior: str = "smooth", block: str = "center") -> None:
        await element.evaluate(
            "(el, opts) => el.scrollIntoView(opts)",
            {"behavior": behavior, "block": block},
        )

    async def bounding_box(self, element: Any) -> Rect | None:
        box = await element.bounding_box()
        if box is None:
            return None
        return Rect(top=box["y"], left=box["x"], width=box["width"], height=box["height"])

    async def viewport(self) -> Viewport:
        size = self._page.viewport_size
        if size:
            return Viewport(size["width"], size["height"])
        width, height = await self._page.evaluate("() => [window.innerWidth, window.innerHeight]")
        return Viewport(int(width or DEFAULT_VIEWPORT[0]), int(height or DEFAULT_VIEWPORT[1]))

    # -- Overlay -------------------------------------------------------------

    async def mount_overlay(self, overlay: Overlay) -> None:
        await self._page.evaluate(_MOUNT_JS, [overlay.node_id, overlay.html, overlay.css])

    async def remove_overlay(self, node_id: str) -> None:
        await self._page.evaluate("(id) => document.getElementById(id)?.remove()", node_id)

    # -- Navigation ----------------------------------------------------------

    async def navigate(self, url: str, replace: bool = False) -> None:
        script = "(u) => location.replace(u)" if replace else "(u) => location.assign(u)"
        try:
            await self._page.evaluate(script, url)
        except PlaywrightError as exc:
            # The old document's context goes away mid-call on a full navigation
            logger.debug("Navigation to %s interrupted evaluate: %s", url, exc)

    async def wait_for_ready(self, timeout_ms: int = 30_000) -> None:
        await self._page.wait_for_load_state("load", timeout=timeout_ms)

    async def current_path(self) -> str:
        return await self._page.evaluate("() => location.pathname")

    async def snapshot(self) -> str:
        """Serialize the document with each element's box in ``data-autosetup-rect``."""
        return await self._page.evaluate(_SNAPSHOT_JS)

    # -- Listener registration -----------------------------------------------

    async def add_mutation_listener(self, listener: MutationListener) -> None:
        self._mutation_listeners.append(listener)
        if len(self._mutation_listeners) == 1:
            await self._observe(True)

    async def remove_mutation_listener(self, listener: MutationListener) -> None:
        if listener not in self._mutation_listeners:
            return
        self._mutation_listeners.remove(listener)
        if not self._mutation_listeners:
            await self._observe(False)

    async def _observe(self, on: bool) -> None:
        """Connect or disconnect the page-side MutationObserver."""
        if not self._installed:
            return
        try:
            await self._page.evaluate(_OBSERVE_JS, on)
        except PlaywrightError as exc:
            logger.debug("Switching the mutation observer %s failed: %s", "on" if on else "off", exc)

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
