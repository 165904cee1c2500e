"""Element Locator — resolve a selector to a live element, waiting if needed.

Waiting uses two strategies at once: DOM mutation notifications from the
page driver, and a fixed-interval fallback poll.  Whichever notices the
element first wins.  The mutation listener is always removed before
returning, on success, timeout, abort or task cancellation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from autosetup.engine.errors import ActionAborted, ElementNotFound
from autosetup.engine.protocols import AsyncCondition, PageDriver
from autosetup.models import DEFAULT_ELEMENT_TIMEOUT_MS, POLL_INTERVAL_MS

logger = logging.getLogger("autosetup.engine.locator")


async def wait_until(
    condition: AsyncCondition,
    timeout_s: float,
    page: PageDriver | None = None,
    interval_s: float = POLL_INTERVAL_MS / 1000,
    abort: asyncio.Event | None = None,
) -> Any | None:
    """Await ``condition()`` until it returns something other than None or False.

    Each wake-up (mutation notification, poll tick or abort) re-runs the
    condition.  Returns the condition's result, or None on timeout.

    Raises:
        ActionAborted: If ``abort`` is set while waiting.
    """
    changed = asyncio.Event()

    def _on_mutation() -> None:
        changed.set()

    deadline = time.monotonic() + timeout_s
    if page is not None:
        await page.add_mutation_listener(_on_mutation)
    try:
        while True:
            if abort is not None and abort.is_set():
                raise ActionAborted("wait aborted")
            result = await condition()
            if result is not None and result is not False:
                return result
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await _wake_on_any(changed, abort, min(interval_s, remaining))
            changed.clear()
    finally:
        if page is not None:
            await page.remove_mutation_listener(_on_mutation)


async def _wake_on_any(changed: asyncio.Event, abort: asyncio.Event | None, timeout_s: float) -> None:
    waiters = [asyncio.ensure_future(changed.wait())]
    if abort is not None:
        waiters.append(asyncio.ensure_future(abort.wait()))
    try:
        await asyncio.wait(waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for w in waiters:
            w.cancel()


async def locate(
    page: PageDriver,
    selector: str,
    timeout_ms: int = DEFAULT_ELEMENT_TIMEOUT_MS,
    abort: asyncio.Event | None = None,
) -> Any:
    """Resolve ``selector`` to an element, waiting up to ``timeout_ms``.

    Returns immediately when the selector already resolves.

    Raises:
        ElementNotFound: If nothing matched before the timeout.
        ActionAborted: If ``abort`` was set while waiting.
    """
    element = await page.query(selector)
    if element is not None:
        return element

    async def _lookup() -> Any | None:
        return await page.query(selector)

    element = await wait_until(_lookup, timeout_ms / 1000, page=page, abort=abort)
    if element is None:
        logger.debug("Timed out after %dms waiting for %s", timeout_ms, selector)
        raise ElementNotFound(selector, timeout_ms)
    return element
