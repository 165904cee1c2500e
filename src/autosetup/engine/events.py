"""Engine lifecycle event bus.

Listeners are plain callables receiving a single payload dict.  Every
listener registered for an event is called once per ``emit``; an exception
in one listener is logged and does not stop the rest from being notified.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable

logger = logging.getLogger("autosetup.engine.events")

Listener = Callable[[dict[str, Any]], Any]


class TourEvent(str, enum.Enum):
    READY = "ready"
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STEP_CHANGE = "stepChange"
    STEP_COMPLETE = "stepComplete"
    STEP_SKIP = "stepSkip"
    BRANCH_CHOSEN = "branchChosen"
    COMPLETE = "complete"
    ERROR = "error"
    DESTROY = "destroy"
    ACTIONS_START = "actionsStart"
    ACTION_EXECUTED = "actionExecuted"
    ACTION_ERROR = "actionError"
    ACTIONS_COMPLETE = "actionsComplete"
    ROUTE_CHANGE = "routeChange"


class EventBus:
    """Typed publish/subscribe channel for :class:`TourEvent` notifications."""

    def __init__(self) -> None:
        self._listeners: dict[TourEvent, list[Listener]] = {}

    def on(self, event: TourEvent | str, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unregisters it."""
        key = TourEvent(event)
        self._listeners.setdefault(key, []).append(listener)
        return lambda: self.off(key, listener)

    def off(self, event: TourEvent | str, listener: Listener) -> None:
        listeners = self._listeners.get(TourEvent(event), [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: TourEvent | str, payload: dict[str, Any] | None = None) -> int:
        """Notify every listener of ``event``.  Returns how many ran cleanly."""
        key = TourEvent(event)
        delivered = 0
        # Snapshot so a listener may unsubscribe itself mid-emit
        for listener in list(self._listeners.get(key, [])):
            try:
                listener(dict(payload or {}))
                delivered += 1
            except Exception:
                logger.exception("Listener for %s raised", key.value)
        return delivered

    def listener_count(self, event: TourEvent | str) -> int:
        return len(self._listeners.get(TourEvent(event), []))

    def clear(self) -> None:
        self._listeners.clear()
