"""Capture Bridge — element captures from an instrumented page to the builder.

The capture script (or browser extension) running on the customer's page
sends JSON messages of the form::

    {"type": "TOUR_CAPTURE_ELEMENT" | "TOUR_CAPTURE_SCAN" | "TOUR_CAPTURE_STEP" | "TOUR_CAPTURE_READY",
     "token": "<session token>",
     "element": {...} | "elements": [...] | "step": {...}}

over one of three transports, tried in this order by the sender:
``postMessage`` to the builder origin, a ``BroadcastChannel`` named
``tour-builder-capture``, or clipboard JSON pasted by hand.  A message whose
token does not match the builder's session token is ignored.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import secrets
from typing import Any, Callable
from urllib.parse import urlsplit

from autosetup.engine.tour import TOOLTIP_POSITIONS, Action, Step
from autosetup.models import CAPTURE_CHANNEL_NAME

logger = logging.getLogger("autosetup.capture.bridge")

CAPTURE_ELEMENT = "TOUR_CAPTURE_ELEMENT"
CAPTURE_SCAN = "TOUR_CAPTURE_SCAN"
CAPTURE_STEP = "TOUR_CAPTURE_STEP"
CAPTURE_READY = "TOUR_CAPTURE_READY"
MESSAGE_TYPES = (CAPTURE_ELEMENT, CAPTURE_SCAN, CAPTURE_STEP, CAPTURE_READY)

# Captured step types that also get an action on the new step
ACTION_STEP_TYPES = ("click", "input", "wait", "highlight")

Handler = Callable[["CaptureMessage"], Any]


class CaptureError(ValueError):
    """A capture payload is not a well-formed message."""


@dataclasses.dataclass
class CapturedElement:
    selector: str
    label: str = ""
    tag_name: str = ""
    rect: dict[str, float] = dataclasses.field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> CapturedElement:
        if not isinstance(data, dict) or not data.get("selector"):
            raise CaptureError("captured element needs a selector")
        rect = data.get("rect") if isinstance(data.get("rect"), dict) else {}
        return cls(
            selector=str(data["selector"]),
            label=str(data.get("label") or ""),
            tag_name=str(data.get("tagName") or data.get("tag_name") or ""),
            rect={k: float(rect.get(k, 0) or 0) for k in ("top", "left", "width", "height")},
        )

    def to_dict(self) -> dict[str, Any]:
        return {"selector": self.selector, "label": self.label, "tagName": self.tag_name, "rect": dict(self.rect)}


@dataclasses.dataclass
class CaptureMessage:
    type: str
    token: str | None = None
    element: CapturedElement | None = None
    elements: list[CapturedElement] = dataclasses.field(default_factory=list)
    step: dict[str, Any] | None = None
    transport: str = ""

    @classmethod
    def parse(cls, raw: str | dict[str, Any], transport: str = "") -> CaptureMessage:
        """Parse a message from its JSON text or decoded dict.

        Raises:
            CaptureError: Malformed JSON, unknown type, or missing payload.
        """
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError as exc:
                raise CaptureError(f"capture payload is not JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise CaptureError("capture payload must be a JSON object")

        msg_type = raw.get("type")
        if msg_type not in MESSAGE_TYPES:
            raise CaptureError(f"unknown capture message type: {msg_type!r}")

        message = cls(type=msg_type, token=raw.get("token"), transport=transport)
        if msg_type == CAPTURE_ELEMENT:
            message.element = CapturedElement.from_dict(raw.get("element"))
        elif msg_type == CAPTURE_SCAN:
            elements = raw.get("elements")
            if not isinstance(elements, list):
                raise CaptureError("TOUR_CAPTURE_SCAN needs an elements list")
            message.elements = [CapturedElement.from_dict(e) for e in elements]
        elif msg_type == CAPTURE_STEP:
            step = raw.get("step")
            if not isinstance(step, dict) or not step.get("selector"):
                raise CaptureError("TOUR_CAPTURE_STEP needs a step with a selector")
            message.step = step
        return message

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "token": self.token}
        if self.element is not None:
            data["element"] = self.element.to_dict()
        if self.type == CAPTURE_SCAN:
            data["elements"] = [e.to_dict() for e in self.elements]
        if self.step is not None:
            data["step"] = self.step
        return data


def new_session_token() -> str:
    """Random token identifying one builder capture session."""
    return secrets.token_urlsafe(16)


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


class CaptureBridge:
    """Receives capture messages for one builder session and dispatches them."""

    def __init__(self, token: str, builder_origin: str, channel_name: str = CAPTURE_CHANNEL_NAME) -> None:
        self.token = token
        self.builder_origin = _origin(builder_origin)
        self.channel_name = channel_name
        self.received: list[CaptureMessage] = []
        self._handlers: dict[str, list[Handler]] = {}

    def subscribe(self, msg_type: str, handler: Handler) -> Callable[[], None]:
        """Call ``handler`` for every accepted message of ``msg_type``."""
        if msg_type not in MESSAGE_TYPES:
            raise ValueError(f"unknown capture message type: {msg_type}")
        self._handlers.setdefault(msg_type, []).append(handler)
        return lambda: self._handlers[msg_type].remove(handler)

    # -- Transports ----------------------------------------------------------

    def receive_post_message(self, data: Any, origin: str) -> CaptureMessage | None:
        if _origin(origin) != self.builder_origin:
            logger.debug("Ignoring postMessage from %s", origin)
            return None
        return self._accept(data, "postMessage")

    def receive_broadcast(self, data: Any, channel: str) -> CaptureMessage | None:
        if channel != self.channel_name:
            logger.debug("Ignoring broadcast on channel %s", channel)
            return None
        return self._accept(data, "broadcast")

    def receive_clipboard(self, text: str) -> CaptureMessage | None:
        """Accept pasted JSON.

        Besides full messages, the extension's bare ``{"selector": ...}``
        clipboard fallback is taken as an element capture for this session.
        """
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise CaptureError(f"clipboard text is not JSON: {exc}") from exc
        if isinstance(data, dict) and "type" not in data and data.get("selector"):
            data = {"type": CAPTURE_ELEMENT, "token": self.token, "element": data}
        return self._accept(data, "clipboard")

    def _accept(self, data: Any, transport: str) -> CaptureMessage | None:
        try:
            message = CaptureMessage.parse(data, transport)
        except CaptureError as exc:
            logger.warning("Dropping malformed capture message via %s: %s", transport, exc)
            return None
        if message.token != self.token:
            logger.warning("Ignoring %s via %s: session token mismatch", message.type, transport)
            return None

        self.received.append(message)
        for handler in list(self._handlers.get(message.type, [])):
            try:
                handler(message)
            except Exception:
                logger.exception("Capture handler for %s raised", message.type)
        return message


def step_from_capture(
    selector: str,
    step_type: str = "highlight",
    title: str | None = None,
    description: str | None = None,
    position: str = "auto",
    step_id: str | None = None,
) -> Step:
    """Build a new step (and its single action, for action types) from a capture.

    The caller assigns ``step_order`` (see ``Tour.append_step``).
    """
    step_id = step_id or f"step-{secrets.token_hex(4)}"
    step = Step(
        id=step_id,
        step_order=0,
        title=title or "New step",
        description=description,
        target_type="modal" if step_type == "modal" else "page",
        target_selector=selector,
        position=position if position in TOOLTIP_POSITIONS else "auto",
        is_required=True,
    )
    if step_type in ACTION_STEP_TYPES:
        step.actions.append(
            Action(
                id=f"{step_id}-action-0",
                step_id=step_id,
                action_type=step_type,
                action_order=0,
                selector=selector,
                description=description,
            )
        )
    return step


def step_from_message(message: CaptureMessage) -> Step:
    """Turn an ELEMENT or STEP capture message into a new step."""
    if message.type == CAPTURE_STEP and message.step:
        config = message.step.get("config") or {}
        return step_from_capture(
            message.step["selector"],
            step_type=str(message.step.get("stepType") or "highlight"),
            title=config.get("title"),
            description=config.get("description"),
            position=str(config.get("position") or "auto"),
        )
    if message.type == CAPTURE_ELEMENT and message.element:
        return step_from_capture(message.element.selector, title=message.element.label or None)
    raise CaptureError(f"{message.type} does not describe a step")
