"""Authoring-time capture bridge (page script / extension -> builder)."""

from autosetup.capture.bridge import (
    CaptureBridge,
    CapturedElement,
    CaptureError,
    CaptureMessage,
    new_session_token,
    step_from_capture,
    step_from_message,
)

__all__ = [
    "CaptureBridge",
    "CaptureError",
    "CaptureMessage",
    "CapturedElement",
    "new_session_token",
    "step_from_capture",
    "step_from_message",
]
