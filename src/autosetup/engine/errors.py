"""Tour engine error taxonomy."""

from __future__ import annotations


class TourEngineError(Exception):
    """Base class for every error raised by the tour engine."""


class ElementNotFound(TourEngineError):
    """A selector never resolved within its timeout."""

    def __init__(self, selector: str, timeout_ms: int) -> None:
        super().__init__(f"Element not found: {selector} (waited {timeout_ms}ms)")
        self.selector = selector
        self.timeout_ms = timeout_ms


class ActionAborted(TourEngineError):
    """A cooperative cancellation interrupted a wait."""


class ConfigFetchFailed(TourEngineError):
    """The tour configuration could not be fetched. Fatal to initialization."""


class ProgressSyncFailed(TourEngineError):
    """A progress write to the remote store failed. Never fatal."""


class InvalidBranchTarget(TourEngineError):
    """A branch or default-next points at a step that no longer exists."""

    def __init__(self, step_id: str, target_id: str) -> None:
        super().__init__(f"Step {step_id} points at unknown step {target_id}")
        self.step_id = step_id
        self.target_id = target_id


class StepRequiredError(TourEngineError):
    """Raised when skip() is called on a required step."""


class EngineStateError(TourEngineError):
    """A command was issued to an engine that is not active."""
