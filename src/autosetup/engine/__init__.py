"""AutoSetup engine — runtime tour modules.

Provides the tour execution engine:
- TourEngine: one embedded tour on one page (commands, events, lifecycle)
- StepStateMachine: step progression with branching and replayable choices
- ActionExecutor: cancellable per-step action pipeline
- OverlayRenderer: highlight, tooltip and widget chrome
- ProgressStore: local progress with debounced remote sync
- TourApiClient: get-configuration / save-progress / save-branch-choice
- SnapshotPage: offline page driver over an HTML snapshot
"""

from autosetup.engine.action_executor import ActionExecutor, ActionResult, RunReport
from autosetup.engine.api_client import TourApiClient
from autosetup.engine.errors import (
    ActionAborted,
    ConfigFetchFailed,
    ElementNotFound,
    EngineStateError,
    InvalidBranchTarget,
    ProgressSyncFailed,
    StepRequiredError,
    TourEngineError,
)
from autosetup.engine.events import EventBus, TourEvent
from autosetup.engine.progress_store import JsonFileCache, MemoryCache, ProgressStore
from autosetup.engine.renderer import OverlayRenderer
from autosetup.engine.snapshot_page import SnapshotPage
from autosetup.engine.state_machine import StepStateMachine, Transition
from autosetup.engine.tour import Action, Branch, ProgressEntry, Step, Tour
from autosetup.engine.widget import TourEngine

# PlaywrightPage is NOT eagerly imported here so the engine works without a
# browser installed.  Import it directly when driving a live page:
#   from autosetup.engine.playwright_page import PlaywrightPage

__all__ = [
    "Action",
    "ActionAborted",
    "ActionExecutor",
    "ActionResult",
    "Branch",
    "ConfigFetchFailed",
    "ElementNotFound",
    "EngineStateError",
    "EventBus",
    "InvalidBranchTarget",
    "JsonFileCache",
    "MemoryCache",
    "OverlayRenderer",
    "ProgressEntry",
    "ProgressStore",
    "ProgressSyncFailed",
    "RunReport",
    "SnapshotPage",
    "Step",
    "StepRequiredError",
    "StepStateMachine",
    "Tour",
    "TourApiClient",
    "TourEngine",
    "TourEngineError",
    "TourEvent",
    "Transition",
]
