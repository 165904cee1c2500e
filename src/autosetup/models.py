"""Centralized engine defaults and wire constants."""

# Remote API (engine boundary)
DEFAULT_API_BASE = "http://localhost:8787/functions/v1"
GET_CONFIGURATION_PATH = "/get-configuration"
SAVE_PROGRESS_PATH = "/save-progress"
SAVE_BRANCH_CHOICE_PATH = "/save-branch-choice"
CREATE_STEP_PATH = "/create-step"
HEALTH_PATH = "/health"
DEFAULT_STUB_PORT = 8787
DEFAULT_HTTP_TIMEOUT = 15  # seconds

# Element waiting
DEFAULT_ELEMENT_TIMEOUT_MS = 10_000
RENDER_ELEMENT_TIMEOUT_MS = 5_000
POLL_INTERVAL_MS = 100

# Action pipeline
DEFAULT_ACTION_DELAY_MS = 300
SCROLL_SETTLE_MS = 300
CLICK_SETTLE_MS = 100
OPEN_MODAL_SETTLE_MS = 300
DEFAULT_WAIT_MS = 1000
DEFAULT_HIGHLIGHT_DURATION_MS = 2000

# Progress sync
SYNC_DEBOUNCE_MS = 500
SYNC_MAX_RETRIES = 3

# Local cache keys (mirror the widget's localStorage keys)
PROGRESS_KEY_PREFIX = "autosetup_progress_"
CHOICES_KEY_PREFIX = "autosetup_branch_choices_"
CLIENT_ID_KEY = "autosetup_client_id"

# Widget
WIDGET_POSITIONS = ("top-bar", "modal", "tooltip")
DEFAULT_WIDGET_POSITION = "top-bar"
DEFAULT_VIEWPORT = (1280, 720)

# Selector synthesis
MAX_SELECTOR_ANCESTORS = 5
SCAN_LIMIT = 50

# Capture bridge
CAPTURE_CHANNEL_NAME = "tour-builder-capture"
