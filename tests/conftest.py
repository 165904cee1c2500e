"""Shared fixtures for AutoSetup unit tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml

from autosetup.engine.snapshot_page import SnapshotPage
from autosetup.engine.tour import Tour


# ---------------------------------------------------------------------------
# Fixture: sample page markup
# ---------------------------------------------------------------------------

SAMPLE_HTML = """\
<html>
<body>
  <header id="welcome" data-autosetup-rect="10,10,300,40">Welcome aboard</header>
  <div id="role" data-autosetup-rect="100,100,200,50">
    <button id="admin-btn" class="btn btn-primary">Admin</button>
    <button id="member-btn" class="btn">Member</button>
  </div>
  <form id="invite" data-autosetup-rect="300,100,400,120">
    <input name="email" type="email" placeholder="Teammate email">
    <button type="submit" data-testid="send-invite">Send invite</button>
  </form>
  <div id="root"></div>
</body>
</html>
"""


@pytest.fixture
def sample_html() -> str:
    return SAMPLE_HTML


@pytest.fixture
def page() -> SnapshotPage:
    """A fresh in-memory page at ``/app``."""
    return SnapshotPage(SAMPLE_HTML, path="/app")


# ---------------------------------------------------------------------------
# Fixture: sample branching tour
# ---------------------------------------------------------------------------

def _sample_tour_dict() -> dict[str, Any]:
    """Five steps: welcome, role (branch point), admin path, member path, finish.

    ``role`` branches to ``invite`` (admin) or ``profile`` (member).  ``invite``
    continues to ``finish`` by default; ``profile`` reaches it by order.
    """
    return {
        "configuration": {
            "id": "cfg-1",
            "name": "Workspace setup",
            "target_url": "http://localhost:3000/app",
            "widget_position": "top-bar",
            "auto_start": True,
            "allowed_routes": [],
            "theme": {"primaryColor": "#0ea5e9", "highlightAnimation": "glow"},
            "api_key": "key-1",
        },
        "steps": [
            {
                "id": "welcome",
                "step_order": 1,
                "title": "Welcome",
                "description": "A quick tour of your new workspace.",
                "target_selector": "#welcome",
            },
            {
                "id": "role",
                "step_order": 2,
                "title": "Pick your role",
                "target_selector": "#role",
                "is_branch_point": True,
                "branches": [
                    {
                        "id": "b-admin",
                        "condition_type": "custom",
                        "condition_label": "Admin",
                        "branch_order": 1,
                        "next_step_id": "invite",
                    },
                    {
                        "id": "b-member",
                        "condition_type": "custom",
                        "condition_label": "Member",
                        "branch_order": 2,
                        "next_step_id": "profile",
                    },
                ],
            },
            {
                "id": "invite",
                "step_order": 3,
                "title": "Invite your team",
                "target_selector": "#invite",
                "default_next_step_id": "finish",
                "actions": [
                    {
                        "id": "invite-fill",
                        "action_type": "input",
                        "action_order": 1,
                        "selector": "input[name=email]",
                        "value": "teammate@example.com",
                    },
                ],
            },
            {
                "id": "profile",
                "step_order": 4,
                "title": "Fill in your profile",
            },
            {
                "id": "finish",
                "step_order": 5,
                "title": "All set",
                "is_required": True,
            },
        ],
        "progress": {},
        "branchChoices": {},
    }


@pytest.fixture
def sample_tour_dict() -> dict[str, Any]:
    return _sample_tour_dict()


@pytest.fixture
def sample_tour() -> Tour:
    return Tour.from_dict(_sample_tour_dict())


@pytest.fixture
def tour_file(tmp_path: Path) -> Path:
    """The sample tour written as YAML."""
    path = tmp_path / "onboarding.yaml"
    path.write_text(yaml.safe_dump(_sample_tour_dict(), sort_keys=False), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Fixture: temporary project directory with .autosetup/ structure
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_project_dir(tmp_path: Path) -> Path:
    """Create a temporary .autosetup/ project directory with a config file."""
    project_dir = tmp_path / ".autosetup"
    project_dir.mkdir()
    config_data = {
        "api_base": "http://localhost:8787/functions/v1/",
        "config_id": "cfg-1",
        "api_key": "key-1",
        "headless": True,
        "viewport": {"width": 1440, "height": 900},
        "widget": {"position": "modal", "autoExecuteActions": False},
    }
    (project_dir / "config.yaml").write_text(
        yaml.dump(config_data, default_flow_style=False), encoding="utf-8"
    )
    return project_dir
