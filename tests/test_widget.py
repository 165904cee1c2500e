"""Tests for autosetup.engine.widget — the TourEngine driven over a snapshot page."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import pytest

from autosetup.config import WidgetOptions
from autosetup.engine.api_client import TourApiClient
from autosetup.engine.errors import ConfigFetchFailed, EngineStateError
from autosetup.engine.events import TourEvent
from autosetup.engine.renderer import CHROME_ID, OVERLAY_ID
from autosetup.engine.snapshot_page import SnapshotPage
from autosetup.engine.state_machine import FINISHED, PAUSED, RUNNING
from autosetup.engine.tour import COMPLETED, ProgressEntry, Tour
from autosetup.engine.widget import DESTROYED, TourEngine
from autosetup.server.stub_api import TourApiServer

from conftest import SAMPLE_HTML


def run_async(coro):
    """Run a coroutine synchronously in a new event loop."""
    return asyncio.run(coro)


def _engine(page: SnapshotPage, tour: Tour | None, client: Any = None, **option_fields: Any) -> TourEngine:
    option_fields.setdefault("action_delay_ms", 0)
    options = WidgetOptions(config_id="cfg-1", api_key="key-1", **option_fields)
    return TourEngine(
        page,
        options,
        client=client,
        tour=tour,
        element_timeout_ms=200,
        render_timeout_ms=200,
        sync_debounce_ms=20,
    )


def _record(engine: TourEngine, *events: TourEvent) -> list[tuple[str, dict[str, Any]]]:
    seen: list[tuple[str, dict[str, Any]]] = []
    for event in events:
        engine.on(event, lambda payload, e=event: seen.append((e.value, payload)))
    return seen


def _one_step_tour(step: dict[str, Any], *more: dict[str, Any]) -> Tour:
    steps = [{"step_order": i, "title": s.get("id", ""), **s} for i, s in enumerate((step, *more), start=1)]
    return Tour.from_dict({"configuration": {"id": "cfg-1", "name": "Mini"}, "steps": steps})


# ---------------------------------------------------------------------------
# 1. init() and auto-start
# ---------------------------------------------------------------------------

class TestInit:

    def test_auto_start_renders_first_step(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            seen = _record(engine, TourEvent.READY, TourEvent.START, TourEvent.STEP_CHANGE)
            await engine.init()
            await engine.settle()
            return engine, seen

        engine, seen = run_async(scenario())
        assert [name for name, _ in seen] == ["ready", "start", "stepChange"]
        assert seen[0][1]["steps"] == 5
        assert seen[2][1]["step_id"] == "welcome"
        assert engine.renderer.current.kind == "tooltip"
        assert engine.renderer.chrome.kind == "topbar"
        assert set(page.overlays) == {OVERLAY_ID, CHROME_ID}

    def test_auto_start_disabled(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour, auto_start=False)
            await engine.init()
            return engine

        engine = run_async(scenario())
        assert engine.machine.current_step is None
        assert page.overlays == {}

    def test_init_twice_raises(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour, auto_start=False)
            await engine.init()
            with pytest.raises(EngineStateError):
                await engine.init()

        run_async(scenario())

    def test_fetch_failure_is_fatal_and_reported(self, page: SnapshotPage):
        class FailingClient:
            def fetch_configuration(self, config_id, api_key, client_id=None):
                raise ConfigFetchFailed("get-configuration returned 401")

        async def scenario():
            engine = _engine(page, None, client=FailingClient())
            seen = _record(engine, TourEvent.ERROR)
            with pytest.raises(ConfigFetchFailed):
                await engine.init()
            return engine, seen

        engine, seen = run_async(scenario())
        assert seen == [("error", {"error": "get-configuration returned 401", "fatal": True})]
        assert page.overlays == {}
        with pytest.raises(EngineStateError):
            engine.get_progress()

    def test_resumes_at_first_pending_step(self, page: SnapshotPage, sample_tour: Tour):
        sample_tour.progress["welcome"] = ProgressEntry.stamped("welcome", COMPLETED)

        async def scenario():
            engine = _engine(page, sample_tour)
            await engine.init()
            await engine.settle()
            return engine

        engine = run_async(scenario())
        assert engine.machine.current_step.id == "role"
        assert engine.get_progress()["completed"] == 1


# ---------------------------------------------------------------------------
# 2. Progression through the tour
# ---------------------------------------------------------------------------

class TestProgression:

    def test_member_path_to_completion(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            seen = _record(engine, TourEvent.STEP_COMPLETE, TourEvent.BRANCH_CHOSEN, TourEvent.COMPLETE)
            await engine.init()
            await engine.complete_step()
            await engine.choose_branch("b-member")
            assert engine.machine.current_step.id == "profile"
            await engine.complete_step()
            await engine.complete_step()
            await engine.settle()
            return engine, seen

        engine, seen = run_async(scenario())
        names = [name for name, _ in seen]
        assert names == ["stepComplete", "stepComplete", "branchChosen", "stepComplete", "stepComplete", "complete"]
        assert seen[2][1] == {"step_id": "role", "branch_id": "b-member", "next_step_id": "profile"}
        assert seen[-1][1]["progress"]["percentage"] == 80
        assert engine.machine.state == FINISHED
        assert engine.store.branch_choices == {"role": "b-member"}
        assert engine.renderer.chrome.kind == "complete"
        assert OVERLAY_ID not in page.overlays

    def test_step_actions_run_on_activation(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            await engine.init()
            await engine.complete_step()
            await engine.choose_branch("b-admin")
            await engine.settle()
            return engine

        engine = run_async(scenario())
        assert engine.machine.current_step.id == "invite"
        assert page.soup.select_one("input[name=email]")["value"] == "teammate@example.com"
        assert engine.renderer.current.kind == "tooltip"

    def test_overlay_button_commands(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            await engine.init()
            await page.press("complete")
            await page.press("branch:b-admin")
            await engine.settle()
            return engine

        engine = run_async(scenario())
        assert engine.machine.current_step.id == "invite"
        assert engine.store.branch_choices == {"role": "b-admin"}

    def test_rejected_command_emits_non_fatal_error(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            seen = _record(engine, TourEvent.ERROR)
            await engine.init()
            await engine.go_to(4)
            await page.press("skip")
            return engine, seen

        engine, seen = run_async(scenario())
        assert seen[0][1]["command"] == "skip"
        assert seen[0][1]["fatal"] is False
        assert engine.machine.current_step.id == "finish"

    def test_previous_and_reset(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            await engine.init()
            await engine.complete_step()
            assert await engine.previous() is True
            assert engine.machine.current_step.id == "welcome"
            cleared = await engine.reset()
            await engine.settle()
            return engine, cleared

        engine, cleared = run_async(scenario())
        assert cleared == ["welcome", "role", "invite", "profile", "finish"]
        assert engine.store.progress == {}
        assert engine.get_progress()["completed"] == 0

    def test_visible_steps_follow_choice(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            await engine.init()
            before = [v.step.id for v in engine.visible_steps() if not v.locked]
            await engine.complete_step()
            await engine.choose_branch("b-admin")
            after = [v.step.id for v in engine.visible_steps() if not v.locked]
            await engine.settle()
            return before, after

        before, after = run_async(scenario())
        assert before == ["welcome", "role"]
        assert after == ["welcome", "role", "invite", "finish"]


# ---------------------------------------------------------------------------
# 3. Branch conditions
# ---------------------------------------------------------------------------

class TestBranchConditions:

    def _branch_tour(self, condition_type: str) -> Tour:
        return _one_step_tour(
            {
                "id": "role",
                "is_branch_point": True,
                "branches": [
                    {"id": "b-admin", "condition_type": condition_type, "condition_label": "Admin",
                     "branch_order": 1, "condition_value": "#admin-btn", "next_step_id": "admin"},
                ],
            },
            {"id": "other"},
            {"id": "admin"},
        )

    def test_click_branch(self, page: SnapshotPage):
        async def scenario():
            engine = _engine(page, self._branch_tour("click"))
            await engine.init()
            await page.user_click("#admin-btn")
            await engine.settle()
            transition = await engine.complete_step()
            await engine.settle()
            return engine, transition

        engine, transition = run_async(scenario())
        assert transition.to_step_id == "admin"
        assert engine.store.branch_choices == {"role": "b-admin"}

    def test_click_elsewhere_falls_back_to_order(self, page: SnapshotPage):
        async def scenario():
            engine = _engine(page, self._branch_tour("click"))
            await engine.init()
            await page.user_click("#member-btn")
            await engine.settle()
            transition = await engine.complete_step()
            await engine.settle()
            return transition

        assert run_async(scenario()).to_step_id == "other"

    def test_selector_branch(self, page: SnapshotPage):
        async def scenario():
            engine = _engine(page, self._branch_tour("selector"))
            await engine.init()
            transition = await engine.complete_step()
            await engine.settle()
            return transition

        assert run_async(scenario()).to_step_id == "admin"

    def test_custom_branch_signal(self, page: SnapshotPage):
        async def scenario():
            engine = _engine(page, self._branch_tour("custom"))
            await engine.init()
            engine.signal("b-admin")
            transition = await engine.complete_step()
            await engine.settle()
            return transition

        assert run_async(scenario()).to_step_id == "admin"


# ---------------------------------------------------------------------------
# 4. Rendering edge cases
# ---------------------------------------------------------------------------

class TestRendering:

    def test_missing_target_falls_back_to_modal(self, page: SnapshotPage):
        async def scenario():
            engine = _engine(page, _one_step_tour({"id": "a", "target_selector": "#nowhere"}))
            await engine.init()
            await engine.settle()
            return engine

        assert run_async(scenario()).renderer.current.kind == "modal"

    def test_late_target_gets_tooltip(self, page: SnapshotPage):
        async def scenario():
            asyncio.get_running_loop().call_later(
                0.05, page.append_html, "#root", '<button id="late">Late</button>'
            )
            engine = _engine(page, _one_step_tour({"id": "a", "target_selector": "#late"}))
            await engine.init()
            await engine.settle()
            return engine

        engine = run_async(scenario())
        assert engine.renderer.current.kind == "tooltip"
        assert page.mutation_listener_count == 0

    def test_leaving_a_step_cancels_its_actions(self, page: SnapshotPage):
        tour = _one_step_tour(
            {"id": "slow", "actions": [{"id": "w", "action_type": "wait", "action_order": 1, "delay_ms": 5000}]},
            {"id": "next"},
        )

        async def scenario():
            engine = _engine(page, tour)
            seen = _record(engine, TourEvent.ACTIONS_COMPLETE)
            await engine.init()
            await asyncio.sleep(0.05)
            start = time.monotonic()
            await engine.complete_step()
            elapsed = time.monotonic() - start
            await engine.settle()
            return engine, seen, elapsed

        engine, seen, elapsed = run_async(scenario())
        assert elapsed < 1.0
        assert seen[0][1]["aborted"] is True
        assert engine.machine.current_step.id == "next"

    def test_minimize_and_restore(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            await engine.init()
            await page.press("minimize")
            minimized = (engine.renderer.chrome.kind, OVERLAY_ID in page.overlays)
            await page.press("restore")
            await engine.settle()
            return engine, minimized

        engine, minimized = run_async(scenario())
        assert minimized == ("minimized", False)
        assert engine.renderer.chrome.kind == "topbar"
        assert engine.renderer.current is not None

    def test_close_pauses_and_resume_rerenders(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            await engine.init()
            await page.press("close")
            paused = (engine.machine.state, engine.renderer.current)
            await engine.resume()
            await engine.settle()
            return engine, paused

        engine, paused = run_async(scenario())
        assert paused == (PAUSED, None)
        assert engine.machine.state == RUNNING
        assert engine.renderer.current.kind == "tooltip"


# ---------------------------------------------------------------------------
# 5. Route gating
# ---------------------------------------------------------------------------

class TestRouteGating:

    def test_hidden_until_allowed_route(self, sample_tour: Tour):
        page = SnapshotPage(SAMPLE_HTML, path="/login")

        async def scenario():
            engine = _engine(page, sample_tour, allowed_routes=["/app/*"])
            seen = _record(engine, TourEvent.START, TourEvent.ROUTE_CHANGE)
            await engine.init()
            hidden_at_init = (engine.hidden, dict(page.overlays))
            page.set_path("/app/home")
            await engine.settle()
            shown = engine.renderer.current is not None
            page.set_path("/login")
            await engine.settle()
            return engine, seen, hidden_at_init, shown

        engine, seen, hidden_at_init, shown = run_async(scenario())
        assert hidden_at_init == (True, {})
        assert shown is True
        assert [name for name, _ in seen] == ["routeChange", "start", "routeChange"]
        assert seen[2][1] == {"path": "/login", "allowed": False}
        assert engine.hidden is True
        assert page.overlays == {}

    def test_configuration_routes_used_when_options_have_none(self, sample_tour: Tour):
        sample_tour.configuration.allowed_routes = ["/dashboard"]
        page = SnapshotPage(SAMPLE_HTML, path="/app")

        async def scenario():
            engine = _engine(page, sample_tour)
            await engine.init()
            return engine

        assert run_async(scenario()).hidden is True


# ---------------------------------------------------------------------------
# 6. destroy()
# ---------------------------------------------------------------------------

class TestDestroy:

    def test_destroy_tears_down(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            seen = _record(engine, TourEvent.DESTROY)
            await engine.init()
            await engine.settle()
            await engine.destroy()
            await engine.destroy()
            with pytest.raises(EngineStateError):
                await engine.complete_step()
            return engine, seen

        engine, seen = run_async(scenario())
        assert engine.lifecycle == DESTROYED
        assert seen == [("destroy", {})]
        assert page.overlays == {}
        assert page._command_listeners == []
        assert page._click_listeners == []
        assert page._route_listeners == []


# ---------------------------------------------------------------------------
# 7. Against the stub API
# ---------------------------------------------------------------------------

class TestRemoteTour:

    def test_progress_syncs_and_resumes(self, sample_tour: Tour):
        with TourApiServer(sample_tour) as server:
            async def first_visit():
                engine = _engine(SnapshotPage(SAMPLE_HTML, path="/app"), None,
                                 client=TourApiClient(server.url), client_id="client-1")
                await engine.init()
                await engine.complete_step()
                await engine.choose_branch("b-member")
                await engine.destroy()

            async def second_visit():
                engine = _engine(SnapshotPage(SAMPLE_HTML, path="/app"), None,
                                 client=TourApiClient(server.url), client_id="client-1")
                await engine.init()
                await engine.settle()
                current = engine.machine.current_step.id
                choices = dict(engine.store.branch_choices)
                await engine.destroy()
                return current, choices

            run_async(first_visit())
            rows = dict(server.store.progress)
            current, choices = run_async(second_visit())

        assert rows[("client-1", "cfg-1", "welcome")]["status"] == COMPLETED
        assert rows[("client-1", "cfg-1", "role")]["status"] == COMPLETED
        assert current == "profile"
        assert choices == {"role": "b-member"}


# ---------------------------------------------------------------------------
# 8. Progress roadmap
# ---------------------------------------------------------------------------

class TestRoadmap:

    def test_topbar_lists_unlocked_steps_and_counts_locked(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            await engine.init()
            await engine.settle()
            return engine

        engine = run_async(scenario())
        chrome = engine.renderer.chrome
        assert chrome.commands == ["minimize", "close", "goto:1"]
        assert 'data-autosetup-command="goto:1"' in chrome.html
        assert 'data-autosetup-locked="3"' in chrome.html
        assert "Choose a path" in chrome.html

    def test_goto_jumps_to_an_unlocked_step(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            await engine.init()
            await page.press("goto:1")
            await engine.settle()
            return engine

        engine = run_async(scenario())
        assert engine.machine.current_step.id == "role"
        assert engine.get_progress()["completed"] == 0

    def test_goto_a_locked_step_is_rejected(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            seen = _record(engine, TourEvent.ERROR)
            await engine.init()
            await page.press("goto:2")
            await page.press("goto:99")
            await page.press("goto:abc")
            return engine, seen

        engine, seen = run_async(scenario())
        assert engine.machine.current_step.id == "welcome"
        assert [payload["command"] for _, payload in seen] == ["goto:2", "goto:99", "goto:abc"]
        assert all(payload["fatal"] is False for _, payload in seen)

    def test_roadmap_follows_the_chosen_branch(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            await engine.init()
            await engine.complete_step()
            await engine.choose_branch("b-member")
            await engine.settle()
            return engine

        engine = run_async(scenario())
        chrome = engine.renderer.chrome
        assert chrome.commands == ["minimize", "close", "goto:0", "reset:0", "goto:1", "reset:1", "goto:4"]
        assert "Member" in chrome.html
        assert 'data-autosetup-locked="1"' in chrome.html

    def test_reset_restarts_from_a_completed_step(self, page: SnapshotPage, sample_tour: Tour):
        async def scenario():
            engine = _engine(page, sample_tour)
            await engine.init()
            await engine.complete_step()
            await engine.choose_branch("b-member")
            await page.press("reset:1")
            await engine.settle()
            return engine

        engine = run_async(scenario())
        assert engine.machine.current_step.id == "role"
        assert engine.store.branch_choices == {}
        assert set(engine.store.progress) == {"welcome"}
        assert engine.get_progress()["completed"] == 1
