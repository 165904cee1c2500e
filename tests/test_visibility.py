"""Unit tests for autosetup.engine.visibility — the visible/locked step projection."""

from __future__ import annotations

from autosetup.engine.tour import COMPLETED, SKIPPED, ProgressEntry, Step, Tour
from autosetup.engine.visibility import (
    AWAITING_BRANCH,
    BEHIND_BRANCH,
    OFF_PATH,
    has_locked_steps,
    project_visible_steps,
)


def _ids(projection, locked: bool) -> list[str]:
    return [v.step.id for v in projection if v.locked is locked]


def _done(*step_ids: str) -> dict[str, ProgressEntry]:
    return {sid: ProgressEntry.stamped(sid, COMPLETED) for sid in step_ids}


class TestProjection:

    def test_walk_stops_at_undecided_branch_point(self, sample_tour: Tour):
        projection = project_visible_steps(sample_tour.steps, {}, {})
        assert _ids(projection, locked=False) == ["welcome", "role"]
        assert _ids(projection, locked=True) == ["invite", "profile", "finish"]
        assert has_locked_steps(projection)

    def test_lock_reasons(self, sample_tour: Tour):
        projection = project_visible_steps(sample_tour.steps, {}, {})
        reasons = {v.step.id: v.lock_reason for v in projection if v.locked}
        assert reasons == {"invite": AWAITING_BRANCH, "profile": AWAITING_BRANCH, "finish": BEHIND_BRANCH}
        role = next(v for v in projection if v.step.id == "role")
        assert role.has_locked_branches is True

    def test_choice_opens_its_path_only(self, sample_tour: Tour):
        projection = project_visible_steps(sample_tour.steps, {"role": "b-admin"}, _done("welcome", "role"))
        assert _ids(projection, locked=False) == ["welcome", "role", "invite", "finish"]
        assert _ids(projection, locked=True) == ["profile"]
        profile = next(v for v in projection if v.step.id == "profile")
        assert profile.lock_reason == OFF_PATH

    def test_branch_path_label_on_branch_point(self, sample_tour: Tour):
        projection = project_visible_steps(sample_tour.steps, {"role": "b-member"}, {})
        role = next(v for v in projection if v.step.id == "role")
        assert role.branch_path == "Member"
        assert _ids(projection, locked=False) == ["welcome", "role", "profile", "finish"]

    def test_branch_point_left_without_choice_keeps_walking(self, sample_tour: Tour):
        # Completed by a plain "next": the tour moved on by order
        projection = project_visible_steps(sample_tour.steps, {}, _done("welcome", "role"))
        assert _ids(projection, locked=False) == ["welcome", "role", "invite", "finish"]

    def test_skipped_branch_point_keeps_walking(self, sample_tour: Tour):
        progress = {"role": ProgressEntry.stamped("role", SKIPPED)}
        projection = project_visible_steps(sample_tour.steps, {}, progress)
        assert "invite" in _ids(projection, locked=False)

    def test_status_and_active_flags(self, sample_tour: Tour):
        projection = project_visible_steps(sample_tour.steps, {}, _done("welcome"), active_step_id="role")
        by_id = {v.step.id: v for v in projection}
        assert by_id["welcome"].status == COMPLETED
        assert by_id["role"].active is True
        assert by_id["welcome"].active is False

    def test_linear_tour_is_fully_visible(self):
        steps = [Step(id=f"s{i}", step_order=i, title="") for i in range(1, 4)]
        projection = project_visible_steps(steps, {}, {})
        assert _ids(projection, locked=False) == ["s1", "s2", "s3"]
        assert not has_locked_steps(projection)

    def test_default_cycle_terminates(self):
        steps = [
            Step(id="a", step_order=1, title="", default_next_step_id="b"),
            Step(id="b", step_order=2, title="", default_next_step_id="a"),
        ]
        projection = project_visible_steps(steps, {}, {})
        assert _ids(projection, locked=False) == ["a", "b"]

    def test_empty_tour(self):
        assert project_visible_steps([], {}, {}) == []

    def test_projection_is_pure(self, sample_tour: Tour):
        choices = {"role": "b-admin"}
        progress = _done("welcome")
        first = project_visible_steps(sample_tour.steps, choices, progress)
        second = project_visible_steps(sample_tour.steps, choices, progress)
        assert [(v.step.id, v.locked) for v in first] == [(v.step.id, v.locked) for v in second]
        assert choices == {"role": "b-admin"}
        assert list(progress) == ["welcome"]
