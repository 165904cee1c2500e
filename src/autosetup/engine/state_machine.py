"""Step progression state machine.

States::

    idle --start()--> running(step) --complete()/skip()/advance()--> running(next)
                         |    ^                                          |
                   pause()  resume()                              no next step
                         v    |                                          v
                         paused                                     completed

The machine is in-memory only.  Every mutating call returns a
:class:`Transition` describing what changed (status written, branch choice
recorded, where it moved), and the engine persists from that.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

from autosetup.engine.branching import CHOICE, END, BranchPredicate, resolve_next
from autosetup.engine.errors import EngineStateError, StepRequiredError
from autosetup.engine.tour import COMPLETED, PENDING, SKIPPED, ProgressEntry, Step
from autosetup.engine.visibility import VisibleStep, project_visible_steps

logger = logging.getLogger("autosetup.engine.state_machine")

IDLE = "idle"
RUNNING = "running"
PAUSED = "paused"
FINISHED = "completed"


@dataclasses.dataclass(frozen=True)
class Transition:
    """What one state machine command did."""

    from_step_id: str | None
    to_step_id: str | None
    reason: str  # choice, branch, default, order, end, jump, back, reset, start, noop
    status: str | None = None  # progress status written for from_step_id
    branch_id: str | None = None  # branch choice newly recorded for from_step_id

    @property
    def finished(self) -> bool:
        return self.to_step_id is None and self.reason == END


class StepStateMachine:
    """Tracks the current step plus completed/skipped sets for one tour."""

    def __init__(
        self,
        steps: list[Step],
        progress: dict[str, ProgressEntry] | None = None,
        branch_choices: dict[str, str] | None = None,
    ) -> None:
        self.steps = sorted(steps, key=lambda s: s.step_order)
        self.progress: dict[str, ProgressEntry] = progress if progress is not None else {}
        self.branch_choices: dict[str, str] = branch_choices if branch_choices is not None else {}
        self.state = IDLE
        self.current_index: int | None = None
        self._history: list[int] = []

    # -- Lookups -------------------------------------------------------------

    @property
    def current_step(self) -> Step | None:
        if self.current_index is None:
            return None
        return self.steps[self.current_index]

    def index_of(self, step_id: str) -> int | None:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return None

    def status(self, step_id: str) -> str:
        entry = self.progress.get(step_id)
        return entry.status if entry else PENDING

    def _require_step(self) -> Step:
        step = self.current_step
        if step is None or self.state in (IDLE, FINISHED):
            raise EngineStateError(f"No active step (state: {self.state})")
        return step

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> Transition:
        """Position on the first pending step along the recorded branch path.

        Steps on branches the client did not take are never started from.
        """
        self._history.clear()
        index_of = {step.id: index for index, step in enumerate(self.steps)}
        for visible in project_visible_steps(self.steps, self.branch_choices, self.progress):
            if not visible.locked and self.status(visible.step.id) == PENDING:
                self.current_index = index_of[visible.step.id]
                self.state = RUNNING
                return Transition(None, visible.step.id, "start")
        self.current_index = None
        self.state = FINISHED
        return Transition(None, None, END)

    def pause(self) -> None:
        if self.state == RUNNING:
            self.state = PAUSED

    def resume(self) -> None:
        if self.state == PAUSED:
            self.state = RUNNING

    # -- Progression ---------------------------------------------------------

    def advance(self, satisfied: BranchPredicate | None = None, status: str | None = None) -> Transition:
        """Move past the current step.

        Args:
            satisfied: Branch condition evaluator for branch-point steps.
            status: Progress status already written for the step, reported
                back in the transition.
        """
        step = self._require_step()
        resolution = resolve_next(step, self.steps, self.branch_choices, satisfied)

        new_choice = None
        if resolution.branch_id and resolution.reason != CHOICE:
            self.branch_choices[step.id] = resolution.branch_id
            new_choice = resolution.branch_id

        self._move_to(resolution.next_step_id)
        transition = Transition(step.id, resolution.next_step_id, resolution.reason, status, new_choice)
        logger.debug("Step %s -> %s (%s)", step.id, resolution.next_step_id, resolution.reason)
        return transition

    def complete(self, satisfied: BranchPredicate | None = None) -> Transition:
        step = self._require_step()
        self.progress[step.id] = ProgressEntry.stamped(step.id, COMPLETED)
        return self.advance(satisfied, status=COMPLETED)

    def skip(self, satisfied: BranchPredicate | None = None) -> Transition:
        step = self._require_step()
        if step.is_required:
            raise StepRequiredError(f"Step {step.id} is required and cannot be skipped")
        self.progress[step.id] = ProgressEntry.stamped(step.id, SKIPPED)
        return self.advance(satisfied, status=SKIPPED)

    def choose_branch(self, branch_id: str) -> Transition:
        """Take ``branch_id`` at the current branch point and complete it.

        A branch without a target is a no-op: nothing is recorded and the
        step stays pending.
        """
        step = self._require_step()
        branch = step.branch(branch_id)
        if branch is None:
            raise ValueError(f"Step {step.id} has no branch {branch_id}")
        if branch.next_step_id is None or self.index_of(branch.next_step_id) is None:
            logger.info("Branch %s of step %s leads nowhere; step stays pending", branch_id, step.id)
            return Transition(step.id, step.id, "noop")
        self.branch_choices.pop(step.id, None)
        return self.complete(lambda b: b.id == branch_id)

    def _move_to(self, step_id: str | None) -> None:
        index = self.index_of(step_id) if step_id is not None else None
        if index is None:
            self.current_index = None
            self.state = FINISHED
            return
        if self.current_index is not None:
            self._history.append(self.current_index)
        self.current_index = index
        if self.state != PAUSED:
            self.state = RUNNING

    # -- Navigation ----------------------------------------------------------

    def go_to(self, index: int) -> Transition | None:
        """Jump straight to ``index`` without touching any progress."""
        if not 0 <= index < len(self.steps):
            logger.warning("go_to(%d) ignored: tour has %d steps", index, len(self.steps))
            return None
        previous = self.current_step
        if self.current_index is not None:
            self._history.append(self.current_index)
        self.current_index = index
        if self.state != PAUSED:
            self.state = RUNNING
        return Transition(previous.id if previous else None, self.steps[index].id, "jump")

    def back(self) -> Transition | None:
        """Return to the step the machine came from (or the previous by order)."""
        if self.current_index is None:
            return None
        previous = self.current_step
        if self._history:
            index = self._history.pop()
        elif self.current_index > 0:
            index = self.current_index - 1
        else:
            return None
        self.current_index = index
        return Transition(previous.id if previous else None, self.steps[index].id, "back")

    def reset(self, from_index: int | None = None) -> list[str]:
        """Clear progress and branch choices at/after ``from_index`` and go there.

        Returns the ids of every step whose progress was cleared.
        """
        start = from_index or 0
        if not 0 <= start < max(len(self.steps), 1):
            raise IndexError(f"reset({from_index}) out of range for {len(self.steps)} steps")
        cleared = [s.id for s in self.steps[start:]]
        for step_id in cleared:
            self.progress.pop(step_id, None)
            self.branch_choices.pop(step_id, None)
        self._history = [i for i in self._history if i < start]
        if self.steps:
            self.current_index = start
            self.state = RUNNING
        return cleared

    # -- Projections ---------------------------------------------------------

    def get_progress(self) -> dict[str, Any]:
        total = len(self.steps)
        completed = sum(1 for s in self.steps if self.status(s.id) == COMPLETED)
        skipped = sum(1 for s in self.steps if self.status(s.id) == SKIPPED)
        percentage = int(completed * 100 / total + 0.5) if total else 0
        return {
            "completed": completed,
            "skipped": skipped,
            "total": total,
            "percentage": percentage,
            "current_index": self.current_index,
            "state": self.state,
        }

    def visible_steps(self) -> list[VisibleStep]:
        active = self.current_step.id if self.current_step else None
        return project_visible_steps(self.steps, self.branch_choices, self.progress, active)
