"""Next-step resolution over the step graph.

Priority, first rule that yields an existing step wins:

1. a recorded branch choice for a branch-point step (replay),
2. the first branch, in ``branch_order``, whose condition is satisfied,
3. the step's ``default_next_step_id``,
4. the next step by ``step_order``.

A branch or default that points at a missing step is logged as
:class:`InvalidBranchTarget` and treated as "no match"; resolution carries
on with the next rule.  A matched branch with no ``next_step_id`` is also
"no match".  When every rule comes up empty the tour is over.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Callable, Iterable

from autosetup.engine.errors import InvalidBranchTarget
from autosetup.engine.tour import Branch, Step

logger = logging.getLogger("autosetup.engine.branching")

BranchPredicate = Callable[[Branch], bool]

# Resolution reasons
CHOICE = "choice"
BRANCH = "branch"
DEFAULT = "default"
ORDER = "order"
END = "end"


@dataclasses.dataclass(frozen=True)
class Resolution:
    next_step_id: str | None
    reason: str
    branch_id: str | None = None


def _valid_target(step: Step, target_id: str | None, by_id: dict[str, Step]) -> bool:
    if target_id is None:
        return False
    if target_id not in by_id:
        err = InvalidBranchTarget(step.id, target_id)
        logger.warning("%s; falling through", err)
        return False
    return True


def next_by_order(step: Step, steps: list[Step], exclude: Iterable[str] = ()) -> Step | None:
    """First step ordered after ``step`` that is not in ``exclude``."""
    skip = set(exclude)
    for candidate in sorted(steps, key=lambda s: s.step_order):
        if candidate.step_order > step.step_order and candidate.id not in skip:
            return candidate
    return None


def recorded_branch(step: Step, branch_choices: dict[str, str], by_id: dict[str, Step]) -> Branch | None:
    """The branch previously chosen at ``step``, if it still leads somewhere."""
    if not step.has_branches:
        return None
    branch = step.branch(branch_choices.get(step.id, ""))
    if branch is None or not _valid_target(step, branch.next_step_id, by_id):
        return None
    return branch


def resolve_next(
    step: Step,
    steps: list[Step],
    branch_choices: dict[str, str],
    satisfied: BranchPredicate | None = None,
    exclude: Iterable[str] = (),
) -> Resolution:
    """Resolve which step follows ``step``.

    Args:
        step: The step being left.
        steps: Every step of the tour.
        branch_choices: step id -> branch id choices recorded so far.
        satisfied: Evaluates a branch condition.  ``None`` means no branch
            condition is satisfied (only recorded choices count).
        exclude: Step ids the order-based fallback must not return.
    """
    by_id = {s.id: s for s in steps}

    if step.has_branches:
        replay = recorded_branch(step, branch_choices, by_id)
        if replay is not None:
            return Resolution(replay.next_step_id, CHOICE, replay.id)
        if satisfied is not None:
            for branch in step.branches:
                if not satisfied(branch):
                    continue
                if _valid_target(step, branch.next_step_id, by_id):
                    return Resolution(branch.next_step_id, BRANCH, branch.id)

    if _valid_target(step, step.default_next_step_id, by_id):
        return Resolution(step.default_next_step_id, DEFAULT)

    following = next_by_order(step, steps, exclude)
    if following is not None:
        return Resolution(following.id, ORDER)
    return Resolution(None, END)
