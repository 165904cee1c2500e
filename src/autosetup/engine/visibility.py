"""Visible-step projection.

Walks the step graph from the first step, following recorded branch
choices, defaults and step order, and stops at the first branch point that
still needs a decision.  Everything the walk reached is visible; everything
else exists but is locked.  The projection is a pure function of its inputs
and is recomputed by the engine whenever progress or a branch choice changes.
"""

from __future__ import annotations

import dataclasses

from autosetup.engine.branching import next_by_order, recorded_branch
from autosetup.engine.tour import COMPLETED, PENDING, SKIPPED, ProgressEntry, Step

# Lock reasons
AWAITING_BRANCH = "awaiting_branch"  # a direct target of the unresolved branch point
BEHIND_BRANCH = "behind_branch"  # only reachable past the unresolved branch point
OFF_PATH = "off_path"  # the resolved path never reaches it


@dataclasses.dataclass
class VisibleStep:
    step: Step
    locked: bool
    lock_reason: str | None = None
    branch_path: str | None = None  # label of the branch taken out of this step
    has_locked_branches: bool = False
    active: bool = False
    status: str = PENDING


def project_visible_steps(
    steps: list[Step],
    branch_choices: dict[str, str],
    progress: dict[str, ProgressEntry],
    active_step_id: str | None = None,
) -> list[VisibleStep]:
    """Split ``steps`` into the reachable path and the locked remainder.

    Returns the visible steps in walk order followed by the locked steps in
    ``step_order``.
    """
    ordered = sorted(steps, key=lambda s: s.step_order)
    if not ordered:
        return []
    by_id = {s.id: s for s in ordered}

    def status_of(step: Step) -> str:
        entry = progress.get(step.id)
        return entry.status if entry else PENDING

    visible: list[VisibleStep] = []
    visited: set[str] = set()
    blocking: Step | None = None
    current: Step | None = ordered[0]

    while current is not None and current.id not in visited:
        visited.add(current.id)
        item = VisibleStep(
            step=current,
            locked=False,
            active=current.id == active_step_id,
            status=status_of(current),
        )
        visible.append(item)

        if current.has_branches:
            chosen = recorded_branch(current, branch_choices, by_id)
            if chosen is not None:
                item.branch_path = chosen.condition_label
                current = by_id[chosen.next_step_id]
                continue
            item.has_locked_branches = True
            if item.status not in (COMPLETED, SKIPPED):
                blocking = current
                break
            # Left without a choice: it moved on by default or by order

        default = by_id.get(current.default_next_step_id or "")
        if default is not None and default.id not in visited:
            current = default
        else:
            current = next_by_order(current, ordered, visited)

    awaiting = {b.next_step_id for b in blocking.branches if b.next_step_id} if blocking else set()
    locked = [
        VisibleStep(
            step=s,
            locked=True,
            lock_reason=_lock_reason(s, blocking, awaiting),
            active=s.id == active_step_id,
            status=status_of(s),
        )
        for s in ordered
        if s.id not in visited
    ]
    return visible + locked


def _lock_reason(step: Step, blocking: Step | None, awaiting: set[str | None]) -> str:
    if blocking is None:
        return OFF_PATH
    if step.id in awaiting:
        return AWAITING_BRANCH
    return BEHIND_BRANCH


def has_locked_steps(projection: list[VisibleStep]) -> bool:
    return any(v.locked for v in projection)
