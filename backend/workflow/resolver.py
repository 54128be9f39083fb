"""Dependency resolution over a definition's step graph.

A completed step with explicit ``successors`` hands control to exactly
those steps. Otherwise every step listing it in ``dependencies`` becomes
ready. There is no join gating: a step with two predecessors is ready as
soon as either of them completes.
"""

from typing import Iterable, Optional

from core.constants import StepType
from workflow.models import WorkflowStep


def find_start(steps: Iterable[WorkflowStep]) -> Optional[str]:
    """Return the id of the START step, or None if there is none.

    Definitions with more than one START never reach the driver; the
    validator rejects them.
    """
    for step in steps:
        if step.type == StepType.START:
            return step.id
    return None


def next_steps(steps: Iterable[WorkflowStep], completed_step_id: str) -> list[str]:
    """Step ids that become ready once ``completed_step_id`` has completed."""
    steps = list(steps)
    completed = next((s for s in steps if s.id == completed_step_id), None)
    if completed is None:
        return []
    if completed.successors:
        return list(completed.successors)
    return [s.id for s in steps if completed_step_id in s.dependencies]


def merge_ready(pending: list[str], ready: list[str], front: bool = False) -> list[str]:
    """Combine already-pending ids with newly ready ones, keeping first occurrence.

    New ids go to the back of the queue unless ``front`` is set.
    """
    combined = ready + pending if front else pending + ready
    out: list[str] = []
    for step_id in combined:
        if step_id not in out:
            out.append(step_id)
    return out


def is_terminal_step(step: Optional[WorkflowStep]) -> bool:
    return step is not None and step.type == StepType.END
