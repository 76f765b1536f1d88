"""State machine validation for task and milestone transitions.

Transitions themselves are performed with conditional writes (see
versioning.py); these tables describe which transitions exist so that refused
operations can explain themselves.
"""
import logging

from .models import MilestoneState, TaskStatus

logger = logging.getLogger("taskrail-core.state_machine")


# Maps current status → list of allowed next statuses
TASK_TRANSITION_MATRIX: dict[TaskStatus, list[TaskStatus]] = {
    TaskStatus.AVAILABLE: [
        TaskStatus.CLAIMED,       # Forward: user takes ownership
    ],
    TaskStatus.CLAIMED: [
        TaskStatus.AVAILABLE,     # Back: released to the pool
        TaskStatus.COMPLETED,     # Forward: done by the claimant
    ],
    TaskStatus.COMPLETED: [
        # Terminal state - completed tasks are immutable records
    ],
}

MILESTONE_TRANSITION_MATRIX: dict[MilestoneState, list[MilestoneState]] = {
    MilestoneState.READY: [
        MilestoneState.ACTIVE,      # Forward: activation (one per project)
    ],
    MilestoneState.ACTIVE: [
        MilestoneState.COMPLETED,   # Forward: all work completed
    ],
    MilestoneState.COMPLETED: [
        MilestoneState.ACTIVE,      # Back: new incomplete work was added
    ],
}


def is_task_transition_valid(current_status: TaskStatus, new_status: TaskStatus) -> bool:
    """Check whether a task may move from ``current_status`` to ``new_status``."""
    return new_status in TASK_TRANSITION_MATRIX.get(current_status, [])


def is_milestone_transition_valid(current_state: MilestoneState, new_state: MilestoneState) -> bool:
    """Check whether a milestone may move from ``current_state`` to ``new_state``."""
    return new_state in MILESTONE_TRANSITION_MATRIX.get(current_state, [])


def describe_task_transition(current_status: TaskStatus, new_status: TaskStatus) -> str:
    """
    Build a human-readable explanation for a refused task transition.

    Args:
        current_status: Status the task is in
        new_status: Status the caller asked for

    Returns:
        Error message naming the allowed transitions
    """
    allowed = [s.value for s in TASK_TRANSITION_MATRIX.get(current_status, [])]
    message = f"Invalid task transition: {current_status.value} → {new_status.value}."
    if allowed:
        message += f" From {current_status.value}, a task can only move to: {', '.join(allowed)}."
    if current_status == TaskStatus.COMPLETED:
        message += " Completed tasks are immutable."
    elif current_status == TaskStatus.AVAILABLE and new_status == TaskStatus.COMPLETED:
        message += " Claim the task before completing it."
    logger.debug(f"Refused transition: {message}")
    return message


def get_allowed_task_transitions(current_status: TaskStatus) -> list[TaskStatus]:
    """Get list of allowed transitions from current task status."""
    return list(TASK_TRANSITION_MATRIX.get(current_status, []))
