"""Milestone lifecycle: ready → active → completed (and back to active).

At most one milestone per project is active. That invariant spans every
milestone of a project, so activation serializes on the project row instead
of the milestone row, and a partial unique index backs the check up.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .results import FailureKind, MilestoneReopenBlocked, Result
from .state_machine import is_milestone_transition_valid
from .versioning import compare_and_swap, diagnose_conflict, reload

logger = logging.getLogger("taskrail-core.milestones")


@dataclass
class MilestoneActivation:
    """An activated milestone plus how much work it released."""

    milestone: models.Milestone
    cards_released: int
    tasks_released: int


@dataclass(frozen=True)
class CompletionStats:
    """Aggregate progress of the cards and direct tasks under a milestone."""

    cards_total: int
    cards_completed: int
    tasks_total: int
    tasks_completed: int

    @property
    def is_empty(self) -> bool:
        return self.cards_total == 0 and self.tasks_total == 0

    @property
    def is_done(self) -> bool:
        return self.cards_completed == self.cards_total and self.tasks_completed == self.tasks_total


def create_milestone(
    db: Session,
    project_id: int,
    name: str,
    created_by: int,
    description: Optional[str] = None,
) -> Result[models.Milestone]:
    """
    Create a ready milestone at the end of the project's ordering.

    Args:
        db: Database session
        project_id: Owning project
        name: Milestone name
        created_by: Acting user
        description: Optional description

    Returns:
        Result with the created Milestone
    """
    if db.get(models.Project, project_id) is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Project not found: {project_id}")

    next_position = db.execute(
        select(func.coalesce(func.max(models.Milestone.position) + 1, 0))
        .where(models.Milestone.project_id == project_id)
    ).scalar_one()

    milestone = models.Milestone(
        project_id=project_id,
        name=name,
        description=description,
        state=models.MilestoneState.READY,
        position=next_position,
        created_by=created_by,
    )
    db.add(milestone)
    db.commit()
    db.refresh(milestone)

    logger.info(f"Created milestone {milestone.id} '{name}' at position {next_position} in project {project_id}")
    return Result.success(milestone)


def effective_milestone_id(db: Session, task: models.Task) -> Optional[int]:
    """The task's own milestone, else the milestone of its card."""
    if task.milestone_id is not None:
        return task.milestone_id
    if task.card_id is not None:
        card = db.get(models.Card, task.card_id)
        return card.milestone_id if card else None
    return None


def _released_counts(db: Session, milestone: models.Milestone) -> tuple[int, int]:
    cards_released = db.execute(
        select(func.count(models.Card.id)).where(
            models.Card.project_id == milestone.project_id,
            models.Card.milestone_id == milestone.id,
        )
    ).scalar_one()
    tasks_released = db.execute(
        select(func.count(models.Task.id))
        .outerjoin(models.Card, models.Card.id == models.Task.card_id)
        .where(
            models.Task.project_id == milestone.project_id,
            func.coalesce(models.Task.milestone_id, models.Card.milestone_id) == milestone.id,
        )
    ).scalar_one()
    return cards_released, tasks_released


def activate_milestone(db: Session, milestone_id: int, project_id: int) -> Result[MilestoneActivation]:
    """
    Activate a ready milestone.

    Takes an exclusive lock on the project row, then checks that no other
    milestone in the project is active. Losing that check is a business
    failure (``MilestoneConflict``), not a race to resolve silently: the
    caller must finish the active milestone first.

    Args:
        db: Database session
        milestone_id: Milestone to activate
        project_id: Project the milestone belongs to

    Returns:
        Result with the activated milestone and released card/task counts
    """
    project = db.execute(
        select(models.Project).where(models.Project.id == project_id).with_for_update()
    ).scalar_one_or_none()
    if project is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Project not found: {project_id}")

    milestone = reload(db, models.Milestone, milestone_id)
    if milestone is None or milestone.project_id != project_id:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Milestone not found in project: {milestone_id}")

    if not is_milestone_transition_valid(milestone.state, models.MilestoneState.ACTIVE):
        current = milestone.state.value
        db.rollback()
        return Result.fail(
            FailureKind.INVALID_STATE,
            f"Milestone {milestone_id} is {current}; only ready milestones can be activated",
            state=current,
        )

    active_id = db.execute(
        select(models.Milestone.id).where(
            models.Milestone.project_id == project_id,
            models.Milestone.state == models.MilestoneState.ACTIVE,
            models.Milestone.id != milestone_id,
        )
    ).scalars().first()
    if active_id is not None:
        db.rollback()
        logger.warning(f"Refused to activate milestone {milestone_id}: milestone {active_id} is active")
        return Result.fail(
            FailureKind.MILESTONE_CONFLICT,
            f"Milestone {active_id} is already active in project {project_id}",
            active_milestone_id=active_id,
        )

    try:
        swapped = compare_and_swap(
            db,
            models.Milestone,
            milestone_id,
            milestone.version,
            {"state": models.MilestoneState.ACTIVE, "activated_at": models.utcnow()},
            state=models.MilestoneState.READY,
        )
    except IntegrityError:
        # Unique index on the active milestone: a concurrent activation won
        db.rollback()
        logger.warning(f"Concurrent activation beat milestone {milestone_id} in project {project_id}")
        return Result.fail(
            FailureKind.MILESTONE_CONFLICT,
            f"Another milestone was activated concurrently in project {project_id}",
        )

    if not swapped:
        failure = diagnose_conflict(db, models.Milestone, milestone_id, milestone.version, {"state": models.MilestoneState.READY})
        db.rollback()
        return Result.from_failure(failure)

    milestone = reload(db, models.Milestone, milestone_id)
    cards_released, tasks_released = _released_counts(db, milestone)
    db.commit()

    logger.info(
        f"Activated milestone {milestone_id} in project {project_id} "
        f"({cards_released} cards, {tasks_released} tasks released)"
    )
    return Result.success(MilestoneActivation(
        milestone=milestone,
        cards_released=cards_released,
        tasks_released=tasks_released,
    ))


def completion_stats(db: Session, milestone: models.Milestone) -> CompletionStats:
    """Aggregate card and direct-task completion under a milestone."""
    per_card = (
        select(
            models.Card.id.label("card_id"),
            func.count(models.Task.id).label("task_count"),
            func.coalesce(
                func.sum(case((models.Task.status == models.TaskStatus.COMPLETED, 1), else_=0)), 0
            ).label("completed_count"),
        )
        .outerjoin(models.Task, models.Task.card_id == models.Card.id)
        .where(
            models.Card.project_id == milestone.project_id,
            models.Card.milestone_id == milestone.id,
        )
        .group_by(models.Card.id)
        .subquery()
    )
    cards_total, cards_completed = db.execute(
        select(
            func.count(per_card.c.card_id),
            func.coalesce(
                func.sum(case(
                    (
                        (per_card.c.task_count > 0) & (per_card.c.task_count == per_card.c.completed_count),
                        1,
                    ),
                    else_=0,
                )),
                0,
            ),
        )
    ).one()

    tasks_total, tasks_completed = db.execute(
        select(
            func.count(models.Task.id),
            func.coalesce(func.sum(case((models.Task.status == models.TaskStatus.COMPLETED, 1), else_=0)), 0),
        ).where(
            models.Task.project_id == milestone.project_id,
            models.Task.card_id.is_(None),
            models.Task.milestone_id == milestone.id,
        )
    ).one()

    return CompletionStats(
        cards_total=cards_total,
        cards_completed=cards_completed,
        tasks_total=tasks_total,
        tasks_completed=tasks_completed,
    )


def _active_milestone_id(db: Session, milestone: models.Milestone) -> Optional[int]:
    return db.execute(
        select(models.Milestone.id).where(
            models.Milestone.project_id == milestone.project_id,
            models.Milestone.state == models.MilestoneState.ACTIVE,
            models.Milestone.id != milestone.id,
        )
    ).scalars().first()


def _check_reopen_allowed(db: Session, milestone: models.Milestone) -> None:
    # Same project row lock as activation, so the check and the swap are atomic
    db.execute(
        select(models.Project.id).where(models.Project.id == milestone.project_id).with_for_update()
    )
    active_id = _active_milestone_id(db, milestone)
    if active_id is not None:
        logger.warning(f"Milestone {milestone.id} stays completed: milestone {active_id} is active")
        raise MilestoneReopenBlocked(milestone.id, active_id)


def recompute_completion(db: Session, milestone_id: int) -> Optional[models.Milestone]:
    """
    Re-derive whether a milestone is completed.

    Runs inside the caller's transaction (flush only) so the milestone never
    shows a state that disagrees with the task write that triggered it.
    Only active and completed milestones are considered; an empty milestone
    keeps its state. Calling it twice with no writes in between is a no-op.

    Args:
        db: Database session
        milestone_id: Milestone to recompute

    Returns:
        The milestone as stored after recomputation, or None if missing
    """
    milestone = reload(db, models.Milestone, milestone_id)
    if milestone is None:
        return None
    if milestone.state not in (models.MilestoneState.ACTIVE, models.MilestoneState.COMPLETED):
        return milestone

    stats = completion_stats(db, milestone)
    if stats.is_empty:
        return milestone

    if stats.is_done and milestone.state == models.MilestoneState.ACTIVE:
        values = {
            "state": models.MilestoneState.COMPLETED,
            "completed_at": milestone.completed_at or models.utcnow(),
        }
    elif not stats.is_done and milestone.state == models.MilestoneState.COMPLETED:
        values = {"state": models.MilestoneState.ACTIVE, "completed_at": None}
    else:
        logger.debug(f"Milestone {milestone_id} unchanged ({milestone.state.value})")
        return milestone

    new_state = values["state"]
    if not is_milestone_transition_valid(milestone.state, new_state):
        return milestone

    if new_state == models.MilestoneState.ACTIVE:
        _check_reopen_allowed(db, milestone)

    try:
        swapped = compare_and_swap(db, models.Milestone, milestone_id, milestone.version, values, state=milestone.state)
    except IntegrityError:
        # Unique index on the active milestone: a concurrent activation won
        raise MilestoneReopenBlocked(milestone_id)
    if not swapped:
        # A concurrent writer already moved it; recompute from what it stored
        return recompute_completion(db, milestone_id)

    logger.info(f"Milestone {milestone_id}: {milestone.state.value} → {new_state.value}")
    return reload(db, models.Milestone, milestone_id)


def recompute_milestone(db: Session, milestone_id: int) -> Result[models.Milestone]:
    """Recompute a milestone on its own and commit."""
    try:
        milestone = recompute_completion(db, milestone_id)
    except MilestoneReopenBlocked as exc:
        db.rollback()
        return Result.from_failure(exc.to_failure())
    if milestone is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Milestone not found: {milestone_id}")
    db.commit()
    return Result.success(milestone)


def delete_milestone(db: Session, milestone_id: int) -> Result[int]:
    """
    Delete a milestone that is still ready and holds no cards or tasks.

    Active and completed milestones are work history and are never deleted.

    Returns:
        Result with the deleted milestone id
    """
    milestone = db.get(models.Milestone, milestone_id)
    if milestone is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Milestone not found: {milestone_id}")

    if milestone.state != models.MilestoneState.READY:
        state = milestone.state.value
        db.rollback()
        return Result.fail(
            FailureKind.INVALID_STATE,
            f"Milestone {milestone_id} is {state}; only ready milestones can be deleted",
            state=state,
        )

    card_refs = db.execute(
        select(func.count(models.Card.id)).where(models.Card.milestone_id == milestone_id)
    ).scalar_one()
    task_refs = db.execute(
        select(func.count(models.Task.id)).where(models.Task.milestone_id == milestone_id)
    ).scalar_one()
    if card_refs or task_refs:
        db.rollback()
        return Result.fail(
            FailureKind.INVALID_STATE,
            f"Milestone {milestone_id} still holds {card_refs} cards and {task_refs} tasks",
            cards=card_refs,
            tasks=task_refs,
        )

    db.delete(milestone)
    db.commit()
    logger.info(f"Deleted milestone {milestone_id}")
    return Result.success(milestone_id)
