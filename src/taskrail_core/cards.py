"""Cards: loose task groupings whose state is derived from their tasks."""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from . import models
from .results import FailureKind, MilestoneReopenBlocked, Result
from .versioning import UNSET, compare_and_swap, diagnose_conflict, reload

logger = logging.getLogger("taskrail-core.cards")


@dataclass(frozen=True)
class CardProgress:
    """Task counts behind a card's derived state."""

    task_count: int
    claimed_count: int
    completed_count: int

    @property
    def state(self) -> models.CardState:
        if self.task_count > 0 and self.completed_count == self.task_count:
            return models.CardState.COMPLETED
        if self.claimed_count or self.completed_count:
            return models.CardState.IN_PROGRESS
        return models.CardState.PENDING


def card_progress(db: Session, card_id: int) -> CardProgress:
    """Count a card's tasks by status."""
    row = db.execute(
        select(
            func.count(models.Task.id),
            func.coalesce(func.sum(case((models.Task.status == models.TaskStatus.CLAIMED, 1), else_=0)), 0),
            func.coalesce(func.sum(case((models.Task.status == models.TaskStatus.COMPLETED, 1), else_=0)), 0),
        ).where(models.Task.card_id == card_id)
    ).one()
    return CardProgress(task_count=row[0], claimed_count=row[1], completed_count=row[2])


def card_state(db: Session, card_id: int) -> models.CardState:
    """Derived state: completed iff the card has tasks and all are completed."""
    return card_progress(db, card_id).state


def create_card(
    db: Session,
    project_id: int,
    title: str,
    created_by: int,
    description: Optional[str] = None,
    color: Optional[str] = None,
    milestone_id: Optional[int] = None,
) -> Result[models.Card]:
    """
    Create a card, optionally under a milestone of the same project.

    Args:
        db: Database session
        project_id: Owning project
        title: Card title
        created_by: Acting user
        description: Optional description
        color: Optional display color
        milestone_id: Optional milestone to place the card under

    Returns:
        Result with the created Card
    """
    if db.get(models.Project, project_id) is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Project not found: {project_id}")

    if milestone_id is not None:
        milestone = db.get(models.Milestone, milestone_id)
        if milestone is None or milestone.project_id != project_id:
            db.rollback()
            return Result.fail(FailureKind.NOT_FOUND, f"Milestone not found in project: {milestone_id}")

    card = models.Card(
        project_id=project_id,
        title=title,
        description=description,
        color=color,
        milestone_id=milestone_id,
        created_by=created_by,
    )
    db.add(card)
    db.commit()
    db.refresh(card)

    logger.info(f"Created card {card.id} '{card.title}' in project {project_id}")
    return Result.success(card)


def update_card(
    db: Session,
    card_id: int,
    expected_version: int,
    title=UNSET,
    color=UNSET,
    milestone_id=UNSET,
) -> Result[models.Card]:
    """
    Edit a card with a compare-and-swap on its version.

    Moving a card between milestones recomputes both milestones, since the
    card's tasks change which aggregate they count towards.

    Returns:
        Result with the updated Card
    """
    from . import milestones

    card = reload(db, models.Card, card_id)
    if card is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Card not found: {card_id}")

    values = {}
    if title is not UNSET:
        values["title"] = title
    if color is not UNSET:
        values["color"] = color
    if milestone_id is not UNSET:
        if milestone_id is not None:
            target = db.get(models.Milestone, milestone_id)
            if target is None or target.project_id != card.project_id:
                db.rollback()
                return Result.fail(FailureKind.NOT_FOUND, f"Milestone not found in project: {milestone_id}")
        values["milestone_id"] = milestone_id

    previous_milestone_id = card.milestone_id
    if not compare_and_swap(db, models.Card, card_id, expected_version, values):
        failure = diagnose_conflict(db, models.Card, card_id, expected_version, {})
        db.rollback()
        return Result.from_failure(failure)

    card = reload(db, models.Card, card_id)
    if "milestone_id" in values and values["milestone_id"] != previous_milestone_id:
        try:
            for affected in (previous_milestone_id, card.milestone_id):
                if affected is not None:
                    milestones.recompute_completion(db, affected)
        except MilestoneReopenBlocked as exc:
            db.rollback()
            logger.warning(f"Move of card {card_id} refused: {exc}")
            return Result.from_failure(exc.to_failure())

    db.commit()
    logger.info(f"Updated card {card_id} to version {card.version}")
    return Result.success(card)
