"""Milestone API endpoints."""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ... import milestones, schemas
from ...database import get_db
from ..dependencies import get_actor_id, unwrap

logger = logging.getLogger("taskrail-core.api.milestones")

router = APIRouter(tags=["milestones"])


@router.post("/", response_model=schemas.MilestoneResponse, status_code=201)
def create_milestone(
    milestone_data: schemas.MilestoneCreate,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """Create a ready milestone at the end of the project's ordering."""
    return unwrap(milestones.create_milestone(
        db,
        project_id=milestone_data.project_id,
        name=milestone_data.name,
        created_by=actor_id,
        description=milestone_data.description,
    ))


@router.post("/{milestone_id}/activate", response_model=schemas.MilestoneActivationResponse)
def activate_milestone(
    milestone_id: int,
    activation: schemas.MilestoneActivate,
    db: Session = Depends(get_db),
):
    """
    Activate a ready milestone.

    Returns 409 with kind ``milestone_conflict`` when another milestone of the
    project is already active.
    """
    result = unwrap(milestones.activate_milestone(db, milestone_id, activation.project_id))
    return schemas.MilestoneActivationResponse(
        milestone=schemas.MilestoneResponse.model_validate(result.milestone),
        cards_released=result.cards_released,
        tasks_released=result.tasks_released,
    )


@router.post("/{milestone_id}/recompute", response_model=schemas.MilestoneResponse)
def recompute_milestone(milestone_id: int, db: Session = Depends(get_db)):
    """Re-derive whether the milestone is completed."""
    return unwrap(milestones.recompute_milestone(db, milestone_id))


@router.delete("/{milestone_id}", status_code=204)
def delete_milestone(milestone_id: int, db: Session = Depends(get_db)):
    """Delete a milestone that is still ready and empty."""
    unwrap(milestones.delete_milestone(db, milestone_id))
