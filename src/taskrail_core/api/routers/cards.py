"""Card API endpoints."""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ... import cards, models, schemas
from ...database import get_db
from ..dependencies import get_actor_id, unwrap

logger = logging.getLogger("taskrail-core.api.cards")

router = APIRouter(tags=["cards"])


def _card_to_response(db: Session, card: models.Card) -> schemas.CardResponse:
    """Convert Card model to CardResponse schema, with its derived state."""
    progress = cards.card_progress(db, card.id)
    return schemas.CardResponse(
        id=card.id,
        project_id=card.project_id,
        milestone_id=card.milestone_id,
        title=card.title,
        description=card.description,
        color=card.color,
        created_by=card.created_by,
        version=card.version,
        state=progress.state,
        task_count=progress.task_count,
        completed_count=progress.completed_count,
    )


@router.post("/", response_model=schemas.CardResponse, status_code=201)
def create_card(
    card_data: schemas.CardCreate,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """Create a card, optionally under a milestone of the same project."""
    card = unwrap(cards.create_card(
        db,
        project_id=card_data.project_id,
        title=card_data.title,
        created_by=actor_id,
        description=card_data.description,
        color=card_data.color,
        milestone_id=card_data.milestone_id,
    ))
    return _card_to_response(db, card)


@router.get("/{card_id}", response_model=schemas.CardResponse)
def get_card(card_id: int, db: Session = Depends(get_db)):
    """Get a card with its derived state."""
    card = db.get(models.Card, card_id)
    if not card:
        raise HTTPException(status_code=404, detail=f"Card not found: {card_id}")
    return _card_to_response(db, card)


@router.patch("/{card_id}", response_model=schemas.CardResponse)
def update_card(card_id: int, update: schemas.CardUpdate, db: Session = Depends(get_db)):
    """Edit a card. Only fields present in the body change."""
    changes = {
        name: getattr(update, name)
        for name in ("title", "color", "milestone_id")
        if name in update.model_fields_set
    }
    card = unwrap(cards.update_card(db, card_id, update.expected_version, **changes))
    return _card_to_response(db, card)
