"""Rule matching and execution ledger API endpoints."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ... import rule_engine, rule_ledger, schemas, workflows
from ...database import get_db
from ..dependencies import get_actor_id, unwrap

logger = logging.getLogger("taskrail-core.api.rules")

router = APIRouter(tags=["rules"])


@router.post("/match", response_model=list[schemas.RuleResponse])
def match_rules(match: schemas.RuleMatchRequest, db: Session = Depends(get_db)):
    """
    List the rules a transition would trigger, in evaluation order.

    Project-scoped rules come before org-wide ones, then by rule id.
    """
    return rule_engine.find_matching_rules(
        db,
        resource_type=match.resource_type,
        to_state=match.to_state,
        project_id=match.project_id,
        org_id=match.org_id,
        task_type_id=match.task_type_id,
    )


@router.post("/reevaluate", response_model=list[schemas.RuleExecutionOutcomeResponse])
def reevaluate(
    request: schemas.ReevaluateRequest,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """Re-dispatch the transition implied by a task's or card's current state."""
    outcomes = unwrap(rule_engine.reevaluate_origin(db, request.origin_type, request.origin_id, actor_id))
    return [schemas.RuleExecutionOutcomeResponse.model_validate(o) for o in outcomes]


@router.get("/{rule_id}", response_model=schemas.RuleResponse)
def get_rule(rule_id: int, db: Session = Depends(get_db)):
    """Get a rule by id."""
    rule = workflows.get_rule(db, rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail=f"Rule not found: {rule_id}")
    return rule


@router.post("/{rule_id}/execute", response_model=schemas.RuleExecutionOutcomeResponse)
def execute_rule(
    rule_id: int,
    request: schemas.RuleExecuteRequest,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """
    Execute a rule against one origin.

    A pair that was already processed comes back as ``suppressed`` with
    reason ``idempotent`` and ``recorded`` false.
    """
    outcome = unwrap(rule_ledger.execute(
        db,
        rule_id,
        request.origin_type,
        request.origin_id,
        user_id=actor_id,
        is_user_triggered=request.is_user_triggered,
    ))
    return schemas.RuleExecutionOutcomeResponse.model_validate(outcome)


@router.get("/{rule_id}/executions", response_model=schemas.RuleExecutionListResponse)
def list_rule_executions(
    rule_id: int,
    since: Optional[datetime] = Query(None, description="Only executions at or after this time"),
    until: Optional[datetime] = Query(None, description="Only executions at or before this time"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """List a rule's executions, newest first."""
    if not workflows.get_rule(db, rule_id):
        raise HTTPException(status_code=404, detail=f"Rule not found: {rule_id}")

    items = rule_ledger.list_executions(db, rule_id, since, until, limit=limit, offset=offset)
    return schemas.RuleExecutionListResponse(
        items=[schemas.RuleExecutionResponse.model_validate(e) for e in items],
        total=rule_ledger.count_executions(db, rule_id, since, until),
        limit=limit,
        offset=offset,
    )


@router.get("/{rule_id}/metrics", response_model=schemas.RuleMetricsResponse)
def get_rule_metrics(
    rule_id: int,
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
):
    """Evaluated, applied and suppressed counts, with a per-reason breakdown."""
    metrics = rule_ledger.rule_metrics(db, rule_id, since, until)
    if metrics is None:
        raise HTTPException(status_code=404, detail=f"Rule not found: {rule_id}")
    return schemas.RuleMetricsResponse.model_validate(metrics)
