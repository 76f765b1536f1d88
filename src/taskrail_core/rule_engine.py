"""Rule matching and synchronous dispatch of state transitions.

Transitions are dispatched in the same transaction as the write that caused
them; there is no queue. Matching rules run in a fixed order: project-scoped
workflows first, then org-wide ones, then by rule id.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import case, or_, select
from sqlalchemy.orm import Session

from . import models
from .config import get_settings
from .results import FailureKind, Result, TemplateExecutionFailed
from .rule_ledger import RuleExecutionOutcome, execute_for_event, load_origin

logger = logging.getLogger("taskrail-core.rule_engine")


@dataclass(frozen=True)
class TransitionEvent:
    """A task or card reaching a state."""

    resource_type: models.ResourceType
    resource_id: int
    to_state: str
    project_id: int
    org_id: int
    task_type_id: Optional[int] = None
    user_id: Optional[int] = None
    # False when the transition was caused by automation
    user_triggered: bool = True
    depth: int = 0


def find_matching_rules(
    db: Session,
    resource_type: models.ResourceType,
    to_state: str,
    project_id: int,
    org_id: int,
    task_type_id: Optional[int] = None,
) -> list[models.Rule]:
    """
    Find active rules in active workflows that react to a transition.

    Org-wide workflows match any project of the organization; project
    workflows match only their own project. For task events a rule's task
    type filter must equal the task's type; card events ignore the filter.

    Args:
        db: Database session
        resource_type: Task or card
        to_state: State the resource reached
        project_id: Project of the resource
        org_id: Organization of the project
        task_type_id: Type of the task (task events only)

    Returns:
        Rules ordered project-scoped first, then org-wide, then by id
    """
    stmt = (
        select(models.Rule)
        .join(models.Workflow, models.Workflow.id == models.Rule.workflow_id)
        .where(
            models.Workflow.org_id == org_id,
            models.Workflow.active.is_(True),
            models.Rule.active.is_(True),
            models.Rule.resource_type == resource_type,
            models.Rule.to_state == str(getattr(to_state, "value", to_state)),
            or_(models.Workflow.project_id.is_(None), models.Workflow.project_id == project_id),
        )
    )

    if resource_type == models.ResourceType.TASK:
        stmt = stmt.where(
            or_(models.Rule.task_type_id.is_(None), models.Rule.task_type_id == task_type_id)
        )

    stmt = stmt.order_by(
        case((models.Workflow.project_id.is_(None), 1), else_=0),
        models.Rule.id,
    )
    return list(db.execute(stmt).scalars().all())


def dispatch_transition(db: Session, event: TransitionEvent) -> list[RuleExecutionOutcome]:
    """
    Execute every matching rule for a transition, in order.

    Runs in the caller's transaction and never commits. Events nested deeper
    than ``RULE_CASCADE_MAX_DEPTH`` automation levels are dropped.

    Returns:
        Outcomes of all executions, including cascades

    Raises:
        TemplateExecutionFailed: a matching rule failed to apply; the caller
            must roll back
    """
    max_depth = get_settings().rule_cascade_max_depth
    if event.depth > max_depth:
        logger.warning(
            f"Not dispatching {event.resource_type.value} {event.resource_id} → {event.to_state}: "
            f"cascade depth {event.depth} exceeds {max_depth}"
        )
        return []

    rules = find_matching_rules(
        db,
        event.resource_type,
        event.to_state,
        event.project_id,
        event.org_id,
        event.task_type_id,
    )
    if not rules:
        logger.debug(f"No rules for {event.resource_type.value} {event.resource_id} → {event.to_state}")
        return []

    outcomes = []
    for rule in rules:
        outcomes.extend(execute_for_event(db, rule, event))
    return outcomes


def reevaluate_origin(
    db: Session,
    origin_type: models.ResourceType,
    origin_id: int,
    user_id: Optional[int] = None,
) -> Result[list[RuleExecutionOutcome]]:
    """
    Re-dispatch the transition implied by an origin's durable state.

    Recovery path after a failure between a write and its automation: the
    event is rebuilt from the current status, and pairs the ledger already
    holds are skipped. A task still available that was created by a rule is
    treated as automation; anything else as a user action.

    Returns:
        Result with the outcomes of this dispatch
    """
    origin = load_origin(db, origin_type, origin_id)
    if origin is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"{origin_type.value.capitalize()} not found: {origin_id}")

    user_triggered = True
    if origin_type == models.ResourceType.TASK:
        task = db.get(models.Task, origin_id)
        user_triggered = not (
            task.status == models.TaskStatus.AVAILABLE and task.created_from_rule_id is not None
        )

    event = TransitionEvent(
        resource_type=origin_type,
        resource_id=origin_id,
        to_state=origin.state,
        project_id=origin.project_id,
        org_id=origin.org_id,
        task_type_id=origin.task_type_id,
        user_id=user_id,
        user_triggered=user_triggered,
    )
    try:
        outcomes = dispatch_transition(db, event)
    except TemplateExecutionFailed as exc:
        db.rollback()
        return Result.from_failure(exc.to_failure())

    db.commit()
    applied = sum(1 for o in outcomes if o.outcome == models.ExecutionOutcome.APPLIED)
    logger.info(f"Re-evaluated {origin_type.value} {origin_id}: {applied} of {len(outcomes)} applied")
    return Result.success(outcomes)
