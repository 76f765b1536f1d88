"""Rule execution ledger.

One row per ``(rule, origin)``, inserted with ``ON CONFLICT DO NOTHING``.
Whoever inserts the row first owns the execution; zero rows inserted means
the pair was already processed. Suppressed outcomes are recorded too, so
metrics can tell "never matched" apart from "matched but skipped".
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, case, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from . import models
from .cards import card_state
from .results import FailureKind, Result, TemplateExecutionFailed
from .templates import ApplyContext, apply_templates, templates_for_rule

logger = logging.getLogger("taskrail-core.rule_ledger")

_DIALECT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


@dataclass(frozen=True)
class Origin:
    """The task or card a rule execution is about."""

    resource_type: models.ResourceType
    resource_id: int
    project_id: int
    org_id: int
    state: str
    task_type_id: Optional[int] = None
    card_id: Optional[int] = None
    milestone_id: Optional[int] = None


@dataclass
class RuleExecutionOutcome:
    """What happened when a rule was executed against an origin."""

    rule_id: int
    origin_type: models.ResourceType
    origin_id: int
    outcome: models.ExecutionOutcome
    suppression_reason: Optional[models.SuppressionReason] = None
    # False when the pair was already processed and no row was written
    recorded: bool = True
    created_task_ids: list[int] = field(default_factory=list)


@dataclass
class RuleMetrics:
    """Execution counts for one rule."""

    rule_id: int
    rule_name: str
    active: bool
    evaluated: int = 0
    applied: int = 0
    suppressed: int = 0
    suppressed_by_reason: dict[str, int] = field(default_factory=dict)


@dataclass
class WorkflowMetrics:
    """Execution counts rolled up per workflow."""

    workflow_id: int
    workflow_name: str
    project_id: Optional[int]
    rule_count: int = 0
    evaluated: int = 0
    applied: int = 0
    suppressed: int = 0


# =============================================================================
# Execution
# =============================================================================


def load_origin(db: Session, origin_type: models.ResourceType, origin_id: int) -> Optional[Origin]:
    """Build an origin from durable state."""
    if origin_type == models.ResourceType.TASK:
        task = db.get(models.Task, origin_id)
        if task is None:
            return None
        project = db.get(models.Project, task.project_id)
        return Origin(
            resource_type=origin_type,
            resource_id=task.id,
            project_id=task.project_id,
            org_id=project.org_id,
            state=task.status.value,
            task_type_id=task.type_id,
            card_id=task.card_id,
            milestone_id=task.milestone_id,
        )

    card = db.get(models.Card, origin_id)
    if card is None:
        return None
    project = db.get(models.Project, card.project_id)
    return Origin(
        resource_type=origin_type,
        resource_id=card.id,
        project_id=card.project_id,
        org_id=project.org_id,
        state=card_state(db, card.id).value,
        card_id=card.id,
    )


def _suppression_reason(
    rule: models.Rule,
    origin: Origin,
    user_triggered: bool,
) -> Optional[models.SuppressionReason]:
    workflow = rule.workflow
    if not rule.active or not workflow.active:
        return models.SuppressionReason.INACTIVE

    if (
        rule.resource_type != origin.resource_type
        or rule.to_state != origin.state
        or workflow.org_id != origin.org_id
        or (workflow.project_id is not None and workflow.project_id != origin.project_id)
    ):
        return models.SuppressionReason.NOT_MATCHING

    if (
        origin.resource_type == models.ResourceType.TASK
        and rule.task_type_id is not None
        and rule.task_type_id != origin.task_type_id
    ):
        return models.SuppressionReason.NOT_MATCHING

    if rule.user_triggered_only and not user_triggered:
        return models.SuppressionReason.NOT_USER_TRIGGERED

    return None


def _insert_ledger_row(db: Session, values: dict) -> bool:
    """Insert a ledger row unless the (rule, origin) pair exists. True if inserted."""
    insert = _DIALECT_INSERTS[db.get_bind().dialect.name]
    stmt = (
        insert(models.RuleExecution)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["rule_id", "origin_type", "origin_id"])
    )
    return db.execute(stmt).rowcount == 1


def _execute(
    db: Session,
    rule: models.Rule,
    origin: Origin,
    user_id: Optional[int],
    user_triggered: bool,
    depth: int = 0,
) -> list[RuleExecutionOutcome]:
    """
    Record and, when it applies, carry out one rule execution.

    Runs in a savepoint of the caller's transaction. The ledger row and the
    tasks created by the rule's templates share that savepoint, so a template
    failure leaves neither behind.

    Returns:
        This execution's outcome, followed by outcomes cascaded from the tasks
        it created

    Raises:
        TemplateExecutionFailed: the rule applied but its templates did not
    """
    reason = _suppression_reason(rule, origin, user_triggered)
    outcome = models.ExecutionOutcome.APPLIED if reason is None else models.ExecutionOutcome.SUPPRESSED

    try:
        with db.begin_nested():
            inserted = _insert_ledger_row(db, {
                "rule_id": rule.id,
                "origin_type": origin.resource_type,
                "origin_id": origin.resource_id,
                "outcome": outcome,
                "suppression_reason": reason,
                "user_id": user_id,
                "created_at": models.utcnow(),
            })
            if not inserted:
                logger.debug(
                    f"Rule {rule.id} already processed {origin.resource_type.value} {origin.resource_id}"
                )
                return [RuleExecutionOutcome(
                    rule_id=rule.id,
                    origin_type=origin.resource_type,
                    origin_id=origin.resource_id,
                    outcome=models.ExecutionOutcome.SUPPRESSED,
                    suppression_reason=models.SuppressionReason.IDEMPOTENT,
                    recorded=False,
                )]

            result = RuleExecutionOutcome(
                rule_id=rule.id,
                origin_type=origin.resource_type,
                origin_id=origin.resource_id,
                outcome=outcome,
                suppression_reason=reason,
            )
            if reason is not None:
                logger.debug(
                    f"Rule {rule.id} suppressed on {origin.resource_type.value} "
                    f"{origin.resource_id}: {reason.value}"
                )
                return [result]

            context = ApplyContext(
                project_id=origin.project_id,
                card_id=origin.card_id,
                milestone_id=origin.milestone_id if origin.card_id is None else None,
                user_id=user_id,
                depth=depth,
            )
            created_ids, cascaded = apply_templates(db, rule.id, templates_for_rule(db, rule.id), context)
            result.created_task_ids = created_ids
    except TemplateExecutionFailed as exc:
        logger.warning(
            f"Rule {rule.id} on {origin.resource_type.value} {origin.resource_id} "
            f"rolled back at template {exc.template_id}"
        )
        raise

    logger.info(
        f"Rule {rule.id} applied on {origin.resource_type.value} {origin.resource_id}: "
        f"created tasks {created_ids}"
    )
    return [result] + cascaded


def execute(
    db: Session,
    rule_id: int,
    origin_type: models.ResourceType,
    origin_id: int,
    user_id: Optional[int],
    is_user_triggered: bool,
    depth: int = 0,
) -> Result[RuleExecutionOutcome]:
    """
    Execute a rule against an origin, at most once per (rule, origin) pair.

    The outcome is decided from durable state: the origin's current status,
    scope and type, and whether the rule and its workflow are active. A second
    call for the same pair is reported as ``suppressed/idempotent`` with
    ``recorded=False``.

    Args:
        db: Database session
        rule_id: Rule to execute
        origin_type: Task or card
        origin_id: Id of the task or card
        user_id: User who caused the transition, if any
        is_user_triggered: Whether the transition was a direct human action
        depth: Automation depth of the triggering event

    Returns:
        Result with the outcome of this execution
    """
    rule = db.get(models.Rule, rule_id)
    if rule is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Rule not found: {rule_id}")

    origin = load_origin(db, origin_type, origin_id)
    if origin is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"{origin_type.value.capitalize()} not found: {origin_id}")

    try:
        outcomes = _execute(db, rule, origin, user_id, is_user_triggered, depth)
    except TemplateExecutionFailed as exc:
        db.rollback()
        return Result.from_failure(exc.to_failure())

    db.commit()
    return Result.success(outcomes[0])


def execute_for_event(db: Session, rule: models.Rule, event) -> list[RuleExecutionOutcome]:
    """Execute a rule for a transition observed in the current transaction."""
    origin = load_origin(db, event.resource_type, event.resource_id)
    # Judge the state the event reached, not whatever a cascade did to it since
    origin = replace(origin, state=str(getattr(event.to_state, "value", event.to_state)))
    return _execute(db, rule, origin, event.user_id, event.user_triggered, event.depth)


# =============================================================================
# Queries and metrics
# =============================================================================


def _in_window(column, since: Optional[datetime], until: Optional[datetime]) -> list:
    criteria = []
    if since is not None:
        criteria.append(column >= since)
    if until is not None:
        criteria.append(column <= until)
    return criteria


def list_executions(
    db: Session,
    rule_id: int,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[models.RuleExecution]:
    """List a rule's executions, newest first."""
    return list(db.execute(
        select(models.RuleExecution)
        .where(
            models.RuleExecution.rule_id == rule_id,
            *_in_window(models.RuleExecution.created_at, since, until),
        )
        .order_by(models.RuleExecution.created_at.desc(), models.RuleExecution.id.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all())


def count_executions(
    db: Session,
    rule_id: int,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> int:
    """Count a rule's executions (for pagination)."""
    return db.execute(
        select(func.count(models.RuleExecution.id)).where(
            models.RuleExecution.rule_id == rule_id,
            *_in_window(models.RuleExecution.created_at, since, until),
        )
    ).scalar_one()


def _count_where(condition):
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


def _rule_aggregates(db: Session, since: Optional[datetime], until: Optional[datetime], *criteria):
    """Per-rule counts; rules without executions still appear with zeros."""
    execution = models.RuleExecution
    columns = [
        models.Rule.id,
        models.Rule.name,
        models.Rule.active,
        models.Rule.workflow_id,
        func.count(execution.id),
        _count_where(execution.outcome == models.ExecutionOutcome.APPLIED),
        _count_where(execution.outcome == models.ExecutionOutcome.SUPPRESSED),
    ]
    columns.extend(_count_where(execution.suppression_reason == reason) for reason in models.SuppressionReason)

    join_on = and_(execution.rule_id == models.Rule.id, *_in_window(execution.created_at, since, until))
    stmt = (
        select(*columns)
        .outerjoin(execution, join_on)
        .where(*criteria)
        .group_by(models.Rule.id, models.Rule.name, models.Rule.active, models.Rule.workflow_id)
        .order_by(models.Rule.name, models.Rule.id)
    )

    metrics = []
    for row in db.execute(stmt).all():
        rule_id, name, active, workflow_id, evaluated, applied, suppressed, *by_reason = row
        item = RuleMetrics(
            rule_id=rule_id,
            rule_name=name,
            active=active,
            evaluated=evaluated,
            applied=applied,
            suppressed=suppressed,
            suppressed_by_reason={
                reason.value: count for reason, count in zip(models.SuppressionReason, by_reason)
            },
        )
        metrics.append((workflow_id, item))
    return metrics


def rule_metrics(
    db: Session,
    rule_id: int,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> Optional[RuleMetrics]:
    """
    Evaluated/applied/suppressed counts for one rule, with a per-reason breakdown.

    Returns:
        RuleMetrics, or None if the rule does not exist
    """
    rows = _rule_aggregates(db, since, until, models.Rule.id == rule_id)
    return rows[0][1] if rows else None


def workflow_metrics(
    db: Session,
    workflow_id: int,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> list[RuleMetrics]:
    """Per-rule counts for every rule in a workflow, ordered by rule name."""
    return [item for _, item in _rule_aggregates(db, since, until, models.Rule.workflow_id == workflow_id)]


def _workflow_summary(db: Session, since, until, *criteria) -> list[WorkflowMetrics]:
    workflows = db.execute(
        select(models.Workflow).where(*criteria).order_by(models.Workflow.name, models.Workflow.id)
    ).scalars().all()
    summary = {
        w.id: WorkflowMetrics(workflow_id=w.id, workflow_name=w.name, project_id=w.project_id)
        for w in workflows
    }
    if not summary:
        return []

    for workflow_id, item in _rule_aggregates(db, since, until, models.Rule.workflow_id.in_(summary)):
        rollup = summary[workflow_id]
        rollup.rule_count += 1
        rollup.evaluated += item.evaluated
        rollup.applied += item.applied
        rollup.suppressed += item.suppressed
    return list(summary.values())


def org_metrics_summary(
    db: Session,
    org_id: int,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> list[WorkflowMetrics]:
    """Per-workflow rollup across every workflow of an organization."""
    return _workflow_summary(db, since, until, models.Workflow.org_id == org_id)


def project_metrics_summary(
    db: Session,
    project_id: int,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> list[WorkflowMetrics]:
    """Per-workflow rollup for the workflows scoped to one project."""
    return _workflow_summary(db, since, until, models.Workflow.project_id == project_id)
