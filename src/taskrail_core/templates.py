"""Template executor: turns a rule's attached task templates into tasks."""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import models
from .results import MilestoneReopenBlocked, TemplateExecutionFailed

logger = logging.getLogger("taskrail-core.templates")


@dataclass(frozen=True)
class ApplyContext:
    """Where the tasks of a rule application land and who caused them."""

    project_id: int
    card_id: Optional[int]
    milestone_id: Optional[int]
    user_id: Optional[int]
    depth: int = 0


def templates_for_rule(db: Session, rule_id: int) -> list[models.TaskTemplate]:
    """Templates attached to a rule in ``execution_order``, ties by template id."""
    return list(db.execute(
        select(models.TaskTemplate)
        .join(models.RuleTemplate, models.RuleTemplate.template_id == models.TaskTemplate.id)
        .where(models.RuleTemplate.rule_id == rule_id)
        .order_by(models.RuleTemplate.execution_order, models.TaskTemplate.id)
    ).scalars().all())


def apply_templates(
    db: Session,
    rule_id: int,
    templates_in_order: list[models.TaskTemplate],
    context: ApplyContext,
) -> tuple[list[int], list]:
    """
    Create one task per template, all or nothing.

    Runs inside the caller's savepoint and never commits. Tasks are created
    as automation (not user-triggered) one level deeper than the event that
    fired the rule.

    Args:
        db: Database session
        rule_id: Rule being applied (stamped as ``created_from_rule_id``)
        templates_in_order: Templates in execution order
        context: Placement and cause of the new tasks

    Returns:
        Ids of the created tasks and the rule outcomes their creation produced

    Raises:
        TemplateExecutionFailed: a template could not be instantiated; the
            caller's savepoint discards everything created so far
    """
    from . import task_lifecycle

    created_ids = []
    cascaded = []
    for template in templates_in_order:
        failure = task_lifecycle._validate_task_placement(
            db,
            context.project_id,
            template.type_id,
            template.priority,
            context.card_id,
            context.milestone_id,
        )
        if failure:
            logger.warning(f"Template {template.id} of rule {rule_id} failed: {failure.message}")
            raise TemplateExecutionFailed(
                f"Template {template.id} ('{template.name}') cannot be applied: {failure.message}",
                rule_id=rule_id,
                template_id=template.id,
            )

        try:
            task, executions = task_lifecycle._insert_task(
                db,
                project_id=context.project_id,
                type_id=template.type_id,
                title=template.name,
                created_by=context.user_id if context.user_id is not None else template.created_by,
                actor_user_id=context.user_id,
                description=template.description,
                priority=template.priority,
                card_id=context.card_id,
                milestone_id=context.milestone_id,
                created_from_rule_id=rule_id,
                user_triggered=False,
                depth=context.depth + 1,
            )
        except MilestoneReopenBlocked as exc:
            logger.warning(f"Template {template.id} of rule {rule_id} failed: {exc}")
            raise TemplateExecutionFailed(
                f"Template {template.id} ('{template.name}') cannot be applied: {exc}",
                rule_id=rule_id,
                template_id=template.id,
            ) from exc
        created_ids.append(task.id)
        cascaded.extend(executions)

    logger.info(f"Rule {rule_id} created {len(created_ids)} tasks in project {context.project_id}")
    return created_ids, cascaded
