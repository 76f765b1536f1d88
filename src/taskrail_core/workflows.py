"""Administration of tenants, workflows, rules and task templates.

Plain inserts and toggles that commit. Invalid references raise ValueError;
lookups return None when the row does not exist.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger("taskrail-core.workflows")


# ============================================================================
# Organizations, projects and task types
# ============================================================================

def create_organization(db: Session, name: str) -> models.Organization:
    """
    Create a new organization.

    Args:
        db: Database session
        name: Organization name

    Returns:
        Created organization instance
    """
    db_org = models.Organization(name=name)
    db.add(db_org)
    db.commit()
    db.refresh(db_org)
    logger.debug(f"Created organization {db_org.id} ({name})")
    return db_org


def create_project(db: Session, org_id: int, name: str) -> models.Project:
    """
    Create a project inside an organization.

    Raises:
        ValueError: If the organization does not exist
    """
    if db.get(models.Organization, org_id) is None:
        db.rollback()
        raise ValueError(f"Organization {org_id} not found.")

    db_project = models.Project(org_id=org_id, name=name)
    db.add(db_project)
    db.commit()
    db.refresh(db_project)
    logger.debug(f"Created project {db_project.id} ({name}) in organization {org_id}")
    return db_project


def create_task_type(db: Session, project_id: int, name: str, icon: str = "task") -> models.TaskType:
    """
    Create a task type for a project.

    Raises:
        ValueError: If the project does not exist
    """
    if db.get(models.Project, project_id) is None:
        db.rollback()
        raise ValueError(f"Project {project_id} not found.")

    db_type = models.TaskType(project_id=project_id, name=name, icon=icon)
    db.add(db_type)
    db.commit()
    db.refresh(db_type)
    logger.debug(f"Created task type {db_type.id} ({name}) in project {project_id}")
    return db_type


# ============================================================================
# Workflows
# ============================================================================

def create_workflow(
    db: Session,
    org_id: int,
    name: str,
    created_by: int,
    project_id: Optional[int] = None,
    description: Optional[str] = None,
    active: bool = False,
) -> models.Workflow:
    """
    Create a workflow.

    Args:
        db: Database session
        org_id: Owning organization
        name: Workflow name (unique within its scope)
        created_by: Acting user
        project_id: Project scope; None makes the workflow org-wide
        description: Optional description
        active: Whether the workflow starts active

    Returns:
        Created workflow

    Raises:
        ValueError: If the organization or project does not exist, or the
            project belongs to another organization
    """
    if db.get(models.Organization, org_id) is None:
        db.rollback()
        raise ValueError(f"Organization {org_id} not found.")
    if project_id is not None:
        project = db.get(models.Project, project_id)
        if project is None or project.org_id != org_id:
            db.rollback()
            raise ValueError(f"Project {project_id} not found in organization {org_id}.")

    db_workflow = models.Workflow(
        org_id=org_id,
        project_id=project_id,
        name=name,
        description=description,
        active=active,
        created_by=created_by,
    )
    db.add(db_workflow)
    db.commit()
    db.refresh(db_workflow)

    scope = f"project {project_id}" if project_id else f"organization {org_id}"
    logger.info(f"Created workflow {db_workflow.id} '{name}' for {scope}")
    return db_workflow


def set_workflow_active(db: Session, workflow_id: int, active: bool) -> Optional[models.Workflow]:
    """Toggle a workflow. Returns None if not found."""
    db_workflow = db.get(models.Workflow, workflow_id)
    if not db_workflow:
        return None

    db_workflow.active = active
    db.commit()
    db.refresh(db_workflow)
    logger.info(f"Workflow {workflow_id} {'activated' if active else 'deactivated'}")
    return db_workflow


# ============================================================================
# Rules
# ============================================================================

def _valid_states(resource_type: models.ResourceType) -> set[str]:
    if resource_type == models.ResourceType.TASK:
        return {s.value for s in models.TaskStatus}
    return {s.value for s in models.CardState}


def create_rule(
    db: Session,
    workflow_id: int,
    name: str,
    resource_type: models.ResourceType,
    to_state: str,
    goal: Optional[str] = None,
    task_type_id: Optional[int] = None,
    active: bool = True,
    user_triggered_only: bool = True,
) -> models.Rule:
    """
    Create a rule in a workflow.

    Args:
        db: Database session
        workflow_id: Owning workflow
        name: Rule name
        resource_type: Task or card
        to_state: State that triggers the rule
        goal: Optional free-text goal
        task_type_id: Only fire for tasks of this type (task rules only)
        active: Whether the rule starts active
        user_triggered_only: Suppress the rule for automation-caused events

    Returns:
        Created rule

    Raises:
        ValueError: If the workflow is missing, the state is unknown for the
            resource type, or a task type filter is set on a card rule
    """
    db_workflow = db.get(models.Workflow, workflow_id)
    if db_workflow is None:
        db.rollback()
        raise ValueError(f"Workflow {workflow_id} not found.")

    to_state = str(getattr(to_state, "value", to_state))
    if to_state not in _valid_states(resource_type):
        db.rollback()
        raise ValueError(
            f"Invalid state '{to_state}' for {resource_type.value} rules. "
            f"Valid states: {', '.join(sorted(_valid_states(resource_type)))}"
        )

    if task_type_id is not None:
        if resource_type != models.ResourceType.TASK:
            db.rollback()
            raise ValueError("Task type filters only apply to task rules.")
        if db.get(models.TaskType, task_type_id) is None:
            db.rollback()
            raise ValueError(f"Task type {task_type_id} not found.")

    db_rule = models.Rule(
        workflow_id=workflow_id,
        name=name,
        goal=goal,
        resource_type=resource_type,
        task_type_id=task_type_id,
        to_state=to_state,
        active=active,
        user_triggered_only=user_triggered_only,
    )
    db.add(db_rule)
    db.commit()
    db.refresh(db_rule)
    logger.info(f"Created rule {db_rule.id} '{name}' ({resource_type.value} → {to_state}) in workflow {workflow_id}")
    return db_rule


def get_rule(db: Session, rule_id: int) -> Optional[models.Rule]:
    """
    Get a rule by ID.

    Args:
        db: Database session
        rule_id: Rule ID

    Returns:
        Rule instance or None if not found
    """
    return db.query(models.Rule).filter(models.Rule.id == rule_id).first()


def set_rule_active(db: Session, rule_id: int, active: bool) -> Optional[models.Rule]:
    """Toggle a rule. Returns None if not found."""
    db_rule = get_rule(db, rule_id)
    if not db_rule:
        return None

    db_rule.active = active
    db.commit()
    db.refresh(db_rule)
    logger.info(f"Rule {rule_id} {'activated' if active else 'deactivated'}")
    return db_rule


# ============================================================================
# Task templates
# ============================================================================

def create_task_template(
    db: Session,
    org_id: int,
    name: str,
    type_id: int,
    created_by: int,
    project_id: Optional[int] = None,
    description: Optional[str] = None,
    priority: int = 3,
) -> models.TaskTemplate:
    """
    Create a task template.

    Raises:
        ValueError: If the task type is missing or the priority is out of range
    """
    if db.get(models.TaskType, type_id) is None:
        db.rollback()
        raise ValueError(f"Task type {type_id} not found.")
    if not 1 <= priority <= 5:
        db.rollback()
        raise ValueError(f"Priority must be between 1 and 5, got {priority}.")

    db_template = models.TaskTemplate(
        org_id=org_id,
        project_id=project_id,
        name=name,
        description=description,
        type_id=type_id,
        priority=priority,
        created_by=created_by,
    )
    db.add(db_template)
    db.commit()
    db.refresh(db_template)
    logger.debug(f"Created task template {db_template.id} ({name})")
    return db_template


def attach_template(
    db: Session,
    rule_id: int,
    template_id: int,
    execution_order: int = 0,
) -> models.RuleTemplate:
    """
    Attach a template to a rule, or move it if already attached.

    Re-attaching only updates ``execution_order``.

    Raises:
        ValueError: If the rule or template does not exist
    """
    if get_rule(db, rule_id) is None:
        db.rollback()
        raise ValueError(f"Rule {rule_id} not found.")
    if db.get(models.TaskTemplate, template_id) is None:
        db.rollback()
        raise ValueError(f"Task template {template_id} not found.")

    db_link = db.get(models.RuleTemplate, (rule_id, template_id))
    if db_link is None:
        db_link = models.RuleTemplate(rule_id=rule_id, template_id=template_id)
        db.add(db_link)
    db_link.execution_order = execution_order

    db.commit()
    db.refresh(db_link)
    logger.debug(f"Template {template_id} attached to rule {rule_id} at position {execution_order}")
    return db_link
