"""Task lifecycle API endpoints."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ... import dependencies, models, rule_engine, schemas, task_lifecycle
from ...database import get_db
from ...task_lifecycle import TaskView
from ..dependencies import get_actor_id, unwrap

logger = logging.getLogger("taskrail-core.api.tasks")

router = APIRouter(tags=["tasks"])


def _view_to_response(view: TaskView) -> schemas.TaskResponse:
    """Convert a TaskView to TaskResponse schema."""
    task = view.task
    return schemas.TaskResponse(
        id=task.id,
        project_id=task.project_id,
        card_id=task.card_id,
        milestone_id=task.milestone_id,
        type_id=task.type_id,
        title=task.title,
        description=task.description,
        priority=task.priority,
        status=task.status,
        created_by=task.created_by,
        claimed_by=task.claimed_by,
        claimed_at=task.claimed_at,
        completed_at=task.completed_at,
        version=task.version,
        created_from_rule_id=task.created_from_rule_id,
        created_at=task.created_at,
        is_ongoing=view.is_ongoing,
        ongoing_by_user_id=view.ongoing_by_user_id,
        blocked_count=view.blocked_count,
        dependencies=[schemas.DependencyResponse.model_validate(d) for d in view.dependencies],
        rule_executions=[
            schemas.RuleExecutionOutcomeResponse.model_validate(o) for o in view.rule_executions
        ],
    )


@router.post("/", response_model=schemas.TaskResponse, status_code=201)
def create_task(
    task_data: schemas.TaskCreate,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """
    Create an available task.

    - **project_id**: Owning project
    - **type_id**: Task type of the same project
    - **card_id** / **milestone_id**: Optional placement (at most one)
    """
    view = unwrap(task_lifecycle.create_task(
        db,
        project_id=task_data.project_id,
        type_id=task_data.type_id,
        title=task_data.title,
        created_by=actor_id,
        description=task_data.description,
        priority=task_data.priority,
        card_id=task_data.card_id,
        milestone_id=task_data.milestone_id,
    ))
    return _view_to_response(view)


@router.get("/{task_id}", response_model=schemas.TaskResponse)
def get_task(task_id: int, db: Session = Depends(get_db)):
    """Get a task with its ongoing, blocked and dependency fields."""
    return _view_to_response(unwrap(task_lifecycle.get_task_view(db, task_id)))


@router.patch("/{task_id}", response_model=schemas.TaskResponse)
def update_task(
    task_id: int,
    update: schemas.TaskUpdate,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """Edit a task claimed by the caller. Only fields present in the body change."""
    changes = {
        name: getattr(update, name)
        for name in ("title", "description", "priority", "type_id")
        if name in update.model_fields_set
    }
    view = unwrap(task_lifecycle.update_task(db, task_id, actor_id, update.expected_version, **changes))
    return _view_to_response(view)


@router.post("/{task_id}/claim", response_model=schemas.TaskResponse)
def claim_task(
    task_id: int,
    claim: schemas.ClaimRequest,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """
    Claim an available task.

    Returns 409 when the version is stale and 422 when the task is not
    available or is blocked (unless **acknowledge_blocked** is set).
    """
    view = unwrap(task_lifecycle.claim_task(
        db, task_id, actor_id, claim.expected_version, acknowledge_blocked=claim.acknowledge_blocked,
    ))
    return _view_to_response(view)


@router.post("/{task_id}/release", response_model=schemas.TaskResponse)
def release_task(
    task_id: int,
    action: schemas.VersionedAction,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """Release a task claimed by the caller."""
    return _view_to_response(unwrap(task_lifecycle.release_task(db, task_id, actor_id, action.expected_version)))


@router.post("/{task_id}/complete", response_model=schemas.TaskResponse)
def complete_task(
    task_id: int,
    action: schemas.VersionedAction,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """Complete a task claimed by the caller and run the automation it triggers."""
    return _view_to_response(unwrap(task_lifecycle.complete_task(db, task_id, actor_id, action.expected_version)))


@router.post("/{task_id}/reevaluate", response_model=list[schemas.RuleExecutionOutcomeResponse])
def reevaluate_task(
    task_id: int,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """Re-dispatch the task's current state to the rule engine (recovery path)."""
    outcomes = unwrap(rule_engine.reevaluate_origin(db, models.ResourceType.TASK, task_id, actor_id))
    return [schemas.RuleExecutionOutcomeResponse.model_validate(o) for o in outcomes]


@router.post("/release-all", response_model=schemas.ReleasedTasksResponse)
def release_all_tasks(
    project_id: int,
    user_id: int,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """Release every task a user holds in a project (e.g. when they leave it)."""
    released = unwrap(task_lifecycle.release_all_tasks_for_user(db, project_id, user_id, actor_user_id=actor_id))
    return schemas.ReleasedTasksResponse(task_ids=released)


# Work sessions

@router.post("/{task_id}/sessions/start", response_model=schemas.WorkSessionResponse)
def start_session(
    task_id: int,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """Start (or return the already open) work session on a claimed task."""
    return unwrap(task_lifecycle.start_session(db, task_id, actor_id))


@router.post("/{task_id}/sessions/pause", response_model=Optional[schemas.WorkSessionResponse])
def pause_session(
    task_id: int,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """Pause the caller's open work session; null when none was open."""
    return unwrap(task_lifecycle.pause_session(db, task_id, actor_id))


@router.post("/{task_id}/sessions/heartbeat", response_model=schemas.WorkSessionResponse)
def heartbeat_session(
    task_id: int,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """Keep the caller's open work session alive. 404 when it was closed as stale."""
    return unwrap(task_lifecycle.heartbeat_session(db, task_id, actor_id))


@router.get("/{task_id}/work-total", response_model=schemas.WorkTotalResponse)
def get_work_total(
    task_id: int,
    user_id: Optional[int] = None,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """Seconds worked on the task by **user_id** (default: the caller)."""
    unwrap(task_lifecycle.get_task_view(db, task_id))
    user_id = user_id if user_id is not None else actor_id
    return schemas.WorkTotalResponse(
        task_id=task_id,
        user_id=user_id,
        accumulated_s=task_lifecycle.get_work_total(db, task_id, user_id),
    )


@router.post("/sessions/close-stale", response_model=schemas.ClosedSessionsResponse)
def close_stale_sessions(timeout_s: Optional[int] = None, db: Session = Depends(get_db)):
    """Close open work sessions with no recent heartbeat (run periodically)."""
    return schemas.ClosedSessionsResponse(session_ids=task_lifecycle.close_stale_sessions(db, timeout_s=timeout_s))


# Dependencies

@router.get("/{task_id}/dependencies", response_model=list[schemas.DependencyResponse])
def list_dependencies(task_id: int, db: Session = Depends(get_db)):
    """List the tasks this task depends on, newest first."""
    unwrap(task_lifecycle.get_task_view(db, task_id))
    return [schemas.DependencyResponse.model_validate(d) for d in dependencies.list_dependencies(db, task_id)]


@router.post("/{task_id}/dependencies", response_model=schemas.DependencyResponse, status_code=201)
def add_dependency(
    task_id: int,
    dependency: schemas.DependencyCreate,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """Make this task depend on another task of the same project."""
    summary = unwrap(dependencies.add_dependency(db, task_id, dependency.depends_on_task_id, actor_id))
    return schemas.DependencyResponse.model_validate(summary)


@router.delete("/{task_id}/dependencies/{depends_on_task_id}", status_code=204)
def remove_dependency(task_id: int, depends_on_task_id: int, db: Session = Depends(get_db)):
    """Remove a dependency edge."""
    unwrap(dependencies.remove_dependency(db, task_id, depends_on_task_id))
