"""Task lifecycle: create, claim, release, complete and work sessions.

Every mutation is a single compare-and-swap keyed by ``(id, expected_version)``
(see versioning.py). On success the transition is recorded as a task event,
the effective milestone is recomputed and the transition is dispatched to the
rule engine, all inside one transaction: either the task write and all of its
automation commit together or nothing does.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .cards import card_state
from .config import get_settings
from .dependencies import DependencySummary, blocked_count, list_dependencies
from .milestones import effective_milestone_id, recompute_completion
from .results import Failure, FailureKind, MilestoneReopenBlocked, Result, TemplateExecutionFailed
from .state_machine import describe_task_transition
from .versioning import UNSET, compare_and_swap, diagnose_conflict, reload

logger = logging.getLogger("taskrail-core.task_lifecycle")


@dataclass
class TaskView:
    """A task row plus the values computed on read."""

    task: models.Task
    is_ongoing: bool
    ongoing_by_user_id: Optional[int]
    blocked_count: int
    dependencies: list[DependencySummary]
    rule_executions: list = field(default_factory=list)


# =============================================================================
# Helpers
# =============================================================================


def _open_session(db: Session, task_id: int) -> Optional[models.WorkSession]:
    return db.execute(
        select(models.WorkSession).where(
            models.WorkSession.task_id == task_id,
            models.WorkSession.ended_at.is_(None),
        )
    ).scalar_one_or_none()


def _add_work_time(db: Session, user_id: int, task_id: int, seconds: int) -> models.WorkTotal:
    total = db.get(models.WorkTotal, (user_id, task_id))
    if total is None:
        total = models.WorkTotal(user_id=user_id, task_id=task_id, accumulated_s=0)
        db.add(total)
    total.accumulated_s += seconds
    total.updated_at = models.utcnow()
    db.flush()
    return total


def _end_session(
    db: Session,
    work_session: models.WorkSession,
    reason: models.SessionEndReason,
    ended_at=None,
) -> bool:
    """
    Close one open session and add its duration to the user's total.

    Conditional on the session still being open, so two closers never count
    the same session twice. Does not commit.

    Returns:
        True if this call closed the session
    """
    ended_at = ended_at or models.utcnow()
    result = db.execute(
        update(models.WorkSession)
        .where(
            models.WorkSession.id == work_session.id,
            models.WorkSession.ended_at.is_(None),
        )
        .values(ended_at=ended_at, ended_reason=reason)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    started_at = models.as_utc(work_session.started_at)
    seconds = max(0, int((models.as_utc(ended_at) - started_at).total_seconds()))
    _add_work_time(db, work_session.user_id, work_session.task_id, seconds)
    db.refresh(work_session)
    logger.debug(f"Closed work session {work_session.id} on task {work_session.task_id} ({reason.value}, {seconds}s)")
    return True


def _close_open_session(db: Session, task_id: int, reason: models.SessionEndReason) -> int:
    work_session = _open_session(db, task_id)
    if work_session is None:
        return 0
    return 1 if _end_session(db, work_session, reason) else 0


def _build_view(db: Session, task: models.Task, executions=None) -> TaskView:
    session = _open_session(db, task.id)
    return TaskView(
        task=task,
        is_ongoing=session is not None,
        ongoing_by_user_id=session.user_id if session else None,
        blocked_count=blocked_count(db, task.id),
        dependencies=list_dependencies(db, task.id),
        rule_executions=list(executions or []),
    )


def _record_event(
    db: Session,
    task: models.Task,
    event_type: models.TaskEventType,
    actor_user_id: Optional[int],
) -> None:
    project = db.get(models.Project, task.project_id)
    db.add(models.TaskEvent(
        org_id=project.org_id,
        project_id=task.project_id,
        task_id=task.id,
        actor_user_id=actor_user_id,
        event_type=event_type,
    ))


def _emit(
    db: Session,
    resource_type: models.ResourceType,
    resource_id: int,
    to_state: str,
    project_id: int,
    task_type_id: Optional[int],
    user_id: Optional[int],
    user_triggered: bool,
    depth: int,
) -> list:
    """Hand a committed-to-be transition to the rule engine (same transaction)."""
    from . import rule_engine

    db.flush()
    project = db.get(models.Project, project_id)
    event = rule_engine.TransitionEvent(
        resource_type=resource_type,
        resource_id=resource_id,
        to_state=to_state,
        project_id=project_id,
        org_id=project.org_id,
        task_type_id=task_type_id,
        user_id=user_id,
        user_triggered=user_triggered,
        depth=depth,
    )
    return rule_engine.dispatch_transition(db, event)


def _emit_task(db: Session, task: models.Task, user_id: Optional[int], user_triggered: bool, depth: int) -> list:
    return _emit(
        db,
        models.ResourceType.TASK,
        task.id,
        task.status.value,
        task.project_id,
        task.type_id,
        user_id,
        user_triggered,
        depth,
    )


def _emit_card_change(
    db: Session,
    card_id: Optional[int],
    before: Optional[models.CardState],
    user_id: Optional[int],
    user_triggered: bool,
    depth: int,
) -> list:
    """Emit a card transition if the card's derived state changed."""
    if card_id is None:
        return []
    after = card_state(db, card_id)
    if after == before:
        return []
    card = db.get(models.Card, card_id)
    logger.info(f"Card {card_id}: {before.value if before else None} → {after.value}")
    return _emit(
        db,
        models.ResourceType.CARD,
        card_id,
        after.value,
        card.project_id,
        None,
        user_id,
        user_triggered,
        depth,
    )


def _card_state_before(db: Session, task: models.Task) -> Optional[models.CardState]:
    return card_state(db, task.card_id) if task.card_id is not None else None


def _validate_task_placement(
    db: Session,
    project_id: int,
    type_id: int,
    priority: int,
    card_id: Optional[int],
    milestone_id: Optional[int],
) -> Optional[Failure]:
    """Check that a new task's type, card and milestone fit its project."""
    if db.get(models.Project, project_id) is None:
        return Failure(FailureKind.NOT_FOUND, f"Project not found: {project_id}")

    task_type = db.get(models.TaskType, type_id)
    if task_type is None or task_type.project_id != project_id:
        return Failure(
            FailureKind.INVALID_STATE,
            f"Task type {type_id} does not belong to project {project_id}",
            {"type_id": type_id},
        )

    if not 1 <= priority <= 5:
        return Failure(FailureKind.INVALID_STATE, f"Priority must be between 1 and 5, got {priority}")

    if card_id is not None and milestone_id is not None:
        return Failure(FailureKind.INVALID_STATE, "A task belongs to a card or to a milestone, not both")

    if card_id is not None:
        card = db.get(models.Card, card_id)
        if card is None or card.project_id != project_id:
            return Failure(FailureKind.NOT_FOUND, f"Card not found in project: {card_id}")

    if milestone_id is not None:
        milestone = db.get(models.Milestone, milestone_id)
        if milestone is None or milestone.project_id != project_id:
            return Failure(FailureKind.NOT_FOUND, f"Milestone not found in project: {milestone_id}")

    return None


def _insert_task(
    db: Session,
    project_id: int,
    type_id: int,
    title: str,
    created_by: int,
    actor_user_id: Optional[int],
    description: Optional[str] = None,
    priority: int = 3,
    card_id: Optional[int] = None,
    milestone_id: Optional[int] = None,
    created_from_rule_id: Optional[int] = None,
    user_triggered: bool = True,
    depth: int = 0,
) -> tuple[models.Task, list]:
    """
    Insert an already validated task and run its side effects.

    Does not commit. May raise TemplateExecutionFailed from rules reacting to
    the new task.

    Returns:
        The new task and the rule outcomes its creation produced
    """
    card_before = card_state(db, card_id) if card_id is not None else None

    task = models.Task(
        project_id=project_id,
        type_id=type_id,
        title=title,
        description=description,
        priority=priority,
        card_id=card_id,
        milestone_id=milestone_id,
        status=models.TaskStatus.AVAILABLE,
        created_by=created_by,
        created_from_rule_id=created_from_rule_id,
        version=1,
    )
    db.add(task)
    db.flush()
    _record_event(db, task, models.TaskEventType.TASK_CREATED, actor_user_id)

    # A new incomplete task re-opens a completed milestone
    target_milestone = effective_milestone_id(db, task)
    if target_milestone is not None:
        recompute_completion(db, target_milestone)

    source = f" from rule {created_from_rule_id}" if created_from_rule_id else ""
    logger.info(f"Created task {task.id} '{title}' in project {project_id}{source}")

    executions = _emit_task(db, task, actor_user_id, user_triggered, depth)
    executions += _emit_card_change(db, card_id, card_before, actor_user_id, user_triggered, depth)
    return task, executions


# =============================================================================
# Task operations
# =============================================================================


def create_task(
    db: Session,
    project_id: int,
    type_id: int,
    title: str,
    created_by: int,
    description: Optional[str] = None,
    priority: int = 3,
    card_id: Optional[int] = None,
    milestone_id: Optional[int] = None,
) -> Result[TaskView]:
    """
    Create an available task.

    Args:
        db: Database session
        project_id: Owning project
        type_id: Task type (must belong to the project)
        title: Task title
        created_by: Acting user
        description: Optional description
        priority: 1 (lowest) to 5 (highest)
        card_id: Optional card to place the task in
        milestone_id: Optional milestone (only when there is no card)

    Returns:
        Result with the new task's view
    """
    failure = _validate_task_placement(db, project_id, type_id, priority, card_id, milestone_id)
    if failure:
        db.rollback()
        return Result.from_failure(failure)

    try:
        task, executions = _insert_task(
            db,
            project_id=project_id,
            type_id=type_id,
            title=title,
            created_by=created_by,
            actor_user_id=created_by,
            description=description,
            priority=priority,
            card_id=card_id,
            milestone_id=milestone_id,
        )
    except (TemplateExecutionFailed, MilestoneReopenBlocked) as exc:
        db.rollback()
        logger.warning(f"Task creation in project {project_id} rolled back: {exc}")
        return Result.from_failure(exc.to_failure())

    view = _build_view(db, task, executions)
    db.commit()
    return Result.success(view)


def claim_task(
    db: Session,
    task_id: int,
    user_id: int,
    expected_version: int,
    acknowledge_blocked: bool = False,
) -> Result[TaskView]:
    """
    Claim an available task.

    The blocked count is read in the same transaction, right before the swap.
    Claiming a blocked task is refused unless the caller acknowledges it.

    Args:
        db: Database session
        task_id: Task to claim
        user_id: Acting user
        expected_version: Version the caller last observed
        acknowledge_blocked: Claim even with incomplete dependencies

    Returns:
        Result with the claimed task's view (including ``blocked_count``)
    """
    task = reload(db, models.Task, task_id)
    if task is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")

    blocked = blocked_count(db, task_id)
    claimable = task.version == expected_version and task.status == models.TaskStatus.AVAILABLE
    if claimable and blocked and not acknowledge_blocked:
        db.rollback()
        logger.warning(f"Refused claim of task {task_id}: blocked by {blocked} dependencies")
        return Result.fail(
            FailureKind.INVALID_STATE,
            f"Task {task_id} is blocked by {blocked} incomplete dependencies",
            blocked_count=blocked,
        )

    card_before = _card_state_before(db, task)
    swapped = compare_and_swap(
        db,
        models.Task,
        task_id,
        expected_version,
        {
            "status": models.TaskStatus.CLAIMED,
            "claimed_by": user_id,
            "claimed_at": models.utcnow(),
        },
        status=models.TaskStatus.AVAILABLE,
    )
    if not swapped:
        failure = diagnose_conflict(
            db,
            models.Task,
            task_id,
            expected_version,
            {"status": models.TaskStatus.AVAILABLE},
            describe=lambda row: describe_task_transition(row.status, models.TaskStatus.CLAIMED),
        )
        db.rollback()
        logger.warning(f"Claim of task {task_id} by user {user_id} refused: {failure.kind.value}")
        return Result.from_failure(failure)

    task = reload(db, models.Task, task_id)
    _record_event(db, task, models.TaskEventType.TASK_CLAIMED, user_id)
    logger.info(f"Task {task_id} claimed by user {user_id} (version {task.version})")

    try:
        executions = _emit_task(db, task, user_id, True, 0)
        executions += _emit_card_change(db, task.card_id, card_before, user_id, True, 0)
    except TemplateExecutionFailed as exc:
        db.rollback()
        logger.warning(f"Claim of task {task_id} rolled back: {exc}")
        return Result.from_failure(exc.to_failure())

    view = _build_view(db, task, executions)
    db.commit()
    return Result.success(view)


def release_task(db: Session, task_id: int, user_id: int, expected_version: int) -> Result[TaskView]:
    """
    Return a claimed task to the pool.

    Only the current claimant may release. Closes any open work session.

    Returns:
        Result with the released task's view
    """
    task = reload(db, models.Task, task_id)
    if task is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")

    card_before = _card_state_before(db, task)
    swapped = compare_and_swap(
        db,
        models.Task,
        task_id,
        expected_version,
        {"status": models.TaskStatus.AVAILABLE, "claimed_by": None, "claimed_at": None},
        status=models.TaskStatus.CLAIMED,
        claimed_by=user_id,
    )
    if not swapped:
        failure = diagnose_conflict(
            db,
            models.Task,
            task_id,
            expected_version,
            {"status": models.TaskStatus.CLAIMED, "claimed_by": user_id},
            actor_field="claimed_by",
            describe=lambda row: describe_task_transition(row.status, models.TaskStatus.AVAILABLE),
        )
        db.rollback()
        logger.warning(f"Release of task {task_id} by user {user_id} refused: {failure.kind.value}")
        return Result.from_failure(failure)

    _close_open_session(db, task_id, models.SessionEndReason.TASK_RELEASED)
    task = reload(db, models.Task, task_id)
    _record_event(db, task, models.TaskEventType.TASK_RELEASED, user_id)
    logger.info(f"Task {task_id} released by user {user_id} (version {task.version})")

    try:
        executions = _emit_task(db, task, user_id, True, 0)
        executions += _emit_card_change(db, task.card_id, card_before, user_id, True, 0)
    except TemplateExecutionFailed as exc:
        db.rollback()
        logger.warning(f"Release of task {task_id} rolled back: {exc}")
        return Result.from_failure(exc.to_failure())

    view = _build_view(db, task, executions)
    db.commit()
    return Result.success(view)


def complete_task(db: Session, task_id: int, user_id: int, expected_version: int) -> Result[TaskView]:
    """
    Complete a task claimed by ``user_id``.

    In one transaction: swaps the status, closes the open work session,
    recomputes the effective milestone and dispatches ``(task, completed)``
    plus ``(card, completed)`` when this was the card's last open task. If
    any triggered rule fails to apply its templates the completion itself is
    rolled back.

    Args:
        db: Database session
        task_id: Task to complete
        user_id: Acting user (must be the claimant)
        expected_version: Version the caller last observed

    Returns:
        Result with the completed task's view
    """
    task = reload(db, models.Task, task_id)
    if task is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")

    card_before = _card_state_before(db, task)
    swapped = compare_and_swap(
        db,
        models.Task,
        task_id,
        expected_version,
        {"status": models.TaskStatus.COMPLETED, "completed_at": models.utcnow()},
        status=models.TaskStatus.CLAIMED,
        claimed_by=user_id,
    )
    if not swapped:
        failure = diagnose_conflict(
            db,
            models.Task,
            task_id,
            expected_version,
            {"status": models.TaskStatus.CLAIMED, "claimed_by": user_id},
            actor_field="claimed_by",
            describe=lambda row: describe_task_transition(row.status, models.TaskStatus.COMPLETED),
        )
        db.rollback()
        logger.warning(f"Completion of task {task_id} by user {user_id} refused: {failure.kind.value}")
        return Result.from_failure(failure)

    _close_open_session(db, task_id, models.SessionEndReason.TASK_COMPLETED)
    task = reload(db, models.Task, task_id)
    _record_event(db, task, models.TaskEventType.TASK_COMPLETED, user_id)
    logger.info(f"Task {task_id} completed by user {user_id} (version {task.version})")

    milestone_id = effective_milestone_id(db, task)
    if milestone_id is not None:
        recompute_completion(db, milestone_id)

    try:
        executions = _emit_task(db, task, user_id, True, 0)
        executions += _emit_card_change(db, task.card_id, card_before, user_id, True, 0)
    except TemplateExecutionFailed as exc:
        db.rollback()
        logger.warning(f"Completion of task {task_id} rolled back: {exc}")
        return Result.from_failure(exc.to_failure())

    view = _build_view(db, task, executions)
    db.commit()
    return Result.success(view)


def update_task(
    db: Session,
    task_id: int,
    user_id: int,
    expected_version: int,
    title=UNSET,
    description=UNSET,
    priority=UNSET,
    type_id=UNSET,
) -> Result[TaskView]:
    """
    Edit a task's fields. Only the current claimant may edit.

    Returns:
        Result with the updated task's view
    """
    task = reload(db, models.Task, task_id)
    if task is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")

    values = {}
    if title is not UNSET:
        values["title"] = title
    if description is not UNSET:
        values["description"] = description
    if priority is not UNSET:
        if not 1 <= priority <= 5:
            db.rollback()
            return Result.fail(FailureKind.INVALID_STATE, f"Priority must be between 1 and 5, got {priority}")
        values["priority"] = priority
    if type_id is not UNSET:
        task_type = db.get(models.TaskType, type_id)
        if task_type is None or task_type.project_id != task.project_id:
            db.rollback()
            return Result.fail(
                FailureKind.INVALID_STATE,
                f"Task type {type_id} does not belong to project {task.project_id}",
                type_id=type_id,
            )
        values["type_id"] = type_id

    swapped = compare_and_swap(
        db,
        models.Task,
        task_id,
        expected_version,
        values,
        status=models.TaskStatus.CLAIMED,
        claimed_by=user_id,
    )
    if not swapped:
        failure = diagnose_conflict(
            db,
            models.Task,
            task_id,
            expected_version,
            {"status": models.TaskStatus.CLAIMED, "claimed_by": user_id},
            actor_field="claimed_by",
            describe=lambda row: f"Task {task_id} is {row.status.value}; only a claimed task can be edited",
        )
        db.rollback()
        return Result.from_failure(failure)

    task = reload(db, models.Task, task_id)
    view = _build_view(db, task)
    db.commit()
    logger.info(f"Task {task_id} updated by user {user_id}: {sorted(values)}")
    return Result.success(view)


def release_all_tasks_for_user(
    db: Session,
    project_id: int,
    user_id: int,
    actor_user_id: Optional[int] = None,
) -> Result[list[int]]:
    """
    Release every task ``user_id`` holds in a project.

    Used when a member leaves a project; ``actor_user_id`` is whoever removed
    them and defaults to the member. Each row still goes through the
    version swap, so a task changed concurrently is skipped rather than
    overwritten.

    Returns:
        Result with the ids of released tasks
    """
    claimed = db.execute(
        select(models.Task).where(
            models.Task.project_id == project_id,
            models.Task.status == models.TaskStatus.CLAIMED,
            models.Task.claimed_by == user_id,
        ).order_by(models.Task.id)
    ).scalars().all()

    released = []
    executions = []
    actor = actor_user_id if actor_user_id is not None else user_id
    try:
        for task in claimed:
            card_before = _card_state_before(db, task)
            swapped = compare_and_swap(
                db,
                models.Task,
                task.id,
                task.version,
                {"status": models.TaskStatus.AVAILABLE, "claimed_by": None, "claimed_at": None},
                status=models.TaskStatus.CLAIMED,
                claimed_by=user_id,
            )
            if not swapped:
                logger.warning(f"Skipped releasing task {task.id}: changed concurrently")
                continue

            _close_open_session(db, task.id, models.SessionEndReason.TASK_RELEASED)
            task = reload(db, models.Task, task.id)
            _record_event(db, task, models.TaskEventType.TASK_RELEASED, actor)
            executions += _emit_task(db, task, actor, False, 0)
            executions += _emit_card_change(db, task.card_id, card_before, actor, False, 0)
            released.append(task.id)
    except TemplateExecutionFailed as exc:
        db.rollback()
        logger.warning(f"Bulk release for user {user_id} in project {project_id} rolled back: {exc}")
        return Result.from_failure(exc.to_failure())

    db.commit()
    logger.info(f"Released {len(released)} tasks of user {user_id} in project {project_id}")
    return Result.success(released)


def get_task_view(db: Session, task_id: int) -> Result[TaskView]:
    """Read a task with its computed ongoing, blocked and dependency fields."""
    task = reload(db, models.Task, task_id)
    if task is None:
        return Result.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")
    return Result.success(_build_view(db, task))


# =============================================================================
# Work sessions
# =============================================================================


def start_session(db: Session, task_id: int, user_id: int) -> Result[models.WorkSession]:
    """
    Start tracking work on a claimed task.

    Starting while a session is already open returns that session unchanged;
    duplicate clicks are expected and are not errors.

    Returns:
        Result with the open WorkSession
    """
    task = reload(db, models.Task, task_id)
    if task is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")

    if task.status != models.TaskStatus.CLAIMED:
        status = task.status.value
        db.rollback()
        return Result.fail(
            FailureKind.INVALID_STATE,
            f"Task {task_id} is {status}; work sessions need a claimed task",
            status=status,
        )
    if task.claimed_by != user_id:
        db.rollback()
        return Result.fail(FailureKind.FORBIDDEN, f"Task {task_id} is claimed by another user")

    existing = _open_session(db, task_id)
    if existing is not None:
        logger.debug(f"Work session {existing.id} already open on task {task_id}")
        db.commit()
        return Result.success(existing)

    try:
        with db.begin_nested():
            work_session = models.WorkSession(task_id=task_id, user_id=user_id)
            db.add(work_session)
    except IntegrityError:
        # Lost the race on the open-session index; the winner's session stands
        work_session = _open_session(db, task_id)

    db.commit()
    logger.info(f"Work session {work_session.id} started on task {task_id} by user {user_id}")
    return Result.success(work_session)


def pause_session(db: Session, task_id: int, user_id: int) -> Result[Optional[models.WorkSession]]:
    """
    Close the caller's open session on a task.

    Returns:
        Result with the closed session, or None when nothing was open
    """
    if db.get(models.Task, task_id) is None:
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")

    work_session = db.execute(
        select(models.WorkSession).where(
            models.WorkSession.task_id == task_id,
            models.WorkSession.user_id == user_id,
            models.WorkSession.ended_at.is_(None),
        )
    ).scalar_one_or_none()
    if work_session is None:
        db.commit()
        logger.debug(f"No open work session for user {user_id} on task {task_id}")
        return Result.success(None)

    if not _end_session(db, work_session, models.SessionEndReason.USER_PAUSE):
        # Closed concurrently (stale sweep, release); nothing left to pause
        db.commit()
        return Result.success(None)

    db.commit()
    logger.info(f"Work session {work_session.id} paused on task {task_id}")
    return Result.success(work_session)


def heartbeat_session(db: Session, task_id: int, user_id: int) -> Result[models.WorkSession]:
    """
    Record that the caller is still working on a task.

    Returns:
        Result with the open session, or NOT_FOUND when the caller has none
        (never started, paused, or already closed as stale)
    """
    result = db.execute(
        update(models.WorkSession)
        .where(
            models.WorkSession.task_id == task_id,
            models.WorkSession.user_id == user_id,
            models.WorkSession.ended_at.is_(None),
        )
        .values(last_heartbeat_at=models.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        return Result.fail(
            FailureKind.NOT_FOUND,
            f"No open work session for user {user_id} on task {task_id}",
        )

    work_session = _open_session(db, task_id)
    db.refresh(work_session)
    db.commit()
    return Result.success(work_session)


def close_stale_sessions(
    db: Session,
    timeout_s: Optional[int] = None,
    now=None,
) -> list[int]:
    """
    Close open sessions whose last heartbeat is older than the timeout.

    A stale session ends at its last heartbeat: time after it is not counted
    as work. The task stops being ongoing but stays claimed.

    Args:
        db: Database session
        timeout_s: Staleness threshold; defaults to WORK_SESSION_STALE_TIMEOUT_S
        now: Reference time (defaults to the current time)

    Returns:
        Ids of the sessions closed by this call
    """
    if timeout_s is None:
        timeout_s = get_settings().work_session_stale_timeout_s
    cutoff = (now or models.utcnow()) - timedelta(seconds=timeout_s)

    stale = db.execute(
        select(models.WorkSession)
        .where(
            models.WorkSession.ended_at.is_(None),
            models.WorkSession.last_heartbeat_at < cutoff,
        )
        .order_by(models.WorkSession.id)
        .execution_options(populate_existing=True)
    ).scalars().all()

    closed = [
        work_session.id
        for work_session in stale
        if _end_session(
            db, work_session, models.SessionEndReason.STALE_TIMEOUT, ended_at=work_session.last_heartbeat_at,
        )
    ]
    db.commit()
    if closed:
        logger.info(f"Closed {len(closed)} stale work sessions (no heartbeat for {timeout_s}s)")
    return closed


def get_work_total(db: Session, task_id: int, user_id: int) -> int:
    """Seconds ``user_id`` has worked on a task across closed sessions."""
    total = db.execute(
        select(models.WorkTotal.accumulated_s).where(
            models.WorkTotal.task_id == task_id,
            models.WorkTotal.user_id == user_id,
        )
    ).scalar_one_or_none()
    return total or 0
