"""Dependency validation and query logic for task dependencies.

A task is blocked while any task it depends on is not completed. The blocked
count is computed on read: dependency states change independently and there
is no invalidation channel to keep a cached value honest.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Set

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .results import FailureKind, Result

logger = logging.getLogger("taskrail-core.dependencies")


@dataclass(frozen=True)
class DependencySummary:
    """What a task depends on, as shown next to the task."""

    task_id: int
    title: str
    status: models.TaskStatus
    claimed_by: Optional[int]


def blocked_count(db: Session, task_id: int) -> int:
    """
    Count dependencies of a task that are not completed.

    Args:
        db: Database session
        task_id: Task whose dependencies are counted

    Returns:
        Number of incomplete dependencies
    """
    stmt = (
        select(func.count())
        .select_from(models.TaskDependency)
        .join(models.Task, models.Task.id == models.TaskDependency.depends_on_task_id)
        .where(
            models.TaskDependency.task_id == task_id,
            models.Task.status != models.TaskStatus.COMPLETED,
        )
    )
    return db.execute(stmt).scalar_one()


def list_dependencies(db: Session, task_id: int) -> list[DependencySummary]:
    """List the tasks ``task_id`` depends on, newest first."""
    rows = db.execute(
        select(models.Task.id, models.Task.title, models.Task.status, models.Task.claimed_by)
        .join(models.TaskDependency, models.TaskDependency.depends_on_task_id == models.Task.id)
        .where(models.TaskDependency.task_id == task_id)
        .order_by(models.Task.created_at.desc(), models.Task.id.desc())
    ).all()
    return [
        DependencySummary(task_id=row.id, title=row.title, status=row.status, claimed_by=row.claimed_by)
        for row in rows
    ]


def _direct_dependencies(db: Session, task_id: int) -> list[int]:
    return list(db.execute(
        select(models.TaskDependency.depends_on_task_id)
        .where(models.TaskDependency.task_id == task_id)
        .order_by(models.TaskDependency.depends_on_task_id)
    ).scalars().all())


def get_transitive_dependencies(db: Session, task_id: int) -> Set[int]:
    """
    Get all transitive dependencies of a task.

    Iterative DFS; the visited set bounds the walk, so chains of any length
    are followed to the end.

    Args:
        db: Database session
        task_id: Starting task ID

    Returns:
        Set of visited task IDs, including the starting task itself
    """
    visited: Set[int] = set()
    stack = [task_id]
    while stack:
        current = stack.pop()
        if current in visited:
            continue
        visited.add(current)
        stack.extend(dep_id for dep_id in _direct_dependencies(db, current) if dep_id not in visited)
    return visited


def find_dependency_path(db: Session, start_task_id: int, target_task_id: int) -> Optional[list[int]]:
    """
    Find a chain of dependency edges from one task to another.

    Returns:
        Task ids from ``start_task_id`` to ``target_task_id`` inclusive, or
        None when the target is not reachable
    """
    parents: dict[int, Optional[int]] = {start_task_id: None}
    stack = [start_task_id]
    while stack:
        current = stack.pop()
        if current == target_task_id:
            path = []
            node: Optional[int] = current
            while node is not None:
                path.append(node)
                node = parents[node]
            return path[::-1]
        for dep_id in _direct_dependencies(db, current):
            if dep_id not in parents:
                parents[dep_id] = current
                stack.append(dep_id)
    return None


def detect_circular_dependency(
    db: Session,
    task_id: int,
    depends_on_task_id: int,
) -> Optional[list[int]]:
    """
    Detect whether adding ``task_id -> depends_on_task_id`` would close a cycle.

    Returns:
        The cycle as a task id path starting and ending at ``task_id``, or
        None if no cycle would be created
    """
    if task_id == depends_on_task_id:
        return [task_id, task_id]

    path = find_dependency_path(db, depends_on_task_id, task_id)
    if path is None:
        return None
    return [task_id] + path


def add_dependency(
    db: Session,
    task_id: int,
    depends_on_task_id: int,
    created_by: int,
) -> Result[DependencySummary]:
    """
    Make ``task_id`` depend on ``depends_on_task_id``.

    Rejects self references, edges across projects, duplicates and edges that
    would create a cycle.

    Args:
        db: Database session
        task_id: The dependent task
        depends_on_task_id: The task that must be completed first
        created_by: Acting user

    Returns:
        Result with a summary of the dependency task
    """
    if task_id == depends_on_task_id:
        return Result.fail(FailureKind.INVALID_STATE, "A task cannot depend on itself")

    task = db.get(models.Task, task_id)
    dependency = db.get(models.Task, depends_on_task_id)
    if task is None or dependency is None:
        missing = task_id if task is None else depends_on_task_id
        db.rollback()
        return Result.fail(FailureKind.NOT_FOUND, f"Task not found: {missing}")
    if task.project_id != dependency.project_id:
        db.rollback()
        return Result.fail(FailureKind.INVALID_STATE, "Dependencies must stay within one project")

    cycle = detect_circular_dependency(db, task_id, depends_on_task_id)
    if cycle:
        path = " → ".join(str(t) for t in cycle)
        logger.warning(f"Rejected circular dependency: {path}")
        db.rollback()
        return Result.fail(FailureKind.INVALID_STATE, f"Circular dependency detected: {path}", cycle=cycle)

    edge = models.TaskDependency(
        task_id=task_id,
        depends_on_task_id=depends_on_task_id,
        created_by=created_by,
    )
    db.add(edge)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return Result.fail(
            FailureKind.INVALID_STATE,
            f"Task {task_id} already depends on task {depends_on_task_id}",
        )

    logger.info(f"Task {task_id} now depends on task {depends_on_task_id}")
    return Result.success(DependencySummary(
        task_id=dependency.id,
        title=dependency.title,
        status=dependency.status,
        claimed_by=dependency.claimed_by,
    ))


def remove_dependency(db: Session, task_id: int, depends_on_task_id: int) -> Result[int]:
    """
    Delete a dependency edge.

    Nothing is unblocked eagerly; the next read recomputes the blocked count.

    Returns:
        Result with the removed dependency's task id
    """
    edge = db.execute(
        select(models.TaskDependency).where(
            models.TaskDependency.task_id == task_id,
            models.TaskDependency.depends_on_task_id == depends_on_task_id,
        )
    ).scalar_one_or_none()
    if edge is None:
        db.rollback()
        return Result.fail(
            FailureKind.NOT_FOUND,
            f"Task {task_id} does not depend on task {depends_on_task_id}",
        )

    db.delete(edge)
    db.commit()
    logger.info(f"Removed dependency {task_id} → {depends_on_task_id}")
    return Result.success(depends_on_task_id)
