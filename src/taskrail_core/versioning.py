"""Optimistic concurrency primitive.

Every mutable row (task, card, milestone) carries a ``version`` counter. A
write is a single conditional UPDATE keyed by ``(id, expected_version)`` plus
whatever state the transition requires; zero rows affected means another
writer got there first. Conflicts are reported, never retried: retrying with
stale client state could apply the wrong transition.
"""
import logging
from typing import Any, Callable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from .results import Failure, FailureKind

logger = logging.getLogger("taskrail-core.versioning")

# Marks keyword arguments the caller did not pass
UNSET = object()


def compare_and_swap(
    db: Session,
    model,
    row_id: int,
    expected_version: int,
    values: dict[str, Any],
    **expected: Any,
) -> bool:
    """
    Conditionally update one row and bump its version.

    Issues ``UPDATE ... SET values, version = version + 1 WHERE id = ? AND
    version = ? AND <column = value>...``.

    Args:
        db: Database session
        model: Mapped class with ``id`` and ``version`` columns
        row_id: Primary key of the row
        expected_version: Version the caller last observed
        values: Columns to set
        **expected: Additional column equality guards (e.g. ``status=...``)

    Returns:
        True if exactly one row was updated, False on conflict
    """
    criteria = [model.id == row_id, model.version == expected_version]
    criteria.extend(getattr(model, column) == value for column, value in expected.items())

    stmt = (
        update(model)
        .where(*criteria)
        .values(**values, version=model.version + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)

    if result.rowcount != 1:
        logger.debug(
            f"CAS missed on {model.__tablename__} {row_id} "
            f"(expected version {expected_version}, guards {sorted(expected)})"
        )
        return False
    return True


def reload(db: Session, model, row_id: int):
    """Fetch a row bypassing any stale copy in the identity map."""
    return db.get(model, row_id, populate_existing=True)


def diagnose_conflict(
    db: Session,
    model,
    row_id: int,
    expected_version: int,
    expected: dict[str, Any],
    actor_field: Optional[str] = None,
    describe: Optional[Callable[[Any], str]] = None,
) -> Failure:
    """
    Explain why a compare-and-swap affected no rows.

    The version is checked first so that a stale client always gets
    ``Conflict`` and refreshes before anything else is reported.

    Args:
        db: Database session
        model: Mapped class that was updated
        row_id: Primary key of the row
        expected_version: Version the caller sent
        expected: Column guards that were part of the swap
        actor_field: Guard that identifies the acting user (mismatch → Forbidden)
        describe: Builds the InvalidState message from the current row

    Returns:
        Failure describing the first violated guard
    """
    label = model.__name__
    row = reload(db, model, row_id)
    if row is None:
        return Failure(FailureKind.NOT_FOUND, f"{label} not found: {row_id}")

    if row.version != expected_version:
        return Failure(
            FailureKind.CONFLICT,
            f"{label} {row_id} was changed by someone else; refresh and try again",
            {"expected_version": expected_version, "current_version": row.version},
        )

    state_guards = {k: v for k, v in expected.items() if k != actor_field}
    for column, value in state_guards.items():
        current = getattr(row, column)
        if current != value:
            message = describe(row) if describe else (
                f"{label} {row_id} has {column}={_plain(current)}, expected {_plain(value)}"
            )
            return Failure(
                FailureKind.INVALID_STATE,
                message,
                {column: _plain(current), "current_version": row.version},
            )

    if actor_field and getattr(row, actor_field) != expected.get(actor_field):
        return Failure(
            FailureKind.FORBIDDEN,
            f"{label} {row_id} belongs to another user",
            {actor_field: getattr(row, actor_field)},
        )

    # Row matched on re-read: a concurrent writer changed and restored it
    return Failure(
        FailureKind.CONFLICT,
        f"{label} {row_id} was changed concurrently; refresh and try again",
        {"current_version": row.version},
    )


def _plain(value: Any) -> Any:
    return getattr(value, "value", value)
