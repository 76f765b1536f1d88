"""Shared request dependencies and failure translation for the routers."""
import logging
from typing import TypeVar

from fastapi import Header, HTTPException

from ..results import FailureKind, Result

logger = logging.getLogger("taskrail-core.api")

T = TypeVar("T")

FAILURE_STATUS_CODES = {
    FailureKind.NOT_FOUND: 404,
    FailureKind.CONFLICT: 409,
    FailureKind.MILESTONE_CONFLICT: 409,
    FailureKind.INVALID_STATE: 422,
    FailureKind.FORBIDDEN: 403,
    FailureKind.TEMPLATE_EXECUTION_FAILED: 422,
}


def get_actor_id(x_user_id: int = Header(..., alias="X-User-Id", description="Acting user id")) -> int:
    """
    Identify the acting user.

    Authentication happens upstream; the gateway forwards the user id.
    """
    return x_user_id


def unwrap(result: Result[T]) -> T:
    """
    Return a result's value or raise the matching HTTPException.

    Args:
        result: Result of a core operation

    Returns:
        The successful value

    Raises:
        HTTPException: With the status code mapped from the failure kind
    """
    if result.ok:
        return result.value

    failure = result.failure
    status_code = FAILURE_STATUS_CODES[failure.kind]
    logger.debug(f"{failure.kind.value} → {status_code}: {failure.message}")
    raise HTTPException(
        status_code=status_code,
        detail={"kind": failure.kind.value, "message": failure.message, **failure.detail},
    )
