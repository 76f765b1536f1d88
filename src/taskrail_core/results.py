"""Typed operation results.

Lifecycle operations report expected failures (stale version, wrong state,
wrong actor, ...) as values instead of raising. Only storage errors propagate.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class FailureKind(str, enum.Enum):
    """Failure taxonomy shared by every lifecycle operation."""

    CONFLICT = "conflict"
    INVALID_STATE = "invalid_state"
    FORBIDDEN = "forbidden"
    MILESTONE_CONFLICT = "milestone_conflict"
    NOT_FOUND = "not_found"
    TEMPLATE_EXECUTION_FAILED = "template_execution_failed"


@dataclass(frozen=True)
class Failure:
    """A typed, expected failure."""

    kind: FailureKind
    message: str
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a failure."""

    value: Optional[T] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, kind: FailureKind, message: str, **detail: Any) -> "Result[T]":
        return cls(failure=Failure(kind=kind, message=message, detail=detail))

    @classmethod
    def from_failure(cls, failure: Failure) -> "Result[T]":
        return cls(failure=failure)


class TemplateExecutionFailed(Exception):
    """Raised inside a rule application to unwind its savepoint.

    Converted into a ``FailureKind.TEMPLATE_EXECUTION_FAILED`` result at the
    operation boundary.
    """

    def __init__(self, message: str, rule_id: int, template_id: int):
        super().__init__(message)
        self.rule_id = rule_id
        self.template_id = template_id

    def to_failure(self) -> Failure:
        return Failure(
            kind=FailureKind.TEMPLATE_EXECUTION_FAILED,
            message=str(self),
            detail={"rule_id": self.rule_id, "template_id": self.template_id},
        )


class MilestoneReopenBlocked(Exception):
    """Raised when new work would re-open a completed milestone while another
    milestone of the project is active.

    Converted into a ``FailureKind.MILESTONE_CONFLICT`` result at the
    operation boundary, or into ``TemplateExecutionFailed`` inside a rule.
    """

    def __init__(self, milestone_id: int, active_milestone_id: Optional[int] = None):
        active = f"milestone {active_milestone_id}" if active_milestone_id else "another milestone"
        super().__init__(f"Milestone {milestone_id} cannot re-open: {active} is active")
        self.milestone_id = milestone_id
        self.active_milestone_id = active_milestone_id

    def to_failure(self) -> Failure:
        return Failure(
            kind=FailureKind.MILESTONE_CONFLICT,
            message=str(self),
            detail={"milestone_id": self.milestone_id, "active_milestone_id": self.active_milestone_id},
        )
