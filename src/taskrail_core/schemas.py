"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict

from .models import (
    CardState,
    ExecutionOutcome,
    MilestoneState,
    ResourceType,
    SessionEndReason,
    SuppressionReason,
    TaskStatus,
)


# Task Schemas

class TaskCreate(BaseModel):
    """Schema for creating a task."""

    project_id: int
    type_id: int
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    priority: int = Field(3, ge=1, le=5)
    card_id: Optional[int] = None
    milestone_id: Optional[int] = None


class VersionedAction(BaseModel):
    """Body of every task mutation: the version the client last saw."""

    expected_version: int = Field(..., ge=1)


class ClaimRequest(VersionedAction):
    """Schema for claiming a task."""

    acknowledge_blocked: bool = Field(False, description="Claim even if dependencies are incomplete")


class TaskUpdate(VersionedAction):
    """Schema for editing a claimed task. Omitted fields are left unchanged."""

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    priority: Optional[int] = Field(None, ge=1, le=5)
    type_id: Optional[int] = None


class DependencyCreate(BaseModel):
    """Schema for adding a dependency."""

    depends_on_task_id: int


class DependencyResponse(BaseModel):
    """A task another task depends on."""

    task_id: int
    title: str
    status: TaskStatus
    claimed_by: Optional[int] = None

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class RuleExecutionOutcomeResponse(BaseModel):
    """Outcome of one rule execution triggered by a mutation."""

    rule_id: int
    origin_type: ResourceType
    origin_id: int
    outcome: ExecutionOutcome
    suppression_reason: Optional[SuppressionReason] = None
    recorded: bool = True
    created_task_ids: list[int] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class TaskResponse(BaseModel):
    """Task row plus computed fields."""

    id: int
    project_id: int
    card_id: Optional[int] = None
    milestone_id: Optional[int] = None
    type_id: int
    title: str
    description: Optional[str] = None
    priority: int
    status: TaskStatus
    created_by: int
    claimed_by: Optional[int] = None
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int
    created_from_rule_id: Optional[int] = None
    created_at: datetime

    is_ongoing: bool = False
    ongoing_by_user_id: Optional[int] = None
    blocked_count: int = 0
    dependencies: list[DependencyResponse] = Field(default_factory=list)
    rule_executions: list[RuleExecutionOutcomeResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class ReleasedTasksResponse(BaseModel):
    """Tasks released in bulk."""

    task_ids: list[int]


class WorkSessionResponse(BaseModel):
    """Schema for work session responses."""

    id: int
    task_id: int
    user_id: int
    started_at: datetime
    last_heartbeat_at: datetime
    ended_at: Optional[datetime] = None
    ended_reason: Optional[SessionEndReason] = None

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class WorkTotalResponse(BaseModel):
    """Seconds one user has worked on one task."""

    task_id: int
    user_id: int
    accumulated_s: int


class ClosedSessionsResponse(BaseModel):
    """Work sessions closed by a stale sweep."""

    session_ids: list[int]


# Card Schemas

class CardCreate(BaseModel):
    """Schema for creating a card."""

    project_id: int
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    color: Optional[str] = Field(None, max_length=20)
    milestone_id: Optional[int] = None


class CardUpdate(BaseModel):
    """Schema for editing a card. Omitted fields are left unchanged."""

    expected_version: int = Field(..., ge=1)
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    color: Optional[str] = Field(None, max_length=20)
    milestone_id: Optional[int] = None


class CardResponse(BaseModel):
    """Card with its derived state."""

    id: int
    project_id: int
    milestone_id: Optional[int] = None
    title: str
    description: Optional[str] = None
    color: Optional[str] = None
    created_by: int
    version: int
    state: CardState
    task_count: int = 0
    completed_count: int = 0

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# Milestone Schemas

class MilestoneCreate(BaseModel):
    """Schema for creating a milestone."""

    project_id: int
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None


class MilestoneActivate(BaseModel):
    """Schema for activating a milestone."""

    project_id: int


class MilestoneResponse(BaseModel):
    """Schema for milestone responses."""

    id: int
    project_id: int
    name: str
    description: Optional[str] = None
    state: MilestoneState
    position: int
    created_by: int
    created_at: datetime
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class MilestoneActivationResponse(BaseModel):
    """Activated milestone plus the work it released."""

    milestone: MilestoneResponse
    cards_released: int
    tasks_released: int


# Rule Schemas

class RuleMatchRequest(BaseModel):
    """A transition to find matching rules for."""

    resource_type: ResourceType
    to_state: str
    project_id: int
    org_id: int
    task_type_id: Optional[int] = None


class RuleResponse(BaseModel):
    """Schema for rule responses."""

    id: int
    workflow_id: int
    name: str
    goal: Optional[str] = None
    resource_type: ResourceType
    task_type_id: Optional[int] = None
    to_state: str
    active: bool
    user_triggered_only: bool

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class RuleExecuteRequest(BaseModel):
    """Execute a rule against one origin."""

    origin_type: ResourceType
    origin_id: int
    is_user_triggered: bool = True


class ReevaluateRequest(BaseModel):
    """Re-dispatch the transition implied by an origin's current state."""

    origin_type: ResourceType
    origin_id: int


class RuleExecutionResponse(BaseModel):
    """A ledger row."""

    id: int
    rule_id: int
    origin_type: ResourceType
    origin_id: int
    outcome: ExecutionOutcome
    suppression_reason: Optional[SuppressionReason] = None
    user_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class RuleExecutionListResponse(BaseModel):
    """Paginated ledger rows of one rule."""

    items: list[RuleExecutionResponse]
    total: int
    limit: int
    offset: int


class RuleMetricsResponse(BaseModel):
    """Execution counts of one rule."""

    rule_id: int
    rule_name: str
    active: bool
    evaluated: int
    applied: int
    suppressed: int
    suppressed_by_reason: dict[str, int] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class WorkflowMetricsResponse(BaseModel):
    """Execution counts rolled up per workflow."""

    workflow_id: int
    workflow_name: str
    project_id: Optional[int] = None
    rule_count: int
    evaluated: int
    applied: int
    suppressed: int

    model_config = ConfigDict(from_attributes=True)
