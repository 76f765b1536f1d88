"""SQLAlchemy database models."""
from datetime import datetime, timezone
import enum

from sqlalchemy import (
    Column,
    String,
    Text,
    Integer,
    DateTime,
    ForeignKey,
    Enum,
    CheckConstraint,
    Boolean,
    UniqueConstraint,
    Index,
    text,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime:
    """Timezone-aware current time used for every timestamp column."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a timestamp read back without its zone (SQLite)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _enum_column(enum_cls, **kwargs) -> Column:
    # Use values_callable to serialize enum values (lowercase) instead of names (UPPERCASE)
    return Column(
        Enum(enum_cls, values_callable=lambda obj: [e.value for e in obj], native_enum=False, length=32),
        **kwargs,
    )


class TaskStatus(str, enum.Enum):
    """Task lifecycle status.

    available -> claimed -> completed, with release back to available.
    """

    AVAILABLE = "available"
    CLAIMED = "claimed"
    COMPLETED = "completed"


class MilestoneState(str, enum.Enum):
    """Milestone lifecycle state.

    ready -> active -> completed, with completed -> active on re-open.
    """

    READY = "ready"
    ACTIVE = "active"
    COMPLETED = "completed"


class CardState(str, enum.Enum):
    """Derived card state (never stored)."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ResourceType(str, enum.Enum):
    """Resources whose transitions can trigger rules."""

    TASK = "task"
    CARD = "card"


class ExecutionOutcome(str, enum.Enum):
    """Outcome recorded in the rule execution ledger."""

    APPLIED = "applied"
    SUPPRESSED = "suppressed"


class SuppressionReason(str, enum.Enum):
    """Why a matched rule did not apply."""

    IDEMPOTENT = "idempotent"
    NOT_USER_TRIGGERED = "not_user_triggered"
    NOT_MATCHING = "not_matching"
    INACTIVE = "inactive"


class TaskEventType(str, enum.Enum):
    """Audit events written on every task transition."""

    TASK_CREATED = "task_created"
    TASK_CLAIMED = "task_claimed"
    TASK_RELEASED = "task_released"
    TASK_COMPLETED = "task_completed"


class SessionEndReason(str, enum.Enum):
    """Why a work session was closed."""

    USER_PAUSE = "user_pause"
    TASK_COMPLETED = "task_completed"
    TASK_RELEASED = "task_released"
    STALE_TIMEOUT = "stale_timeout"


# =============================================================================
# Tenancy
# =============================================================================


class Organization(Base):
    """Tenant owning projects, workflows and task templates."""

    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    projects = relationship("Project", back_populates="organization", cascade="all, delete-orphan")


class Project(Base):
    """Project row; also the lock target for milestone activation."""

    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    org_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    organization = relationship("Organization", back_populates="projects")


class TaskType(Base):
    """Project-scoped task type (e.g. Bug, Feature)."""

    __tablename__ = "task_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    icon = Column(String(100), nullable=False, default="task")

    __table_args__ = (
        UniqueConstraint("project_id", "name", name="uq_task_types_project_name"),
    )


# =============================================================================
# Cards, milestones and tasks
# =============================================================================


class Milestone(Base):
    """Ordered delivery slice of a project.

    At most one milestone per project may be active; the partial unique index
    backs up the locked check performed at activation time.
    """

    __tablename__ = "milestones"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    state = _enum_column(MilestoneState, nullable=False, default=MilestoneState.READY)
    position = Column(Integer, nullable=False, default=0)
    created_by = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint(
            "(state = 'ready' AND activated_at IS NULL AND completed_at IS NULL)"
            " OR (state = 'active' AND activated_at IS NOT NULL AND completed_at IS NULL)"
            " OR (state = 'completed' AND activated_at IS NOT NULL AND completed_at IS NOT NULL)",
            name="milestones_state_activation_consistency",
        ),
        Index(
            "uq_milestones_one_active",
            "project_id",
            unique=True,
            postgresql_where=text("state = 'active'"),
            sqlite_where=text("state = 'active'"),
        ),
        Index("ix_milestones_project_state_position", "project_id", "state", "position"),
    )


class Card(Base):
    """Loose grouping of tasks; its state is derived from the tasks it holds."""

    __tablename__ = "cards"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    milestone_id = Column(Integer, ForeignKey("milestones.id"), nullable=True, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    color = Column(String(20), nullable=True)
    created_by = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    tasks = relationship("Task", back_populates="card")


class Task(Base):
    """Unit of claimable work.

    Every write is a compare-and-swap on ``version``; see versioning.py.
    """

    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    card_id = Column(Integer, ForeignKey("cards.id"), nullable=True, index=True)
    milestone_id = Column(Integer, ForeignKey("milestones.id"), nullable=True, index=True)
    type_id = Column(Integer, ForeignKey("task_types.id"), nullable=False)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(Integer, nullable=False, default=3)
    status = _enum_column(TaskStatus, nullable=False, default=TaskStatus.AVAILABLE, index=True)

    created_by = Column(Integer, nullable=False)
    claimed_by = Column(Integer, nullable=True, index=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)

    created_from_rule_id = Column(Integer, ForeignKey("rules.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    card = relationship("Card", back_populates="tasks")
    task_type = relationship("TaskType")

    __table_args__ = (
        CheckConstraint("priority BETWEEN 1 AND 5", name="tasks_priority_range"),
        CheckConstraint("card_id IS NULL OR milestone_id IS NULL", name="task_milestone_exclusive"),
        CheckConstraint("(claimed_by IS NULL) = (claimed_at IS NULL)", name="tasks_claim_fields_paired"),
        CheckConstraint("status != 'available' OR claimed_by IS NULL", name="tasks_available_unclaimed"),
        CheckConstraint("status != 'claimed' OR claimed_by IS NOT NULL", name="tasks_claimed_has_claimant"),
        Index("ix_tasks_project_milestone_status", "project_id", "milestone_id", "status"),
        Index("ix_tasks_card_status", "card_id", "status"),
    )


class WorkSession(Base):
    """Time-tracking session; an open session marks the task as ongoing."""

    __tablename__ = "work_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    last_heartbeat_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    ended_reason = _enum_column(SessionEndReason, nullable=True)

    __table_args__ = (
        # Max one open session per task (not per user)
        Index(
            "uq_work_sessions_open_task",
            "task_id",
            unique=True,
            postgresql_where=text("ended_at IS NULL"),
            sqlite_where=text("ended_at IS NULL"),
        ),
        Index(
            "ix_work_sessions_open_heartbeat",
            "last_heartbeat_at",
            postgresql_where=text("ended_at IS NULL"),
            sqlite_where=text("ended_at IS NULL"),
        ),
    )


class WorkTotal(Base):
    """Seconds a user has worked on a task, summed over closed sessions."""

    __tablename__ = "work_totals"

    user_id = Column(Integer, primary_key=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True, index=True)
    accumulated_s = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("accumulated_s >= 0", name="work_totals_accumulated_nonnegative"),
    )


class TaskDependency(Base):
    """Directed edge: ``task_id`` depends on ``depends_on_task_id``."""

    __tablename__ = "task_dependencies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    depends_on_task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    created_by = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("task_id", "depends_on_task_id", name="uq_task_dependency"),
        CheckConstraint("task_id != depends_on_task_id", name="no_self_dependency"),
    )


class TaskEvent(Base):
    """Append-only audit of task transitions, read by reporting."""

    __tablename__ = "task_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    org_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    actor_user_id = Column(Integer, nullable=True)
    event_type = _enum_column(TaskEventType, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_task_events_project_created_at", "project_id", "created_at"),
        Index("ix_task_events_task_created_at", "task_id", "created_at"),
    )


# =============================================================================
# Workflows, rules and templates
# =============================================================================


class Workflow(Base):
    """Toggleable container of rules; ``project_id`` NULL means org-wide."""

    __tablename__ = "workflows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    org_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    active = Column(Boolean, nullable=False, default=False)
    created_by = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    rules = relationship("Rule", back_populates="workflow", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("org_id", "project_id", "name", name="uq_workflows_scope_name"),
    )


class Rule(Base):
    """Trigger predicate: when ``resource_type`` reaches ``to_state``, fire."""

    __tablename__ = "rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    goal = Column(Text, nullable=True)
    resource_type = _enum_column(ResourceType, nullable=False)
    task_type_id = Column(Integer, ForeignKey("task_types.id"), nullable=True)
    to_state = Column(String(32), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    # Rules default to firing on direct human action only
    user_triggered_only = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    workflow = relationship("Workflow", back_populates="rules")


class TaskTemplate(Base):
    """Blueprint for a task created by rule automation."""

    __tablename__ = "task_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    org_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    type_id = Column(Integer, ForeignKey("task_types.id"), nullable=False)
    priority = Column(Integer, nullable=False, default=3)
    created_by = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("priority BETWEEN 1 AND 5", name="task_templates_priority_range"),
    )


class RuleTemplate(Base):
    """Rule -> template attachment with an execution order."""

    __tablename__ = "rule_templates"

    rule_id = Column(Integer, ForeignKey("rules.id", ondelete="CASCADE"), primary_key=True)
    template_id = Column(Integer, ForeignKey("task_templates.id", ondelete="CASCADE"), primary_key=True)
    execution_order = Column(Integer, nullable=False, default=0)

    template = relationship("TaskTemplate")


class RuleExecution(Base):
    """Idempotency and audit record, one row per (rule, origin). Never updated."""

    __tablename__ = "rule_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(Integer, ForeignKey("rules.id", ondelete="CASCADE"), nullable=False, index=True)
    origin_type = _enum_column(ResourceType, nullable=False)
    origin_id = Column(Integer, nullable=False)
    outcome = _enum_column(ExecutionOutcome, nullable=False)
    suppression_reason = _enum_column(SuppressionReason, nullable=True)
    user_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("rule_id", "origin_type", "origin_id", name="uq_rule_executions_origin"),
        Index("ix_rule_executions_origin", "origin_type", "origin_id"),
    )
