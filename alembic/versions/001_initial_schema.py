"""Initial schema: tenancy, tasks, milestones, workflows and rule ledger.

Revision ID: 001
Revises:
Create Date: 2026-10-17

Enum columns are stored as VARCHAR(32) holding the lowercase enum values,
matching models._enum_column (native_enum=False).
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    kwargs = {'server_default': sa.func.now()} if not nullable else {}
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, **kwargs)


def upgrade() -> None:
    # Tenancy
    op.create_table(
        'organizations',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(200), nullable=False),
        _timestamp('created_at'),
    )

    op.create_table(
        'projects',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('org_id', sa.Integer, sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        _timestamp('created_at'),
    )
    op.create_index('ix_projects_org_id', 'projects', ['org_id'])

    op.create_table(
        'task_types',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('project_id', sa.Integer, sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('icon', sa.String(100), nullable=False, server_default='task'),
        sa.UniqueConstraint('project_id', 'name', name='uq_task_types_project_name'),
    )
    op.create_index('ix_task_types_project_id', 'task_types', ['project_id'])

    # Workflows and rules (tasks reference rules through created_from_rule_id)
    op.create_table(
        'workflows',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('org_id', sa.Integer, sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('project_id', sa.Integer, sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('active', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_by', sa.Integer, nullable=False),
        _timestamp('created_at'),
        sa.UniqueConstraint('org_id', 'project_id', 'name', name='uq_workflows_scope_name'),
    )
    op.create_index('ix_workflows_org_id', 'workflows', ['org_id'])
    op.create_index('ix_workflows_project_id', 'workflows', ['project_id'])

    op.create_table(
        'rules',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('workflow_id', sa.Integer, sa.ForeignKey('workflows.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('goal', sa.Text),
        sa.Column('resource_type', sa.String(32), nullable=False),
        sa.Column('task_type_id', sa.Integer, sa.ForeignKey('task_types.id'), nullable=True),
        sa.Column('to_state', sa.String(32), nullable=False),
        sa.Column('active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('user_triggered_only', sa.Boolean, nullable=False, server_default=sa.true()),
        _timestamp('created_at'),
    )
    op.create_index('ix_rules_workflow_id', 'rules', ['workflow_id'])

    op.create_table(
        'task_templates',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('org_id', sa.Integer, sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('project_id', sa.Integer, sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('type_id', sa.Integer, sa.ForeignKey('task_types.id'), nullable=False),
        sa.Column('priority', sa.Integer, nullable=False, server_default='3'),
        sa.Column('created_by', sa.Integer, nullable=False),
        _timestamp('created_at'),
        sa.CheckConstraint('priority BETWEEN 1 AND 5', name='task_templates_priority_range'),
    )
    op.create_index('ix_task_templates_org_id', 'task_templates', ['org_id'])
    op.create_index('ix_task_templates_project_id', 'task_templates', ['project_id'])

    op.create_table(
        'rule_templates',
        sa.Column('rule_id', sa.Integer, sa.ForeignKey('rules.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('template_id', sa.Integer, sa.ForeignKey('task_templates.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('execution_order', sa.Integer, nullable=False, server_default='0'),
    )

    # Milestones and cards
    op.create_table(
        'milestones',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('project_id', sa.Integer, sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('state', sa.String(32), nullable=False, server_default='ready'),
        sa.Column('position', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_by', sa.Integer, nullable=False),
        _timestamp('created_at'),
        _timestamp('activated_at', nullable=True),
        _timestamp('completed_at', nullable=True),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.CheckConstraint(
            "(state = 'ready' AND activated_at IS NULL AND completed_at IS NULL)"
            " OR (state = 'active' AND activated_at IS NOT NULL AND completed_at IS NULL)"
            " OR (state = 'completed' AND activated_at IS NOT NULL AND completed_at IS NOT NULL)",
            name='milestones_state_activation_consistency'
        ),
    )
    op.create_index('ix_milestones_project_id', 'milestones', ['project_id'])
    op.create_index('ix_milestones_project_state_position', 'milestones', ['project_id', 'state', 'position'])
    # At most one active milestone per project
    op.create_index(
        'uq_milestones_one_active',
        'milestones',
        ['project_id'],
        unique=True,
        postgresql_where=sa.text("state = 'active'"),
        sqlite_where=sa.text("state = 'active'"),
    )

    op.create_table(
        'cards',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('project_id', sa.Integer, sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('milestone_id', sa.Integer, sa.ForeignKey('milestones.id'), nullable=True),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('color', sa.String(20)),
        sa.Column('created_by', sa.Integer, nullable=False),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        _timestamp('created_at'),
    )
    op.create_index('ix_cards_project_id', 'cards', ['project_id'])
    op.create_index('ix_cards_milestone_id', 'cards', ['milestone_id'])

    # Tasks
    op.create_table(
        'tasks',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('project_id', sa.Integer, sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('card_id', sa.Integer, sa.ForeignKey('cards.id'), nullable=True),
        sa.Column('milestone_id', sa.Integer, sa.ForeignKey('milestones.id'), nullable=True),
        sa.Column('type_id', sa.Integer, sa.ForeignKey('task_types.id'), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('priority', sa.Integer, nullable=False, server_default='3'),
        sa.Column('status', sa.String(32), nullable=False, server_default='available'),
        sa.Column('created_by', sa.Integer, nullable=False),
        sa.Column('claimed_by', sa.Integer, nullable=True),
        _timestamp('claimed_at', nullable=True),
        _timestamp('completed_at', nullable=True),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.Column('created_from_rule_id', sa.Integer, sa.ForeignKey('rules.id', ondelete='SET NULL'), nullable=True),
        _timestamp('created_at'),
        sa.CheckConstraint('priority BETWEEN 1 AND 5', name='tasks_priority_range'),
        sa.CheckConstraint('card_id IS NULL OR milestone_id IS NULL', name='task_milestone_exclusive'),
        sa.CheckConstraint('(claimed_by IS NULL) = (claimed_at IS NULL)', name='tasks_claim_fields_paired'),
        sa.CheckConstraint("status != 'available' OR claimed_by IS NULL", name='tasks_available_unclaimed'),
        sa.CheckConstraint("status != 'claimed' OR claimed_by IS NOT NULL", name='tasks_claimed_has_claimant'),
    )
    op.create_index('ix_tasks_project_id', 'tasks', ['project_id'])
    op.create_index('ix_tasks_card_id', 'tasks', ['card_id'])
    op.create_index('ix_tasks_milestone_id', 'tasks', ['milestone_id'])
    op.create_index('ix_tasks_status', 'tasks', ['status'])
    op.create_index('ix_tasks_claimed_by', 'tasks', ['claimed_by'])
    op.create_index('ix_tasks_created_from_rule_id', 'tasks', ['created_from_rule_id'])
    op.create_index('ix_tasks_project_milestone_status', 'tasks', ['project_id', 'milestone_id', 'status'])
    op.create_index('ix_tasks_card_status', 'tasks', ['card_id', 'status'])

    op.create_table(
        'work_sessions',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('task_id', sa.Integer, sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Integer, nullable=False),
        _timestamp('started_at'),
        _timestamp('ended_at', nullable=True),
        sa.Column('ended_reason', sa.String(32), nullable=True),
    )
    op.create_index('ix_work_sessions_task_id', 'work_sessions', ['task_id'])
    op.create_index('ix_work_sessions_user_id', 'work_sessions', ['user_id'])
    # Max one open session per task
    op.create_index(
        'uq_work_sessions_open_task',
        'work_sessions',
        ['task_id'],
        unique=True,
        postgresql_where=sa.text('ended_at IS NULL'),
        sqlite_where=sa.text('ended_at IS NULL'),
    )

    op.create_table(
        'task_dependencies',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('task_id', sa.Integer, sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('depends_on_task_id', sa.Integer, sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_by', sa.Integer, nullable=False),
        _timestamp('created_at'),
        sa.UniqueConstraint('task_id', 'depends_on_task_id', name='uq_task_dependency'),
        sa.CheckConstraint('task_id != depends_on_task_id', name='no_self_dependency'),
    )
    op.create_index('ix_task_dependencies_task_id', 'task_dependencies', ['task_id'])
    op.create_index('ix_task_dependencies_depends_on_task_id', 'task_dependencies', ['depends_on_task_id'])

    op.create_table(
        'task_events',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('org_id', sa.Integer, sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('project_id', sa.Integer, sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('task_id', sa.Integer, sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('actor_user_id', sa.Integer, nullable=True),
        sa.Column('event_type', sa.String(32), nullable=False),
        _timestamp('created_at'),
    )
    op.create_index('ix_task_events_project_created_at', 'task_events', ['project_id', 'created_at'])
    op.create_index('ix_task_events_task_created_at', 'task_events', ['task_id', 'created_at'])

    # Rule execution ledger
    op.create_table(
        'rule_executions',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('rule_id', sa.Integer, sa.ForeignKey('rules.id', ondelete='CASCADE'), nullable=False),
        sa.Column('origin_type', sa.String(32), nullable=False),
        sa.Column('origin_id', sa.Integer, nullable=False),
        sa.Column('outcome', sa.String(32), nullable=False),
        sa.Column('suppression_reason', sa.String(32), nullable=True),
        sa.Column('user_id', sa.Integer, nullable=True),
        _timestamp('created_at'),
        sa.UniqueConstraint('rule_id', 'origin_type', 'origin_id', name='uq_rule_executions_origin'),
    )
    op.create_index('ix_rule_executions_rule_id', 'rule_executions', ['rule_id'])
    op.create_index('ix_rule_executions_origin', 'rule_executions', ['origin_type', 'origin_id'])


def downgrade() -> None:
    op.drop_table('rule_executions')
    op.drop_table('task_events')
    op.drop_table('task_dependencies')
    op.drop_index('uq_work_sessions_open_task', table_name='work_sessions')
    op.drop_table('work_sessions')
    op.drop_table('tasks')
    op.drop_table('cards')
    op.drop_index('uq_milestones_one_active', table_name='milestones')
    op.drop_table('milestones')
    op.drop_table('rule_templates')
    op.drop_table('task_templates')
    op.drop_table('rules')
    op.drop_table('workflows')
    op.drop_table('task_types')
    op.drop_table('projects')
    op.drop_table('organizations')
