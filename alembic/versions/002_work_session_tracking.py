"""Work session heartbeats and accumulated work time.

Revision ID: 002
Revises: 001
Create Date: 2026-10-17

Open sessions carry a heartbeat so abandoned ones can be closed with
ended_reason 'stale_timeout'. Closed session durations are summed per
(user, task) in work_totals.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Existing sessions take their start time as the last heartbeat
    with op.batch_alter_table('work_sessions') as batch_op:
        batch_op.add_column(sa.Column('last_heartbeat_at', sa.DateTime(timezone=True), nullable=True))
    op.execute("UPDATE work_sessions SET last_heartbeat_at = COALESCE(ended_at, started_at)")
    with op.batch_alter_table('work_sessions') as batch_op:
        batch_op.alter_column('last_heartbeat_at', existing_type=sa.DateTime(timezone=True), nullable=False)

    op.create_index(
        'ix_work_sessions_open_heartbeat',
        'work_sessions',
        ['last_heartbeat_at'],
        postgresql_where=sa.text('ended_at IS NULL'),
        sqlite_where=sa.text('ended_at IS NULL'),
    )

    op.create_table(
        'work_totals',
        sa.Column('user_id', sa.Integer, primary_key=True),
        sa.Column('task_id', sa.Integer, sa.ForeignKey('tasks.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('accumulated_s', sa.Integer, nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('accumulated_s >= 0', name='work_totals_accumulated_nonnegative'),
    )
    op.create_index('ix_work_totals_task_id', 'work_totals', ['task_id'])

    # Backfill totals from sessions closed before this revision
    if op.get_bind().dialect.name == 'postgresql':
        seconds = "EXTRACT(EPOCH FROM (ended_at - started_at))"
    else:
        seconds = "(julianday(ended_at) - julianday(started_at)) * 86400"
    op.execute(
        f"""
        INSERT INTO work_totals (user_id, task_id, accumulated_s, updated_at)
        SELECT user_id, task_id, CAST(SUM({seconds}) AS INTEGER), CURRENT_TIMESTAMP
        FROM work_sessions
        WHERE ended_at IS NOT NULL
        GROUP BY user_id, task_id
        """
    )


def downgrade() -> None:
    op.drop_index('ix_work_totals_task_id', table_name='work_totals')
    op.drop_table('work_totals')
    op.drop_index('ix_work_sessions_open_heartbeat', table_name='work_sessions')
    with op.batch_alter_table('work_sessions') as batch_op:
        batch_op.drop_column('last_heartbeat_at')
