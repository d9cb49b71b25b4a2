"""Create workflow run and step record tables

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1b2c3d4e5f6'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create workflow_runs and step_records tables."""
    op.create_table(
        'workflow_runs',
        sa.Column('id', sa.String(255), nullable=False),
        sa.Column('workflow_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('context', sa.JSON(), nullable=True),
        sa.Column('reachable', sa.JSON(), nullable=True),
        sa.Column('completed', sa.JSON(), nullable=True),
        sa.Column('current_node_id', sa.String(255), nullable=True),
        sa.Column('failure', sa.JSON(), nullable=True),
        sa.Column('output', sa.JSON(), nullable=True),
        sa.Column('wake_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('trigger_type', sa.String(128), nullable=True),
        sa.Column('parent_run_id', sa.String(255), nullable=True),
        sa.Column('parent_node_id', sa.String(255), nullable=True),
        sa.Column('execution_stack', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_workflow_runs'),
    )
    op.create_index('ix_workflow_runs_workflow_id', 'workflow_runs', ['workflow_id'])
    op.create_index('ix_workflow_runs_status', 'workflow_runs', ['status'])
    op.create_index('ix_workflow_runs_parent_run_id', 'workflow_runs', ['parent_run_id'])
    op.create_index('ix_workflow_runs_status_wake_at', 'workflow_runs', ['status', 'wake_at'])

    op.create_table(
        'step_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.String(255), nullable=False),
        sa.Column('step_key', sa.Text(), nullable=False),
        sa.Column('kind', sa.String(16), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('wake_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ['run_id'],
            ['workflow_runs.id'],
            name='fk_step_records_run_id_workflow_runs',
            ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_step_records'),
        sa.UniqueConstraint('run_id', 'step_key', name='uq_step_records_run_id_step_key'),
    )


def downgrade() -> None:
    """Drop step_records and workflow_runs tables."""
    op.drop_table('step_records')
    op.drop_index('ix_workflow_runs_status_wake_at', table_name='workflow_runs')
    op.drop_index('ix_workflow_runs_parent_run_id', table_name='workflow_runs')
    op.drop_index('ix_workflow_runs_status', table_name='workflow_runs')
    op.drop_index('ix_workflow_runs_workflow_id', table_name='workflow_runs')
    op.drop_table('workflow_runs')
