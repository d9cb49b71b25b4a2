"""Add run lease column

Revision ID: b7c8d9e0f1a2
Revises: a1b2c3d4e5f6
Create Date: 2026-10-18 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b7c8d9e0f1a2'
down_revision = 'a1b2c3d4e5f6'
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Add workflow_runs.lease_expires_at."""
    op.add_column(
        'workflow_runs',
        sa.Column('lease_expires_at', sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    """Drop workflow_runs.lease_expires_at."""
    op.drop_column('workflow_runs', 'lease_expires_at')
