"""Create lineage_records table.

Revision ID: 001
Revises: 
Create Date: 2026-10-18 09:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create lineage_records table and its indexes."""
    op.create_table(
        'lineage_records',
        sa.Column('root_id', sa.String(length=128), nullable=False),
        sa.Column('node_id', sa.String(length=128), nullable=False),
        sa.Column('parent_id', sa.String(length=128), nullable=True),
        sa.Column('action_taken', sa.String(length=255), nullable=False),
        sa.Column('record', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='{}'),
        sa.Column('recorded_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('ttl_expiry', sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint('root_id', 'node_id'),
    )

    # Node index: resolve a node's tree without knowing its root
    op.create_index('ix_lineage_records_node_id', 'lineage_records', ['node_id'])

    # Action index within a tree
    op.create_index('ix_lineage_records_root_action', 'lineage_records', ['root_id', 'action_taken'])

    # Expiry sweep
    op.create_index('ix_lineage_records_ttl_expiry', 'lineage_records', ['ttl_expiry'])


def downgrade() -> None:
    """Drop lineage_records table."""
    op.drop_index('ix_lineage_records_ttl_expiry', table_name='lineage_records')
    op.drop_index('ix_lineage_records_root_action', table_name='lineage_records')
    op.drop_index('ix_lineage_records_node_id', table_name='lineage_records')
    op.drop_table('lineage_records')
