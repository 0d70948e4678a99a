"""create_records_and_attachments

Revision ID: 20261019_1200_create_records
Revises:
Create Date: 2026-10-19 12:00:00

Adds: records, attachments, orphan_sweep_reports tables
Purpose: Venue records with photo attachment metadata; blob bytes live in the blob store
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261019_1200_create_records'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """
    Create records, attachments and orphan_sweep_reports.

    Features:
    - rating constrained to 1..5
    - attachments.parent_id indexed for per-record listing and scoped deletes
    """
    op.create_table(
        'records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('rating', sa.Integer(), nullable=False),
        sa.Column('genre', sa.String(length=100), nullable=False),
        sa.Column('memo', sa.Text(), nullable=True),
        sa.Column('external_link_url', sa.String(length=2048), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='VISITED'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('rating BETWEEN 1 AND 5', name='ck_records_rating_range'),
    )
    op.create_index('ix_records_id', 'records', ['id'])
    op.create_index('ix_records_name', 'records', ['name'])
    op.create_index('ix_records_genre', 'records', ['genre'])
    op.create_index('ix_records_status', 'records', ['status'])

    op.create_table(
        'attachments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('parent_id', sa.Integer(), nullable=False),
        sa.Column('location', sa.String(length=1024), nullable=False),
        sa.Column('caption', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['parent_id'], ['records.id'], ),
    )
    op.create_index('ix_attachments_id', 'attachments', ['id'])
    op.create_index('ix_attachments_parent_id', 'attachments', ['parent_id'])

    op.create_table(
        'orphan_sweep_reports',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('blobs_checked', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('orphans_found', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('orphans_deleted', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('dangling_rows', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='running'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )


def downgrade() -> None:
    """
    Drop all three tables (children first).
    """
    op.drop_table('orphan_sweep_reports')
    op.drop_index('ix_attachments_parent_id', table_name='attachments')
    op.drop_index('ix_attachments_id', table_name='attachments')
    op.drop_table('attachments')
    op.drop_index('ix_records_status', table_name='records')
    op.drop_index('ix_records_genre', table_name='records')
    op.drop_index('ix_records_name', table_name='records')
    op.drop_index('ix_records_id', table_name='records')
    op.drop_table('records')
