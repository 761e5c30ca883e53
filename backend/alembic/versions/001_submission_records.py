"""Submission records

Revision ID: 001_submission_records
Revises: 
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_submission_records'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # One record per submitted file
    op.create_table(
        'submission_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('file_path', sa.String(1024), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=True),
        sa.Column('invoice_number', sa.String(100), nullable=True),
        sa.Column('uuid', sa.String(64), nullable=True),
        sa.Column('submission_uid', sa.String(64), nullable=True),
        sa.Column('long_id', sa.String(128), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='Pending'),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('error_details', postgresql.JSONB(), nullable=True),
        sa.Column('date_submitted', sa.DateTime(timezone=True), nullable=True),
        sa.Column('date_cancelled', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('file_path', name='uq_submission_records_file_path'),
    )
    op.create_index('ix_submission_records_submission_uid', 'submission_records', ['submission_uid'])
    op.create_index('ix_submission_records_uuid', 'submission_records', ['uuid'])
    op.create_index('ix_submission_records_invoice_number', 'submission_records', ['invoice_number'])
    op.create_index('ix_submission_records_status', 'submission_records', ['status'])


def downgrade() -> None:
    op.drop_index('ix_submission_records_status', table_name='submission_records')
    op.drop_index('ix_submission_records_invoice_number', table_name='submission_records')
    op.drop_index('ix_submission_records_uuid', table_name='submission_records')
    op.drop_index('ix_submission_records_submission_uid', table_name='submission_records')
    op.drop_table('submission_records')
