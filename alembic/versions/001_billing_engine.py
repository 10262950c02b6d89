"""Add invoice, invoice job, billing adjustment and audit log tables.

Revision ID: 001
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'invoices',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('stripe_invoice_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('total_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('line_items', sa.JSON(), nullable=True),
        sa.Column('hosted_invoice_url', sa.String(1024), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('payment_retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_invoices_tenant_period', 'invoices', ['tenant_id', 'period_start', 'period_end']
    )
    op.create_index(
        'uq_invoices_tenant_period_active',
        'invoices',
        ['tenant_id', 'period_start', 'period_end'],
        unique=True,
        postgresql_where=sa.text("status <> 'failed'"),
    )

    op.create_table(
        'invoice_jobs',
        sa.Column('job_id', sa.String(64), nullable=False),
        sa.Column('trigger', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('total_tenants', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_tenants', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful_invoices', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_invoices', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped_tenants', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tenant_outcomes', sa.JSON(), nullable=False),
        sa.Column('errors', sa.JSON(), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('job_id'),
    )
    op.create_index('ix_invoice_jobs_status', 'invoice_jobs', ['status'])
    op.create_index(
        'ix_invoice_jobs_status_period', 'invoice_jobs', ['status', 'period_start', 'period_end']
    )

    op.create_table(
        'billing_adjustments',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('adjustment_type', sa.String(30), nullable=False),
        sa.Column('value', sa.Numeric(12, 4), nullable=False),
        sa.Column('valid_from', sa.Date(), nullable=False),
        sa.Column('valid_until', sa.Date(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_billing_adjustments_tenant_id', 'billing_adjustments', ['tenant_id'])

    op.create_table(
        'audit_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('details', postgresql.JSONB(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])


def downgrade() -> None:
    op.drop_index('ix_audit_logs_timestamp', table_name='audit_logs')
    op.drop_index('ix_audit_logs_action', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('ix_billing_adjustments_tenant_id', table_name='billing_adjustments')
    op.drop_table('billing_adjustments')
    op.drop_index('ix_invoice_jobs_status_period', table_name='invoice_jobs')
    op.drop_index('ix_invoice_jobs_status', table_name='invoice_jobs')
    op.drop_table('invoice_jobs')
    op.drop_index('uq_invoices_tenant_period_active', table_name='invoices')
    op.drop_index('ix_invoices_tenant_period', table_name='invoices')
    op.drop_table('invoices')
