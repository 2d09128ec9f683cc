"""Add payroll integrity tables

Revision ID: 20261018_0900
Revises:
Create Date: 2026-10-18 09:00:00.000000

This migration creates the payroll integrity schema:
- staff_identities: hashed staff identities with encrypted name/DOB
- payroll_batches: uploaded batches with aggregates and ledger proof
- payroll_records: screened payroll lines
- payroll_flags: detector findings awaiting review (append-only)
- ledger_receipts: Soroban transactions and their reconciled status
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision = '20261018_0900'
down_revision = None
branch_labels = None
depends_on = None


def table_exists(table_name: str) -> bool:
    """Check if a table exists."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    return table_name in inspector.get_table_names()


def timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # ===========================================
    # STAFF IDENTITIES
    # ===========================================
    if not table_exists('staff_identities'):
        op.create_table('staff_identities',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('identity_hash', sa.String(64), nullable=False, comment='SHA-256 of name|dob|bvn|nin'),
            sa.Column('bvn_hash', sa.String(64), nullable=False),
            sa.Column('nin_hash', sa.String(64), nullable=False),
            sa.Column('phone_hash', sa.String(64), nullable=True),

            # PII (AES-256-GCM)
            sa.Column('name_encrypted', sa.Text, nullable=False),
            sa.Column('dob_encrypted', sa.Text, nullable=False),

            # Employment
            sa.Column('staff_number', sa.String(30), nullable=True, comment='Format: PG/YYYY/NNNN'),
            sa.Column('grade', sa.String(50), nullable=True),
            sa.Column('department', sa.String(100), nullable=True),
            sa.Column('position', sa.String(100), nullable=True),
            sa.Column('employment_type', sa.Enum('PERMANENT', 'CONTRACT', 'TEMPORARY', name='employmenttype'), nullable=False),
            sa.Column('hire_date', sa.Date, nullable=True),

            sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column('verified', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('ledger_tx_hashes', sa.JSON, nullable=False),
            *timestamps(),
            sa.UniqueConstraint('identity_hash', name='uq_staff_identities_identity_hash'),
            sa.UniqueConstraint('staff_number', name='uq_staff_identities_staff_number'),
        )
        op.create_index('ix_staff_identities_identity_hash', 'staff_identities', ['identity_hash'])
        op.create_index('ix_staff_identities_bvn_hash', 'staff_identities', ['bvn_hash'])
        op.create_index('ix_staff_identities_nin_hash', 'staff_identities', ['nin_hash'])
        op.create_index('ix_staff_identities_phone_hash', 'staff_identities', ['phone_hash'])
        op.create_index('ix_staff_identities_grade', 'staff_identities', ['grade'])
        op.create_index('ix_staff_identities_department', 'staff_identities', ['department'])
        op.create_index('ix_staff_identities_verified_active', 'staff_identities', ['verified', 'is_active'])

    # ===========================================
    # PAYROLL BATCHES
    # ===========================================
    if not table_exists('payroll_batches'):
        op.create_table('payroll_batches',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('batch_hash', sa.String(64), nullable=False, comment='SHA-256 of raw uploaded content'),
            sa.Column('period_month', sa.Integer, nullable=False),
            sa.Column('period_year', sa.Integer, nullable=False),
            sa.Column('uploaded_by_id', UUID(as_uuid=True), nullable=True),
            sa.Column('total_amount', sa.Numeric(18, 2), nullable=False, server_default='0'),
            sa.Column('record_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('flagged_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('status', sa.Enum('PROCESSING', 'VERIFIED', 'FAILED', name='batchstatus'), nullable=False),
            sa.Column('ledger_tx_hash', sa.String(64), nullable=True),
            sa.Column('ledger_error', sa.Text, nullable=True),
            sa.Column('detection_summary', sa.JSON, nullable=True),
            sa.Column('summary_text', sa.Text, nullable=True),
            *timestamps(),
            sa.UniqueConstraint('batch_hash', name='uq_payroll_batches_batch_hash'),
        )
        op.create_index('ix_payroll_batches_batch_hash', 'payroll_batches', ['batch_hash'])
        op.create_index('ix_payroll_batches_status', 'payroll_batches', ['status'])

    # ===========================================
    # PAYROLL RECORDS
    # ===========================================
    if not table_exists('payroll_records'):
        op.create_table('payroll_records',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('batch_id', UUID(as_uuid=True), sa.ForeignKey('payroll_batches.id', ondelete='CASCADE'), nullable=False),
            sa.Column('position', sa.Integer, nullable=False, comment='Row order within the uploaded file'),
            sa.Column('identity_hash', sa.String(64), nullable=False),
            sa.Column('amount', sa.Numeric(18, 2), nullable=False),
            sa.Column('status', sa.Enum('PENDING', 'VERIFIED', 'FLAGGED', 'REJECTED', name='recordstatus'), nullable=False),
            sa.Column('flag_ids', sa.JSON, nullable=False),
            *timestamps(),
            sa.UniqueConstraint('batch_id', 'position', name='uq_payroll_record_position'),
        )
        op.create_index('ix_payroll_records_batch_id', 'payroll_records', ['batch_id'])
        op.create_index('ix_payroll_records_identity_hash', 'payroll_records', ['identity_hash'])

    # ===========================================
    # FLAGS
    # ===========================================
    if not table_exists('payroll_flags'):
        op.create_table('payroll_flags',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('batch_id', UUID(as_uuid=True), sa.ForeignKey('payroll_batches.id', ondelete='RESTRICT'), nullable=False),
            sa.Column('identity_hash', sa.String(64), nullable=False),
            sa.Column('flag_type', sa.Enum('GHOST', 'MISSING_REGISTRY', 'DUPLICATE', 'SALARY_ANOMALY', name='flagtype'), nullable=False),
            sa.Column('score', sa.Float, nullable=False, comment='Confidence 0-1'),
            sa.Column('reason', sa.Text, nullable=False),
            sa.Column('explanation', sa.Text, nullable=False),
            sa.Column('metadata', sa.JSON, nullable=False),

            # Review
            sa.Column('reviewed', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('resolution', sa.Enum('PENDING', 'CONFIRMED', 'FALSE_POSITIVE', name='flagresolution'), nullable=False),
            sa.Column('reviewed_by_id', UUID(as_uuid=True), nullable=True),
            sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('resolution_notes', sa.Text, nullable=True),
            *timestamps(),
        )
        op.create_index('ix_payroll_flags_batch_id', 'payroll_flags', ['batch_id'])
        op.create_index('ix_payroll_flags_identity_hash', 'payroll_flags', ['identity_hash'])
        op.create_index('ix_payroll_flags_batch_type', 'payroll_flags', ['batch_id', 'flag_type'])

    # ===========================================
    # LEDGER RECEIPTS
    # ===========================================
    if not table_exists('ledger_receipts'):
        op.create_table('ledger_receipts',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('tx_hash', sa.String(64), nullable=False),
            sa.Column('ledger_sequence', sa.Integer, nullable=True, comment='Unknown until confirmation'),
            sa.Column('status', sa.Enum('SUCCESS', 'FAILED', 'UNKNOWN_PENDING', name='receiptstatus'), nullable=False),
            sa.Column('subject_type', sa.Enum('STAFF', 'BATCH', name='ledgersubject'), nullable=False),
            sa.Column('subject_hash', sa.String(64), nullable=False),
            sa.Column('operation', sa.Enum('REGISTER_STAFF', 'REVOKE_STAFF', 'RECORD_PAYROLL_BATCH', name='ledgeroperation'), nullable=False),
            sa.Column('poll_attempts', sa.Integer, nullable=False, server_default='0'),
            sa.Column('last_error', sa.Text, nullable=True),
            sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
            *timestamps(),
            sa.UniqueConstraint('tx_hash', name='uq_ledger_receipts_tx_hash'),
        )
        op.create_index('ix_ledger_receipts_tx_hash', 'ledger_receipts', ['tx_hash'])
        op.create_index('ix_ledger_receipts_status', 'ledger_receipts', ['status'])
        op.create_index('ix_ledger_receipts_subject_hash', 'ledger_receipts', ['subject_hash'])
        op.create_index('ix_ledger_receipts_subject', 'ledger_receipts', ['subject_type', 'subject_hash'])

    # ===========================================
    # ACTIVITY LOG
    # ===========================================
    if not table_exists('activity_logs'):
        op.create_table('activity_logs',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('actor_id', UUID(as_uuid=True), nullable=True),
            sa.Column('action', sa.Enum(
                'PAYROLL_UPLOADED', 'PAYROLL_DISCARDED', 'BLOCKCHAIN_TX_RECORDED', 'BLOCKCHAIN_TX_FAILED',
                'STAFF_REGISTERED', 'STAFF_DEACTIVATED', name='activityaction'), nullable=False),
            sa.Column('entity_type', sa.Enum('PAYROLL', 'STAFF', 'BLOCKCHAIN', name='activityentitytype'), nullable=False),
            sa.Column('entity_id', sa.String(100), nullable=False, comment='Batch id, identity hash or transaction hash'),
            sa.Column('status', sa.Enum('SUCCESS', 'FAILED', name='activitystatus'), nullable=False),
            sa.Column('metadata', sa.JSON, nullable=False),
            sa.Column('error_message', sa.Text, nullable=True),
            *timestamps(),
        )
        op.create_index('ix_activity_logs_actor_id', 'activity_logs', ['actor_id'])
        op.create_index('ix_activity_logs_action', 'activity_logs', ['action'])
        op.create_index('ix_activity_logs_entity', 'activity_logs', ['entity_type', 'entity_id'])


def downgrade() -> None:
    op.drop_table('activity_logs')
    op.drop_table('ledger_receipts')
    op.drop_table('payroll_flags')
    op.drop_table('payroll_records')
    op.drop_table('payroll_batches')
    op.drop_table('staff_identities')

    for enum_name in (
        'activitystatus', 'activityentitytype', 'activityaction',
        'ledgeroperation', 'ledgersubject', 'receiptstatus', 'flagresolution',
        'flagtype', 'recordstatus', 'batchstatus', 'employmenttype',
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
