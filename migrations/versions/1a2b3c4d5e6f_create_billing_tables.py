"""Create claims, payments, billing settings and audit tables

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-19 11:30:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '1a2b3c4d5e6f'
down_revision = None
branch_labels = None
depends_on = None


def _address_columns(prefix):
    return [
        sa.Column(f'{prefix}street', sa.String(length=255), nullable=True),
        sa.Column(f'{prefix}city', sa.String(length=100), nullable=True),
        sa.Column(f'{prefix}state', sa.String(length=2), nullable=True),
        sa.Column(f'{prefix}zip_code', sa.String(length=10), nullable=True),
    ]


def _person_columns(prefix):
    return [
        sa.Column(f'{prefix}_last_name', sa.String(length=100), nullable=True),
        sa.Column(f'{prefix}_first_name', sa.String(length=100), nullable=True),
        sa.Column(f'{prefix}_middle_initial', sa.String(length=5), nullable=True),
        sa.Column(f'{prefix}_date_of_birth', sa.String(length=255), nullable=True),  # encrypted
        sa.Column(f'{prefix}_sex', sa.String(length=1), nullable=True),
        *_address_columns(f'{prefix}_'),
        sa.Column(f'{prefix}_phone', sa.String(length=20), nullable=True),
    ]


def _billing_provider_columns():
    return [
        sa.Column('billing_provider_name', sa.String(length=200), nullable=True),
        *_address_columns('billing_provider_'),
        sa.Column('billing_provider_phone', sa.String(length=20), nullable=True),
        sa.Column('billing_provider_npi', sa.String(length=10), nullable=True),
        sa.Column('billing_provider_tax_id', sa.String(length=20), nullable=True),
        sa.Column('billing_provider_tax_id_type', sa.String(length=3), nullable=True),
    ]


def upgrade():
    op.create_table('claims',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('claim_id', sa.String(length=64), nullable=False),
        sa.Column('claim_number', sa.String(length=50), nullable=False),
        sa.Column('location_id', sa.String(length=100), nullable=False),
        sa.Column('patient_id', sa.String(length=100), nullable=True),
        sa.Column('appointment_id', sa.String(length=100), nullable=True),
        *_person_columns('patient'),
        *_person_columns('insured'),
        sa.Column('relationship_to_insured', sa.String(length=20), nullable=True),
        sa.Column('insurance_type', sa.String(length=20), nullable=True),
        sa.Column('insured_member_id', sa.String(length=255), nullable=True),  # encrypted
        sa.Column('policy_group_number', sa.String(length=100), nullable=True),
        sa.Column('insurance_plan_name', sa.String(length=200), nullable=True),
        sa.Column('payer_id', sa.String(length=64), nullable=True),
        sa.Column('diagnosis_codes', sa.JSON(), nullable=False),
        sa.Column('prior_authorization_number', sa.String(length=100), nullable=True),
        sa.Column('patient_account_number', sa.String(length=100), nullable=True),
        sa.Column('accept_assignment', sa.Boolean(), nullable=False),
        sa.Column('signature_on_file', sa.Boolean(), nullable=False),
        sa.Column('total_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('paid_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        *_billing_provider_columns(),
        sa.Column('facility_name', sa.String(length=200), nullable=True),
        *_address_columns('facility_'),
        sa.Column('facility_npi', sa.String(length=10), nullable=True),
        sa.Column('rendering_provider_npi', sa.String(length=10), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('clearinghouse_reference_number', sa.String(length=100), nullable=True),
        sa.Column('submitted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('paid_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_claims')),
        sa.UniqueConstraint('location_id', 'claim_number', name='uq_claims_location_claim_number'),
    )
    op.create_index(op.f('ix_claims_id'), 'claims', ['id'], unique=False)
    op.create_index(op.f('ix_claims_claim_id'), 'claims', ['claim_id'], unique=True)
    op.create_index(op.f('ix_claims_location_id'), 'claims', ['location_id'], unique=False)
    op.create_index(op.f('ix_claims_patient_id'), 'claims', ['patient_id'], unique=False)
    op.create_index(op.f('ix_claims_appointment_id'), 'claims', ['appointment_id'], unique=False)
    op.create_index(op.f('ix_claims_payer_id'), 'claims', ['payer_id'], unique=False)
    op.create_index(op.f('ix_claims_status'), 'claims', ['status'], unique=False)
    op.create_index(op.f('ix_claims_created_at'), 'claims', ['created_at'], unique=False)

    op.create_table('claim_line_items',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('claim_db_id', sa.Integer(), nullable=False),
        sa.Column('line_number', sa.Integer(), nullable=False),
        sa.Column('service_date', sa.Date(), nullable=False),
        sa.Column('service_date_to', sa.Date(), nullable=True),
        sa.Column('place_of_service', sa.String(length=2), nullable=True),
        sa.Column('procedure_code', sa.String(length=20), nullable=True),
        sa.Column('modifiers', sa.JSON(), nullable=False),
        sa.Column('diagnosis_pointer', sa.Integer(), nullable=False),
        sa.Column('units', sa.Integer(), nullable=False),
        sa.Column('charge_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('rendering_provider_npi', sa.String(length=10), nullable=True),
        sa.ForeignKeyConstraint(['claim_db_id'], ['claims.id'], name=op.f('fk_claim_line_items_claim_db_id_claims')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_claim_line_items')),
        sa.UniqueConstraint('claim_db_id', 'line_number', name='uq_claimitem_claim_line'),
    )
    op.create_index(op.f('ix_claim_line_items_id'), 'claim_line_items', ['id'], unique=False)
    op.create_index(op.f('ix_claim_line_items_claim_db_id'), 'claim_line_items', ['claim_db_id'], unique=False)

    op.create_table('claim_status_history',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('claim_id', sa.String(length=64), nullable=False),
        sa.Column('location_id', sa.String(length=100), nullable=False),
        sa.Column('from_status', sa.String(length=20), nullable=True),
        sa.Column('to_status', sa.String(length=20), nullable=False),
        sa.Column('changed_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('user_id', sa.String(length=100), nullable=True),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_claim_status_history')),
    )
    op.create_index(op.f('ix_claim_status_history_id'), 'claim_status_history', ['id'], unique=False)
    op.create_index(op.f('ix_claim_status_history_claim_id'), 'claim_status_history', ['claim_id'], unique=False)
    op.create_index(op.f('ix_claim_status_history_location_id'), 'claim_status_history', ['location_id'], unique=False)

    op.create_table('payers',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('payer_id', sa.String(length=64), nullable=False),
        sa.Column('location_id', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_payers')),
        sa.UniqueConstraint('location_id', 'payer_id', name='uq_payers_location_payer'),
    )
    op.create_index(op.f('ix_payers_id'), 'payers', ['id'], unique=False)
    op.create_index(op.f('ix_payers_payer_id'), 'payers', ['payer_id'], unique=False)
    op.create_index(op.f('ix_payers_location_id'), 'payers', ['location_id'], unique=False)

    op.create_table('insurance_payments',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('payment_id', sa.String(length=64), nullable=False),
        sa.Column('location_id', sa.String(length=100), nullable=False),
        sa.Column('payment_date', sa.Date(), nullable=False),
        sa.Column('payer_id', sa.String(length=64), nullable=False),
        sa.Column('payment_method', sa.String(length=20), nullable=False),
        sa.Column('payment_number', sa.String(length=100), nullable=True),
        sa.Column('total_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('client_id', sa.String(length=100), nullable=False),
        sa.Column('created_by', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_insurance_payments')),
        sa.UniqueConstraint('location_id', 'payment_id', name='uq_payments_location_payment'),
    )
    op.create_index(op.f('ix_insurance_payments_id'), 'insurance_payments', ['id'], unique=False)
    op.create_index(op.f('ix_insurance_payments_payment_id'), 'insurance_payments', ['payment_id'], unique=False)
    op.create_index(op.f('ix_insurance_payments_location_id'), 'insurance_payments', ['location_id'], unique=False)
    op.create_index(op.f('ix_insurance_payments_payer_id'), 'insurance_payments', ['payer_id'], unique=False)
    op.create_index(op.f('ix_insurance_payments_client_id'), 'insurance_payments', ['client_id'], unique=False)
    op.create_index(op.f('ix_insurance_payments_created_at'), 'insurance_payments', ['created_at'], unique=False)

    op.create_table('payment_allocations',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('payment_db_id', sa.Integer(), nullable=False),
        sa.Column('line_number', sa.Integer(), nullable=False),
        sa.Column('invoice_ref', sa.String(length=100), nullable=False),
        sa.Column('ref_type', sa.String(length=20), nullable=False, server_default='invoice'),
        sa.Column('claim_id', sa.String(length=64), nullable=True),
        sa.Column('billed_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('insurance_paid', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('write_off', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('client_owes', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('idempotency_key', sa.String(length=200), nullable=False),
        sa.Column('sync_status', sa.String(length=20), nullable=False),
        sa.Column('sync_error', sa.Text(), nullable=True),
        sa.Column('synced_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['payment_db_id'], ['insurance_payments.id'],
                                name=op.f('fk_payment_allocations_payment_db_id_insurance_payments')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_payment_allocations')),
        sa.UniqueConstraint('payment_db_id', 'invoice_ref', name='uq_allocation_payment_invoice'),
    )
    op.create_index(op.f('ix_payment_allocations_id'), 'payment_allocations', ['id'], unique=False)
    op.create_index(op.f('ix_payment_allocations_payment_db_id'), 'payment_allocations', ['payment_db_id'], unique=False)
    op.create_index(op.f('ix_payment_allocations_invoice_ref'), 'payment_allocations', ['invoice_ref'], unique=False)
    op.create_index(op.f('ix_payment_allocations_claim_id'), 'payment_allocations', ['claim_id'], unique=False)
    op.create_index(op.f('ix_payment_allocations_idempotency_key'), 'payment_allocations', ['idempotency_key'], unique=False)
    op.create_index(op.f('ix_payment_allocations_sync_status'), 'payment_allocations', ['sync_status'], unique=False)

    op.create_table('location_billing_settings',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('location_id', sa.String(length=100), nullable=False),
        sa.Column('default_procedure_code', sa.String(length=20), nullable=True),
        sa.Column('default_session_fee', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('default_place_of_service', sa.String(length=2), nullable=True),
        sa.Column('default_modifier', sa.String(length=2), nullable=True),
        *_billing_provider_columns(),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_location_billing_settings')),
    )
    op.create_index(op.f('ix_location_billing_settings_id'), 'location_billing_settings', ['id'], unique=False)
    op.create_index(op.f('ix_location_billing_settings_location_id'), 'location_billing_settings', ['location_id'], unique=True)

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('timestamp', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('location_id', sa.String(length=100), nullable=True),
        sa.Column('user_id', sa.String(length=100), nullable=True),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('resource', sa.String(length=255), nullable=True),
        sa.Column('resource_id', sa.String(length=255), nullable=True),
        sa.Column('patient_id_hash', sa.String(length=255), nullable=True),
        sa.Column('ip_address', sa.String(length=100), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_audit_logs')),
    )
    op.create_index(op.f('ix_audit_logs_id'), 'audit_logs', ['id'], unique=False)
    op.create_index(op.f('ix_audit_logs_timestamp'), 'audit_logs', ['timestamp'], unique=False)
    op.create_index(op.f('ix_audit_logs_location_id'), 'audit_logs', ['location_id'], unique=False)
    op.create_index(op.f('ix_audit_logs_user_id'), 'audit_logs', ['user_id'], unique=False)
    op.create_index(op.f('ix_audit_logs_action'), 'audit_logs', ['action'], unique=False)
    op.create_index(op.f('ix_audit_logs_resource'), 'audit_logs', ['resource'], unique=False)
    op.create_index(op.f('ix_audit_logs_resource_id'), 'audit_logs', ['resource_id'], unique=False)
    op.create_index(op.f('ix_audit_logs_patient_id_hash'), 'audit_logs', ['patient_id_hash'], unique=False)


def downgrade():
    op.drop_table('audit_logs')
    op.drop_table('location_billing_settings')
    op.drop_table('payment_allocations')
    op.drop_table('insurance_payments')
    op.drop_table('payers')
    op.drop_table('claim_status_history')
    op.drop_table('claim_line_items')
    op.drop_table('claims')
