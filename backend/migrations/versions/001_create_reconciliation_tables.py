"""Create reconciliation tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'payment_events' not in existing_tables:
        op.create_table(
            'payment_events',
            sa.Column('delivery_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('invoice_id', sa.String(length=255), nullable=True),
            sa.Column('store_id', sa.String(length=255), nullable=True),
            sa.Column('raw_payload', sa.Text(), nullable=False),
            sa.Column('processed', sa.Boolean(), nullable=False),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('delivery_id')
        )
        op.create_index('ix_payment_events_event_type', 'payment_events', ['event_type'])
        op.create_index('ix_payment_events_invoice_id', 'payment_events', ['invoice_id'])
        op.create_index('ix_payment_events_processed_received', 'payment_events', ['processed', 'received_at'])
        op.create_index('ix_payment_events_invoice_received', 'payment_events', ['invoice_id', 'received_at'])

    if 'invoice_aggregates' not in existing_tables:
        op.create_table(
            'invoice_aggregates',
            sa.Column('invoice_id', sa.String(length=255), nullable=False),
            sa.Column('store_id', sa.String(length=255), nullable=True),
            sa.Column('order_id', sa.String(length=255), nullable=True),
            sa.Column('invoice_amount', sa.Numeric(20, 8), nullable=True),
            sa.Column('currency', sa.String(length=10), nullable=True),
            sa.Column('paid_amount', sa.Numeric(20, 8), nullable=False),
            sa.Column('payment_count', sa.Integer(), nullable=False),
            sa.Column('payments', sa.JSON(), nullable=False),
            sa.Column('upstream_status', sa.String(length=50), nullable=True),
            sa.Column('additional_status', sa.String(length=50), nullable=True),
            sa.Column('reconciliation_status', sa.String(length=20), nullable=False),
            sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('invoice_id')
        )
        op.create_index('ix_invoice_aggregates_store_id', 'invoice_aggregates', ['store_id'])
        op.create_index('ix_invoice_aggregates_reconciliation_status', 'invoice_aggregates', ['reconciliation_status'])

    if 'reconciliation_outcomes' not in existing_tables:
        op.create_table(
            'reconciliation_outcomes',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('invoice_id', sa.String(length=255), nullable=False),
            sa.Column('reconciliation_status', sa.String(length=20), nullable=False),
            sa.Column('idempotency_key', sa.String(length=300), nullable=False),
            sa.Column('ledger_mode', sa.String(length=30), nullable=False),
            sa.Column('ledger_object_id', sa.String(length=255), nullable=True),
            sa.Column('reconciled_amount', sa.Numeric(20, 8), nullable=True),
            sa.Column('outcome', sa.String(length=30), nullable=False),
            sa.Column('error_detail', sa.Text(), nullable=True),
            sa.Column('attempt_count', sa.Integer(), nullable=False),
            sa.Column('attempted_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_reconciliation_outcomes_id', 'reconciliation_outcomes', ['id'])
        op.create_index('ix_reconciliation_outcomes_invoice_id', 'reconciliation_outcomes', ['invoice_id'])
        op.create_index('ix_reconciliation_outcomes_idempotency_key', 'reconciliation_outcomes', ['idempotency_key'])
        # One success per idempotency key
        op.create_index(
            'uq_reconciliation_outcomes_success_key',
            'reconciliation_outcomes',
            ['idempotency_key'],
            unique=True,
            sqlite_where=sa.text("outcome = 'success'"),
            postgresql_where=sa.text("outcome = 'success'")
        )

    if 'dispatch_states' not in existing_tables:
        op.create_table(
            'dispatch_states',
            sa.Column('invoice_id', sa.String(length=255), nullable=False),
            sa.Column('state', sa.String(length=30), nullable=False),
            sa.Column('target_status', sa.String(length=20), nullable=True),
            sa.Column('attempts', sa.Integer(), nullable=False),
            sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('last_error', sa.Text(), nullable=True),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('invoice_id')
        )
        op.create_index('ix_dispatch_states_state_next', 'dispatch_states', ['state', 'next_attempt_at'])

    if 'webhook_configs' not in existing_tables:
        op.create_table(
            'webhook_configs',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('webhook_id', sa.String(length=255), nullable=False),
            sa.Column('store_id', sa.String(length=255), nullable=False),
            sa.Column('url', sa.Text(), nullable=False),
            sa.Column('secret', sa.Text(), nullable=False),
            sa.Column('events', sa.JSON(), nullable=False),
            sa.Column('active', sa.Boolean(), nullable=False),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('webhook_id', name='uq_webhook_configs_webhook_id')
        )
        op.create_index('ix_webhook_configs_id', 'webhook_configs', ['id'])
        op.create_index('ix_webhook_configs_store_id', 'webhook_configs', ['store_id'])

    if 'ledger_credentials' not in existing_tables:
        op.create_table(
            'ledger_credentials',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('backend', sa.String(length=50), nullable=False),
            sa.Column('realm_id', sa.String(length=100), nullable=True),
            sa.Column('access_token', sa.Text(), nullable=False),
            sa.Column('refresh_token', sa.Text(), nullable=True),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('refresh_expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('backend', name='uq_ledger_credentials_backend')
        )
        op.create_index('ix_ledger_credentials_id', 'ledger_credentials', ['id'])

    if 'system_settings' not in existing_tables:
        op.create_table(
            'system_settings',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('key', sa.String(length=100), nullable=False),
            sa.Column('value', sa.Text(), nullable=False),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('key', name='uq_system_settings_key')
        )
        op.create_index('ix_system_settings_id', 'system_settings', ['id'])
        op.create_index('ix_system_settings_key', 'system_settings', ['key'])


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    for table in (
        'system_settings', 'ledger_credentials', 'webhook_configs', 'dispatch_states',
        'reconciliation_outcomes', 'invoice_aggregates', 'payment_events'
    ):
        if table in existing_tables:
            op.drop_table(table)
