"""Initial migration - create transaction store, ledger, manual links, recovery plans and history tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Contact directory
    op.create_table(
        'contacts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('name_key', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_contacts_name_key', 'contacts', ['name_key'])
    op.create_index('ix_contacts_email', 'contacts', ['email'])

    # Transaction store, one row per provider UID
    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('uid', sa.String(36), nullable=False),
        sa.Column('tracking_id', sa.String(255), nullable=True),
        sa.Column('amount', sa.Numeric(14, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('status', sa.String(64), nullable=True),
        sa.Column('normalized_status', sa.String(20), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=True),
        sa.Column('occurred_at', sa.DateTime(), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('card_holder', sa.String(255), nullable=True),
        sa.Column('card_holder_key', sa.String(255), nullable=True),
        sa.Column('card_last4', sa.String(4), nullable=True),
        sa.Column('card_brand', sa.String(50), nullable=True),
        sa.Column('card_bank', sa.String(255), nullable=True),
        sa.Column('card_bank_country', sa.String(8), nullable=True),
        sa.Column('customer_name', sa.String(255), nullable=True),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('customer_phone', sa.String(64), nullable=True),
        sa.Column('customer_ip', sa.String(64), nullable=True),
        sa.Column('customer_country', sa.String(8), nullable=True),
        sa.Column('customer_city', sa.String(255), nullable=True),
        sa.Column('source_channel', sa.String(20), nullable=False),
        sa.Column('observed_channels_json', sa.Text(), nullable=True),
        sa.Column('raw_payload_json', sa.Text(), nullable=True),
        sa.Column('contact_id', sa.String(36), sa.ForeignKey('contacts.id'), nullable=True),
        sa.Column('match_type', sa.String(20), nullable=False, server_default='none'),
        sa.Column('match_low_confidence', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancel_reason', sa.Text(), nullable=True),
        sa.Column('ingested_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_transactions_uid', 'transactions', ['uid'], unique=True)
    op.create_index('ix_transactions_tracking_id', 'transactions', ['tracking_id'])
    op.create_index('ix_transactions_normalized_status', 'transactions', ['normalized_status'])
    op.create_index('ix_transactions_occurred_at', 'transactions', ['occurred_at'])
    op.create_index('ix_transactions_customer_email', 'transactions', ['customer_email'])
    op.create_index('ix_transactions_match_type', 'transactions', ['match_type'])
    op.create_index('ix_transactions_card_holder_key', 'transactions', ['card_holder_key'])

    # Manual contact links
    op.create_table(
        'manual_links',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('key', sa.String(255), nullable=False),
        sa.Column('contact_id', sa.String(36), sa.ForeignKey('contacts.id'), nullable=False),
        sa.Column('source_uid', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('kind', 'key', name='uq_manual_links_kind_key'),
    )
    op.create_index('ix_manual_links_contact_id', 'manual_links', ['contact_id'])

    # Order / payment ledger
    op.create_table(
        'orders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_number', sa.String(64), nullable=True),
        sa.Column('contact_id', sa.String(36), sa.ForeignKey('contacts.id'), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('provider_uid', sa.String(36), nullable=True),
        sa.Column('amount', sa.Numeric(14, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_provider_uid', 'orders', ['provider_uid'])

    op.create_table(
        'payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('contact_id', sa.String(36), sa.ForeignKey('contacts.id'), nullable=True),
        sa.Column('provider_uid', sa.String(36), nullable=True),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_payments_provider_uid', 'payments', ['provider_uid'])
    op.create_index('ix_payments_order_id', 'payments', ['order_id'])
    op.create_index('ix_payments_paid_at', 'payments', ['paid_at'])

    # Recovery plan tokens
    op.create_table(
        'recovery_plans',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('state', sa.String(20), nullable=False),
        sa.Column('params_json', sa.Text(), nullable=True),
        sa.Column('candidates_json', sa.Text(), nullable=True),
        sa.Column('fingerprint', sa.String(64), nullable=True),
        sa.Column('stop_reason', sa.Text(), nullable=True),
        sa.Column('result_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('executed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_recovery_plans_expires_at', 'recovery_plans', ['expires_at'])

    # Status transition audit trail
    op.create_table(
        'transaction_history',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('transaction_id', sa.String(36), sa.ForeignKey('transactions.id'), nullable=False),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('previous_status', sa.String(20), nullable=True),
        sa.Column('new_status', sa.String(20), nullable=False),
        sa.Column('source_channel', sa.String(20), nullable=True),
        sa.Column('plan_id', sa.String(36), nullable=True),
        sa.Column('detail_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_transaction_history_transaction_id', 'transaction_history', ['transaction_id'])
    op.create_index('ix_transaction_history_action', 'transaction_history', ['action'])
    op.create_index('ix_transaction_history_created_at', 'transaction_history', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_transaction_history_created_at', table_name='transaction_history')
    op.drop_index('ix_transaction_history_action', table_name='transaction_history')
    op.drop_index('ix_transaction_history_transaction_id', table_name='transaction_history')
    op.drop_table('transaction_history')

    op.drop_index('ix_recovery_plans_expires_at', table_name='recovery_plans')
    op.drop_table('recovery_plans')

    op.drop_index('ix_payments_paid_at', table_name='payments')
    op.drop_index('ix_payments_order_id', table_name='payments')
    op.drop_index('ix_payments_provider_uid', table_name='payments')
    op.drop_table('payments')

    op.drop_index('ix_orders_provider_uid', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_table('orders')

    op.drop_index('ix_manual_links_contact_id', table_name='manual_links')
    op.drop_table('manual_links')

    for name in (
        'ix_transactions_card_holder_key',
        'ix_transactions_match_type',
        'ix_transactions_customer_email',
        'ix_transactions_occurred_at',
        'ix_transactions_normalized_status',
        'ix_transactions_tracking_id',
        'ix_transactions_uid',
    ):
        op.drop_index(name, table_name='transactions')
    op.drop_table('transactions')

    op.drop_index('ix_contacts_email', table_name='contacts')
    op.drop_index('ix_contacts_name_key', table_name='contacts')
    op.drop_table('contacts')
