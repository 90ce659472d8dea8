"""initial deposit ledger schema

Revision ID: g0001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates the complete gemach schema from scratch:
- locations, payment_methods, location_payment_methods: sites and fee schedule
- users, session_tokens: staff accounts and bearer sessions
- inventory_items: per-location, per-color counters (never negative)
- transactions: loans, with the pay-later card sub-state
- payments: charge / refund / hold ledger in cents
- audit_logs: append-only compliance trail
- webhook_events: provider event dedupe
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'g0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                     server_default=sa.text('CURRENT_TIMESTAMP'))


def upgrade():
    # ============================================================================
    # locations
    # ============================================================================
    op.create_table(
        'locations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('location_code', sa.String(length=32), nullable=False),
        sa.Column('contact_person', sa.String(length=255), nullable=True),
        sa.Column('address', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=64), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('deposit_amount', sa.Integer(), nullable=False, server_default='20'),
        sa.Column('payment_methods', sa.JSON(), nullable=False),
        sa.Column('processing_fee_bps', sa.Integer(), nullable=False, server_default='300'),
        sa.Column('operator_pin_hash', sa.String(length=255), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('location_code', name='uq_locations_code'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_locations_location_code', 'locations', ['location_code'])
    op.create_index('ix_locations_is_active', 'locations', ['is_active'])

    # ============================================================================
    # payment_methods / location_payment_methods
    # ============================================================================
    op.create_table(
        'payment_methods',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=32), nullable=False),
        sa.Column('display_name', sa.String(length=64), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('is_available_to_locations', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('processing_fee_bps', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('fixed_fee_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('requires_api', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('is_configured', sa.Boolean(), nullable=False, server_default='0'),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name', name='uq_payment_methods_name'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'location_payment_methods',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('location_id', sa.Integer(), nullable=False),
        sa.Column('payment_method_id', sa.Integer(), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('custom_processing_fee_bps', sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['location_id'], ['locations.id'], ),
        sa.ForeignKeyConstraint(['payment_method_id'], ['payment_methods.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('location_id', 'payment_method_id', name='uq_location_payment_method'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_location_payment_methods_location_id', 'location_payment_methods', ['location_id'])
    op.create_index('ix_location_payment_methods_payment_method_id', 'location_payment_methods', ['payment_method_id'])

    # ============================================================================
    # users / session_tokens
    # ============================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False, server_default='operator'),
        sa.Column('location_id', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        _created_at(),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['location_id'], ['locations.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username', name='uq_users_username'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_users_username', 'users', ['username'])
    op.create_index('ix_users_location_id', 'users', ['location_id'])

    op.create_table(
        'session_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(length=255), nullable=False),
        _created_at(),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('user_agent', sa.String(length=255), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('is_revoked', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_reason', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token_hash'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_session_tokens_user_id', 'session_tokens', ['user_id'])
    op.create_index('ix_session_tokens_token_hash', 'session_tokens', ['token_hash'])
    op.create_index('ix_session_tokens_expires_at', 'session_tokens', ['expires_at'])
    op.create_index('ix_session_tokens_user_active', 'session_tokens', ['user_id', 'is_revoked'])

    # ============================================================================
    # inventory_items: quantity >= 0 enforced by the database too
    # ============================================================================
    op.create_table(
        'inventory_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('location_id', sa.Integer(), nullable=False),
        sa.Column('color', sa.String(length=16), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['location_id'], ['locations.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('location_id', 'color', name='uq_inventory_location_color'),
        sa.CheckConstraint('quantity >= 0', name='ck_inventory_quantity_non_negative'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_inventory_items_location_id', 'inventory_items', ['location_id'])

    # ============================================================================
    # transactions
    # ============================================================================
    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('location_id', sa.Integer(), nullable=False),
        sa.Column('borrower_name', sa.String(length=255), nullable=False),
        sa.Column('borrower_email', sa.String(length=255), nullable=True),
        sa.Column('borrower_phone', sa.String(length=64), nullable=True),
        sa.Column('headband_color', sa.String(length=16), nullable=True),
        sa.Column('deposit_amount', sa.Numeric(10, 2), nullable=False, server_default='20.00'),
        sa.Column('deposit_payment_method', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('is_returned', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('borrow_date', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('expected_return_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_return_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refund_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('pay_later_status', sa.String(length=32), nullable=True),
        sa.Column('amount_planned_cents', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='usd'),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_setup_intent_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_payment_method_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('charge_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('charge_error_code', sa.String(length=64), nullable=True),
        sa.Column('charge_error_message', sa.String(length=255), nullable=True),
        sa.Column('status_token_hash', sa.String(length=64), nullable=True),
        sa.Column('status_token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['location_id'], ['locations.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_transactions_location_id', 'transactions', ['location_id'])
    op.create_index('ix_transactions_is_returned', 'transactions', ['is_returned'])
    op.create_index('ix_transactions_location_returned', 'transactions', ['location_id', 'is_returned'])
    op.create_index('ix_transactions_pay_later_status', 'transactions', ['pay_later_status'])
    op.create_index('ix_transactions_stripe_setup_intent_id', 'transactions', ['stripe_setup_intent_id'])
    op.create_index('ix_transactions_stripe_payment_intent_id', 'transactions', ['stripe_payment_intent_id'])

    # ============================================================================
    # payments: charge / refund / hold ledger
    # ============================================================================
    # WHY unique refund_of_payment_id: a charge can be refunded at most once,
    # even when two refund requests race.
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('transaction_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False, server_default='charge'),
        sa.Column('payment_method', sa.String(length=32), nullable=False),
        sa.Column('payment_provider', sa.String(length=32), nullable=True),
        sa.Column('external_payment_id', sa.String(length=255), nullable=True),
        sa.Column('deposit_amount_cents', sa.Integer(), nullable=False),
        sa.Column('processing_fee_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_amount_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('payment_data', sa.JSON(), nullable=True),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        _created_at(),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retry_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refund_of_payment_id', sa.Integer(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['transaction_id'], ['transactions.id'], ),
        sa.ForeignKeyConstraint(['refund_of_payment_id'], ['payments.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('refund_of_payment_id', name='uq_payments_refund_of'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_payments_transaction_id', 'payments', ['transaction_id'])
    op.create_index('ix_payments_kind', 'payments', ['kind'])
    op.create_index('ix_payments_payment_method', 'payments', ['payment_method'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_created_at', 'payments', ['created_at'])
    op.create_index('ix_payments_status_next_retry', 'payments', ['status', 'next_retry_at'])
    op.create_index('ix_payments_provider_external', 'payments', ['payment_provider', 'external_payment_id'])

    # ============================================================================
    # audit_logs / webhook_events
    # ============================================================================
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        sa.Column('actor_type', sa.String(length=16), nullable=False, server_default='system'),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('before_json', sa.JSON(), nullable=True),
        sa.Column('after_json', sa.JSON(), nullable=True),
        sa.Column('metadata_json', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(length=255), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['actor_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_audit_logs_actor_user_id', 'audit_logs', ['actor_user_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])
    op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity_type', 'entity_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=True),
        sa.Column('external_payment_id', sa.String(length=255), nullable=True),
        sa.Column('source', sa.String(length=32), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_events_provider_event'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_webhook_events_external_payment_id', 'webhook_events', ['external_payment_id'])


def downgrade():
    op.drop_table('webhook_events')
    op.drop_table('audit_logs')
    op.drop_table('payments')
    op.drop_table('transactions')
    op.drop_table('inventory_items')
    op.drop_table('session_tokens')
    op.drop_table('users')
    op.drop_table('location_payment_methods')
    op.drop_table('payment_methods')
    op.drop_table('locations')
