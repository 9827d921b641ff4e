"""Create billing core tables

Revision ID: 0001_billing_core
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_billing_core'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


LIVE_STATUS_CLAUSE = "status IN ('active', 'payment_processing')"


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Create plans, subscribers, subscriptions, usage, upgrade and webhook tables."""

    op.create_table(
        'plans',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('jurisdiction', sa.String(2), nullable=False, index=True),
        sa.Column('description', sa.Text),
        sa.Column('monthly_price', sa.Float, server_default='0', nullable=False),
        sa.Column('yearly_price', sa.Float, server_default='0', nullable=False),

        # NULL means unlimited
        sa.Column('consultation_limit', sa.Integer),
        sa.Column('document_analysis_limit', sa.Integer),
        sa.Column('message_limit', sa.Integer),
        sa.Column('is_unlimited', sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False),

        # Stripe references
        sa.Column('external_product_id', sa.String(255)),
        sa.Column('external_price_id_monthly', sa.String(255)),
        sa.Column('external_price_id_yearly', sa.String(255)),
        sa.Column('features', sa.JSON),
        *_timestamps(),
        sa.UniqueConstraint('name', 'jurisdiction', name='uq_plans_name_jurisdiction'),
    )

    op.create_table(
        'subscribers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('phone', sa.String(20), nullable=False, unique=True, index=True),
        sa.Column('name', sa.String(255)),
        sa.Column('jurisdiction', sa.String(2), nullable=False, index=True),
        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('subscriber_id', sa.String(36), sa.ForeignKey('subscribers.id'), nullable=False, index=True),
        sa.Column('plan_id', sa.String(36), sa.ForeignKey('plans.id'), nullable=False),
        sa.Column('plan_name', sa.String(100)),
        sa.Column('jurisdiction', sa.String(2), nullable=False),
        sa.Column('status', sa.String(20), server_default='active', nullable=False, index=True),
        sa.Column('billing_cycle', sa.String(10), server_default='monthly', nullable=False),

        # Half-open billing period [start, end)
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),

        # Stripe correlation
        sa.Column('external_subscription_id', sa.String(255), unique=True, index=True),
        sa.Column('external_customer_id', sa.String(255), index=True),
        sa.Column('sync_status', sa.String(10), server_default='synced', nullable=False, index=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True)),
        sa.Column('cancelled_at', sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index(
        'uq_subscriptions_one_active',
        'subscriptions',
        ['subscriber_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index(
        'ix_subscriptions_status_period_end',
        'subscriptions',
        ['status', 'current_period_end'],
    )

    op.create_table(
        'usage_periods',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('subscriptions.id'), nullable=False),
        sa.Column('subscriber_id', sa.String(36), sa.ForeignKey('subscribers.id'), nullable=False, index=True),
        sa.Column('jurisdiction', sa.String(2), nullable=False),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('consultations_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('document_analyses_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('messages_count', sa.Integer, server_default='0', nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            'subscription_id', 'period_start', 'period_end',
            name='uq_usage_periods_subscription_period',
        ),
    )

    op.create_table(
        'upgrade_sessions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('subscriber_id', sa.String(36), sa.ForeignKey('subscribers.id'), nullable=False, index=True),
        sa.Column('phone', sa.String(20)),
        sa.Column('jurisdiction', sa.String(2), nullable=False),
        sa.Column('plan_name', sa.String(100), nullable=False),
        sa.Column('billing_cycle', sa.String(10), server_default='monthly', nullable=False),
        sa.Column('amount', sa.Float, server_default='0', nullable=False),
        sa.Column('status', sa.String(20), server_default='active', nullable=False),
        sa.Column('current_step', sa.String(30), server_default='plan_selection', nullable=False),
        sa.Column('attempts_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True)),
        sa.Column('external_checkout_id', sa.String(255), index=True),
        sa.Column('checkout_url', sa.Text),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        'uq_upgrade_sessions_one_live',
        'upgrade_sessions',
        ['subscriber_id'],
        unique=True,
        postgresql_where=sa.text(LIVE_STATUS_CLAUSE),
    )
    op.create_index(
        'ix_upgrade_sessions_status_expires_at',
        'upgrade_sessions',
        ['status', 'expires_at'],
    )

    op.create_table(
        'upgrade_attempts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('upgrade_sessions.id'), nullable=False, index=True),
        sa.Column('step', sa.String(30), nullable=False),
        sa.Column('success', sa.Boolean, nullable=False),
        sa.Column('error_message', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'processed_webhook_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column(
            'processed_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
    )
    # Index for cleanup queries (delete events older than X days)
    op.create_index(
        'ix_processed_webhook_events_processed_at',
        'processed_webhook_events',
        ['processed_at'],
    )

    # Atomic counters for the managed cloud store (called through PostgREST RPC)
    op.execute("""
        CREATE OR REPLACE FUNCTION increment_usage_counter(
            p_subscription_id text,
            p_period_start timestamptz,
            p_period_end timestamptz,
            p_counter text,
            p_amount integer
        ) RETURNS boolean
        LANGUAGE plpgsql
        AS $$
        DECLARE
            updated integer;
        BEGIN
            IF p_counter NOT IN ('consultations_count', 'document_analyses_count', 'messages_count') THEN
                RAISE EXCEPTION 'unknown usage counter %', p_counter;
            END IF;
            EXECUTE format(
                'UPDATE usage_periods SET %1$I = %1$I + $1, updated_at = now() '
                'WHERE subscription_id = $2 AND period_start = $3 AND period_end = $4',
                p_counter
            ) USING p_amount, p_subscription_id, p_period_start, p_period_end;
            GET DIAGNOSTICS updated = ROW_COUNT;
            RETURN updated > 0;
        END;
        $$
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION increment_upgrade_attempts(
            p_session_id text,
            p_attempted_at timestamptz
        ) RETURNS boolean
        LANGUAGE plpgsql
        AS $$
        DECLARE
            updated integer;
        BEGIN
            UPDATE upgrade_sessions
            SET attempts_count = attempts_count + 1,
                last_attempt_at = p_attempted_at,
                updated_at = now()
            WHERE id = p_session_id;
            GET DIAGNOSTICS updated = ROW_COUNT;
            RETURN updated > 0;
        END;
        $$
    """)


def downgrade() -> None:
    op.execute('DROP FUNCTION IF EXISTS increment_upgrade_attempts(text, timestamptz)')
    op.execute(
        'DROP FUNCTION IF EXISTS increment_usage_counter(text, timestamptz, timestamptz, text, integer)'
    )
    op.drop_index('ix_processed_webhook_events_processed_at', table_name='processed_webhook_events')
    op.drop_table('processed_webhook_events')
    op.drop_table('upgrade_attempts')
    op.drop_index('ix_upgrade_sessions_status_expires_at', table_name='upgrade_sessions')
    op.drop_index('uq_upgrade_sessions_one_live', table_name='upgrade_sessions')
    op.drop_table('upgrade_sessions')
    op.drop_table('usage_periods')
    op.drop_index('ix_subscriptions_status_period_end', table_name='subscriptions')
    op.drop_index('uq_subscriptions_one_active', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('subscribers')
    op.drop_table('plans')
