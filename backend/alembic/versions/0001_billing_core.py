"""Billing core tables

Revision ID: 0001_billing_core
Revises:
Create Date: 2026-10-16

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_billing_core'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def _jsonb(name: str) -> sa.Column:
    return sa.Column(
        name,
        postgresql.JSONB(),
        server_default=sa.text("'{}'::jsonb"),
        nullable=False,
    )


def upgrade() -> None:
    """Create boxes, plans, subscriptions and the billing audit tables."""

    op.create_table(
        'boxes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), server_default='', nullable=False),
        sa.Column('status', sa.String(20), server_default='active', nullable=False),

        # Subscription projection
        sa.Column('subscription_status', sa.String(30), server_default='trial'),
        sa.Column('subscription_tier', sa.String(20), server_default='seed', nullable=False),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True)),
        sa.Column('subscription_starts_at', sa.DateTime(timezone=True)),
        sa.Column('subscription_ends_at', sa.DateTime(timezone=True)),
        sa.Column('next_billing_date', sa.DateTime(timezone=True)),
        sa.Column('provider_subscription_id', sa.String(255)),
        sa.Column('provider_customer_id', sa.String(255)),

        # Usage projection
        sa.Column('is_overage_enabled', sa.Boolean, server_default='false', nullable=False),
        sa.Column('current_athlete_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('current_athlete_limit', sa.Integer, server_default='75', nullable=False),
        sa.Column('current_coach_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('current_coach_limit', sa.Integer, server_default='3', nullable=False),
        sa.Column('current_athlete_overage', sa.Integer, server_default='0', nullable=False),
        sa.Column('current_coach_overage', sa.Integer, server_default='0', nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_boxes_status', 'boxes', ['status'])
    op.create_index('ix_boxes_subscription_status', 'boxes', ['subscription_status'])
    op.create_index('ix_boxes_provider_subscription_id', 'boxes', ['provider_subscription_id'])
    op.create_index('ix_boxes_provider_customer_id', 'boxes', ['provider_customer_id'])

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tier', sa.String(20), nullable=False),
        sa.Column('name', sa.String(100), server_default='', nullable=False),
        sa.Column('athlete_limit', sa.Integer, nullable=False),
        sa.Column('coach_limit', sa.Integer, nullable=False),
        sa.Column('athlete_overage_price', sa.Integer),
        sa.Column('coach_overage_price', sa.Integer),
        sa.Column('monthly_price', sa.Integer, server_default='0', nullable=False),
        sa.Column('version', sa.Integer, server_default='1', nullable=False),
        sa.Column('is_current_version', sa.Boolean, server_default='true', nullable=False),
        sa.Column('provider_product_id', sa.String(255)),
        *_timestamps(),
    )
    op.create_index('ix_subscription_plans_tier', 'subscription_plans', ['tier'])
    op.create_index('ix_subscription_plans_provider_product_id', 'subscription_plans', ['provider_product_id'])
    op.create_index(
        'uq_subscription_plans_current_tier',
        'subscription_plans',
        ['tier'],
        unique=True,
        postgresql_where=sa.text('is_current_version'),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('box_id', sa.String(36), sa.ForeignKey('boxes.id'), nullable=False),

        # Provider IDs
        sa.Column('provider_subscription_id', sa.String(255), nullable=False),
        sa.Column('provider_customer_id', sa.String(255)),
        sa.Column('provider_product_id', sa.String(255)),

        # Subscription details
        sa.Column('plan_tier', sa.String(20), server_default='seed', nullable=False),
        sa.Column('status', sa.String(30), server_default='active', nullable=False),
        sa.Column('amount', sa.Integer),
        sa.Column('currency', sa.String(3), server_default='USD', nullable=False),

        # Billing period dates
        sa.Column('current_period_start', sa.DateTime(timezone=True)),
        sa.Column('current_period_end', sa.DateTime(timezone=True)),
        sa.Column('cancel_at_period_end', sa.Boolean, server_default='false', nullable=False),
        sa.Column('canceled_at', sa.DateTime(timezone=True)),
        sa.Column('cancel_reason', sa.String(255)),
        *_timestamps(),
    )
    op.create_index('ix_subscriptions_box_id', 'subscriptions', ['box_id'])
    op.create_index(
        'ix_subscriptions_provider_subscription_id',
        'subscriptions',
        ['provider_subscription_id'],
        unique=True,
    )
    op.create_index('ix_subscriptions_provider_customer_id', 'subscriptions', ['provider_customer_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])

    op.create_table(
        'grace_periods',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('box_id', sa.String(36), sa.ForeignKey('boxes.id'), nullable=False),
        sa.Column('reason', sa.String(50), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resolved', sa.Boolean, server_default='false', nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True)),
        sa.Column('resolution', sa.String(100)),
        sa.Column('resolved_by_user_id', sa.String(36)),
        sa.Column('auto_resolve', sa.Boolean, server_default='false', nullable=False),
        sa.Column('auto_resolved', sa.Boolean, server_default='false', nullable=False),
        sa.Column('custom_message', sa.Text),
        _jsonb('context_snapshot'),
        *_timestamps(),
    )
    op.create_index('ix_grace_periods_box_id', 'grace_periods', ['box_id'])
    op.create_index('ix_grace_periods_ends_at', 'grace_periods', ['ends_at'])
    op.create_index('ix_grace_periods_resolved', 'grace_periods', ['resolved'])
    # One open grace period per (box, reason)
    op.create_index(
        'uq_grace_periods_open_reason',
        'grace_periods',
        ['box_id', 'reason'],
        unique=True,
        postgresql_where=sa.text('resolved = false'),
    )

    op.create_table(
        'overage_billing_records',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('box_id', sa.String(36), sa.ForeignKey('boxes.id'), nullable=False),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('subscriptions.id'), nullable=False),
        sa.Column('billing_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('billing_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('athlete_limit', sa.Integer, nullable=False),
        sa.Column('coach_limit', sa.Integer, nullable=False),
        sa.Column('athlete_count', sa.Integer, nullable=False),
        sa.Column('coach_count', sa.Integer, nullable=False),
        sa.Column('athlete_overage', sa.Integer, server_default='0', nullable=False),
        sa.Column('coach_overage', sa.Integer, server_default='0', nullable=False),
        sa.Column('athlete_overage_rate', sa.Integer, nullable=False),
        sa.Column('coach_overage_rate', sa.Integer, nullable=False),
        sa.Column('athlete_overage_amount', sa.Integer, server_default='0', nullable=False),
        sa.Column('coach_overage_amount', sa.Integer, server_default='0', nullable=False),
        sa.Column('total_overage_amount', sa.Integer, server_default='0', nullable=False),
        sa.Column('status', sa.String(20), server_default='calculated', nullable=False),
        sa.Column('provider_invoice_id', sa.String(255)),
        sa.Column('paid_at', sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint(
            'box_id', 'billing_period_start', 'billing_period_end',
            name='uq_overage_billing_period',
        ),
    )
    op.create_index('ix_overage_billing_records_box_id', 'overage_billing_records', ['box_id'])
    op.create_index('ix_overage_billing_records_status', 'overage_billing_records', ['status'])

    op.create_table(
        'billing_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('box_id', sa.String(36)),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('provider_event_id', sa.String(255), nullable=False),
        _jsonb('data'),
        sa.Column('source', sa.String(50)),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('retry_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('max_retries', sa.Integer, server_default='3', nullable=False),
        sa.Column('next_retry_at', sa.DateTime(timezone=True)),
        sa.Column('processing_error', sa.Text),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True)),
        sa.Column('processed_at', sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index('ix_billing_events_box_id', 'billing_events', ['box_id'])
    # Idempotency key
    op.create_index(
        'ix_billing_events_provider_event_id',
        'billing_events',
        ['provider_event_id'],
        unique=True,
    )
    op.create_index('ix_billing_events_retry', 'billing_events', ['status', 'next_retry_at'])

    op.create_table(
        'usage_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('box_id', sa.String(36), sa.ForeignKey('boxes.id'), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('quantity', sa.Integer, server_default='1', nullable=False),
        sa.Column('billable', sa.Boolean, server_default='false', nullable=False),
        sa.Column('user_id', sa.String(36)),
        _jsonb('event_metadata'),
        sa.Column('billing_period_start', sa.DateTime(timezone=True)),
        sa.Column('billing_period_end', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_usage_events_box_id', 'usage_events', ['box_id'])
    op.create_index('ix_usage_events_event_type', 'usage_events', ['event_type'])

    op.create_table(
        'box_memberships',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('box_id', sa.String(36), sa.ForeignKey('boxes.id'), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('is_active', sa.Boolean, server_default='true', nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_box_memberships_box_id', 'box_memberships', ['box_id'])
    op.create_index('ix_box_memberships_user_id', 'box_memberships', ['user_id'])

    op.create_table(
        'orders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('box_id', sa.String(36), sa.ForeignKey('boxes.id'), nullable=False),
        sa.Column('provider_order_id', sa.String(255), nullable=False),
        sa.Column('provider_subscription_id', sa.String(255)),
        sa.Column('status', sa.String(20), server_default='paid', nullable=False),
        sa.Column('amount', sa.Integer, server_default='0', nullable=False),
        sa.Column('currency', sa.String(3), server_default='USD', nullable=False),
        sa.Column('billing_reason', sa.String(50)),
        sa.Column('paid_at', sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index('ix_orders_box_id', 'orders', ['box_id'])
    op.create_index('ix_orders_provider_order_id', 'orders', ['provider_order_id'], unique=True)


def downgrade() -> None:
    """Drop billing tables in dependency order."""
    op.drop_table('orders')
    op.drop_table('box_memberships')
    op.drop_table('usage_events')
    op.drop_table('billing_events')
    op.drop_table('overage_billing_records')
    op.drop_table('grace_periods')
    op.drop_table('subscriptions')
    op.drop_table('subscription_plans')
    op.drop_table('boxes')
