"""subscription_baseline

Revision ID: 3b7e5c1a9d24
Revises: 
Create Date: 2026-10-18 09:12:31.402115

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = '3b7e5c1a9d24'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('remote_customer_id', sa.String(length=255), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), server_default=sa.false(), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_users_remote_customer_id', 'users', ['remote_customer_id'], unique=True)
    op.create_index('ix_users_trial_ends_at', 'users', ['trial_ends_at'])
    op.create_index('ix_users_is_deleted', 'users', ['is_deleted'])

    op.create_table(
        'roles',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=50), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_roles_name', 'roles', ['name'], unique=True)

    op.create_table(
        'user_role_assignments',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role_id', sa.String(length=36), sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('source', sa.String(length=50), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('user_id', 'role_id', name='uq_user_role_assignment'),
    )
    op.create_index('ix_user_role_assignments_user_id', 'user_role_assignments', ['user_id'])
    op.create_index('ix_user_role_assignments_role_id', 'user_role_assignments', ['role_id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('remote_id', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.String(length=36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('price_ref', sa.String(length=255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_payment_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_payment_failed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_subscriptions_remote_id', 'subscriptions', ['remote_id'], unique=True)
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_user_status', 'subscriptions', ['user_id', 'status'])

    op.create_table(
        'subscription_items',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('remote_id', sa.String(length=255), nullable=False),
        sa.Column('subscription_id', sa.String(length=36), sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_ref', sa.String(length=255), nullable=True),
        sa.Column('price_ref', sa.String(length=255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
    )
    op.create_index('ix_subscription_items_remote_id', 'subscription_items', ['remote_id'], unique=True)
    op.create_index('ix_subscription_items_subscription_id', 'subscription_items', ['subscription_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('remote_event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=255), nullable=False),
        sa.Column('payload_hash', sa.String(length=64), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_webhook_events_remote_event_id', 'webhook_events', ['remote_event_id'], unique=True)
    op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
    op.create_index('idx_webhook_events_processed', 'webhook_events', ['processed_at'])


def downgrade() -> None:
    op.drop_table('webhook_events')
    op.drop_table('subscription_items')
    op.drop_table('subscriptions')
    op.drop_table('user_role_assignments')
    op.drop_table('roles')
    op.drop_table('users')
