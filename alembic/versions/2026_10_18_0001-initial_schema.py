"""initial schema

Revision ID: 2026_10_18_0001
Revises:
Create Date: 2026-10-18 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create auto-gift schema."""

    # ========================================================================
    # Create auto_gift_rules table
    # ========================================================================
    op.create_table(
        'auto_gift_rules',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('recipient_id', UUID(as_uuid=True), nullable=True),
        sa.Column('pending_recipient_email', sa.String(255), nullable=True),
        sa.Column('date_type', sa.String(50), nullable=False),
        sa.Column('scheduled_date', sa.Date(), nullable=True),
        sa.Column('occasion_anchor_date', sa.Date(), nullable=True),
        sa.Column('budget_limit_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('auto_approve', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('payment_method_id', sa.String(255), nullable=True),
        sa.Column('payment_method_status', sa.String(20), nullable=False, server_default='valid'),
        sa.Column('payment_method_last_verified', sa.DateTime(timezone=True), nullable=True),
        sa.Column('selection_source', sa.String(20), nullable=False),
        sa.Column('min_price_minor', sa.BigInteger(), nullable=True),
        sa.Column('max_price_minor', sa.BigInteger(), nullable=True),
        sa.Column('categories', JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('exclude_items', JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('preferred_brands', JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('specific_product_id', sa.String(255), nullable=True),
        sa.Column('notifications_enabled', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('notification_days', JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('deactivated_at', sa.DateTime(timezone=True), nullable=True),

        # Constraints
        sa.CheckConstraint('budget_limit_minor > 0', name='ck_rules_budget_positive'),
        sa.CheckConstraint(
            '(recipient_id IS NULL) <> (pending_recipient_email IS NULL)',
            name='ck_rules_single_target',
        ),
        sa.CheckConstraint(
            "payment_method_status IN ('valid', 'invalid', 'detached')",
            name='ck_rules_payment_method_status',
        ),
        sa.CheckConstraint(
            "selection_source IN ('wishlist', 'ai', 'both', 'specific')",
            name='ck_rules_selection_source',
        ),
        sa.CheckConstraint(
            "selection_source <> 'specific' OR specific_product_id IS NOT NULL",
            name='ck_rules_specific_product',
        ),
    )

    # Indexes for auto_gift_rules
    op.create_index('ix_auto_gift_rules_user_id', 'auto_gift_rules', ['user_id'])
    op.create_index('idx_rules_user_active', 'auto_gift_rules', ['user_id', 'is_active'])
    op.create_index('idx_rules_payment_method', 'auto_gift_rules', ['payment_method_id'])

    # ========================================================================
    # Create auto_gift_executions table
    # ========================================================================
    op.create_table(
        'auto_gift_executions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('rule_id', UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('occasion_date', sa.Date(), nullable=False),
        sa.Column('occasion_key', sa.String(80), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('total_amount_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('budget_limit_minor', sa.BigInteger(), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('timeout_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('awaiting_payment_update', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('placement_claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('order_id', sa.String(255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('shipping_address', JSONB(), nullable=True),
        sa.Column('address_source', sa.String(30), nullable=False, server_default='missing'),
        sa.Column('address_needs_confirmation', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('total_amount_minor >= 0', name='ck_executions_total_non_negative'),
        sa.CheckConstraint('retry_count >= 0', name='ck_executions_retry_non_negative'),
        sa.CheckConstraint('version > 0', name='ck_executions_version_positive'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'pending_approval', 'approved', "
            "'order_placed', 'order_failed', 'completed', 'failed', 'cancelled', 'rejected')",
            name='ck_executions_status',
        ),
        sa.CheckConstraint(
            "status NOT IN ('approved', 'order_placed', 'completed') "
            "OR total_amount_minor <= budget_limit_minor",
            name='ck_executions_within_budget',
        ),
        sa.ForeignKeyConstraint(
            ['rule_id'], ['auto_gift_rules.id'], name='fk_executions_rule', ondelete='RESTRICT'
        ),
    )

    # Indexes for auto_gift_executions
    op.create_index('ix_auto_gift_executions_rule_id', 'auto_gift_executions', ['rule_id'])
    op.create_index('ix_auto_gift_executions_user_id', 'auto_gift_executions', ['user_id'])
    op.create_index(
        'idx_executions_rule_occasion', 'auto_gift_executions', ['rule_id', 'occasion_key']
    )
    op.create_index(
        'idx_executions_live',
        'auto_gift_executions',
        ['rule_id', 'occasion_key'],
        postgresql_where=sa.text(
            "status NOT IN ('completed', 'failed', 'cancelled', 'rejected')"
        ),
    )
    op.create_index(
        'idx_executions_status_retry', 'auto_gift_executions', ['status', 'next_retry_at']
    )
    op.create_index('idx_executions_user_status', 'auto_gift_executions', ['user_id', 'status'])

    # ========================================================================
    # Create auto_gift_execution_products table
    # ========================================================================
    op.create_table(
        'auto_gift_execution_products',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('execution_id', UUID(as_uuid=True), nullable=False),
        sa.Column('rank', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.String(255), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('price_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('retailer', sa.String(100), nullable=True),
        sa.Column('rating', sa.Float(), nullable=True),
        sa.Column('review_count', sa.Integer(), nullable=True),
        sa.Column('is_selected', sa.Boolean(), nullable=False, server_default=sa.text('false')),

        # Constraints
        sa.CheckConstraint('price_minor >= 0', name='ck_execution_products_price'),
        sa.UniqueConstraint('execution_id', 'product_id', name='uq_execution_product'),
        sa.ForeignKeyConstraint(
            ['execution_id'],
            ['auto_gift_executions.id'],
            name='fk_execution_products_execution',
            ondelete='CASCADE',
        ),
    )

    op.create_index(
        'idx_execution_products_execution', 'auto_gift_execution_products', ['execution_id']
    )

    # ========================================================================
    # Create order_attempts table (append-only audit)
    # ========================================================================
    op.create_table(
        'order_attempts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('execution_id', UUID(as_uuid=True), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('payment_method_id', sa.String(255), nullable=True),
        sa.Column('order_id', sa.String(255), nullable=True),
        sa.Column('error_type', sa.String(100), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint(
            "outcome IN ('succeeded', 'failed', 'timeout')", name='ck_order_attempts_outcome'
        ),
        sa.ForeignKeyConstraint(
            ['execution_id'],
            ['auto_gift_executions.id'],
            name='fk_order_attempts_execution',
            ondelete='RESTRICT',
        ),
    )

    op.create_index(
        'idx_order_attempts_execution', 'order_attempts', ['execution_id', 'attempt_number']
    )

    # ========================================================================
    # Create api_keys table
    # ========================================================================
    op.create_table(
        'api_keys',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('key_hash', sa.Text(), nullable=False),
        sa.Column('key_prefix', sa.String(20), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('environment', sa.String(10), nullable=False),
        sa.Column('permissions', JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),

        # Constraints
        sa.CheckConstraint("environment IN ('test', 'live')", name='ck_api_keys_environment'),
        sa.CheckConstraint("status IN ('active', 'revoked')", name='ck_api_keys_status'),
    )

    op.create_index('idx_api_keys_status', 'api_keys', ['status'])


def downgrade() -> None:
    """Drop auto-gift schema."""
    op.drop_table('api_keys')
    op.drop_table('order_attempts')
    op.drop_table('auto_gift_execution_products')
    op.drop_table('auto_gift_executions')
    op.drop_table('auto_gift_rules')
