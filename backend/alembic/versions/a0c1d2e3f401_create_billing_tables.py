"""create billing tables (customers, catalog, subscriptions, usage, rewards)

Revision ID: a0c1d2e3f401
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a0c1d2e3f401'
down_revision = None
branch_labels = None
depends_on = None

SUBSCRIPTION_STATUSES = ('incomplete', 'trialing', 'active', 'past_due', 'canceled', 'unpaid')
APPOINTMENT_STATUSES = ('scheduled', 'completed', 'canceled', 'no_show')


def upgrade() -> None:
    # users (認証サービスと共有)
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(200), nullable=False, server_default=''),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('total_points', sa.Integer(), nullable=False, server_default='0', comment='リワードポイント残高'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # billing_customers (ユーザー ↔ Stripe Customer)
    op.create_table(
        'billing_customers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('stripe_customer_id', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
        sa.UniqueConstraint('stripe_customer_id'),
    )

    # plan_catalog (Stripe Product/Price ミラー)
    op.create_table(
        'plan_catalog',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('stripe_product_id', sa.String(255), nullable=False),
        sa.Column('stripe_price_id', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False, comment='プラン名'),
        sa.Column('cuts_included_per_period', sa.Integer(), nullable=False, comment='1期間あたりのカット回数'),
        sa.Column('interval', sa.String(20), nullable=False, server_default='month'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('price_amount', sa.Integer(), nullable=False, server_default='0', comment='金額 (通貨の最小単位)'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_price_id'),
    )
    op.create_index('ix_plan_catalog_stripe_product_id', 'plan_catalog', ['stripe_product_id'])

    # user_subscriptions (1ユーザー1行)
    op.create_table(
        'user_subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=False),
        sa.Column('stripe_price_id', sa.String(255), nullable=False),
        sa.Column('plan_name', sa.String(255), nullable=False),
        sa.Column('status', sa.Enum(*SUBSCRIPTION_STATUSES, name='subscription_status'), nullable=False),
        sa.Column('current_period_start', sa.DateTime(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('cuts_included', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cuts_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('interval', sa.String(20), nullable=False, server_default='month'),
        sa.Column('price_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('scheduled_plan_name', sa.String(255), nullable=True, comment='ダウングレード予定プラン名'),
        sa.Column('scheduled_price_id', sa.String(255), nullable=True, comment='ダウングレード予定Price ID'),
        sa.Column('scheduled_effective_date', sa.DateTime(), nullable=True, comment='プラン変更予定日時'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
        sa.CheckConstraint('cuts_used >= 0', name='ck_user_subscriptions_cuts_used'),
        sa.CheckConstraint('cuts_included >= 0', name='ck_user_subscriptions_cuts_included'),
        sa.CheckConstraint(
            '(scheduled_plan_name IS NULL AND scheduled_price_id IS NULL AND scheduled_effective_date IS NULL)'
            ' OR (scheduled_plan_name IS NOT NULL AND scheduled_price_id IS NOT NULL'
            ' AND scheduled_effective_date IS NOT NULL)',
            name='ck_user_subscriptions_scheduled_triple',
        ),
    )
    op.create_index(
        'ix_user_subscriptions_stripe_subscription_id', 'user_subscriptions', ['stripe_subscription_id'],
    )

    # subscription_plan_changes (プラン変更履歴)
    op.create_table(
        'subscription_plan_changes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_subscription_id', sa.Integer(), nullable=False),
        sa.Column('old_price_id', sa.String(255), nullable=True),
        sa.Column('new_price_id', sa.String(255), nullable=False),
        sa.Column('old_plan_name', sa.String(255), nullable=True),
        sa.Column('new_plan_name', sa.String(255), nullable=False),
        sa.Column('change_type', sa.String(20), nullable=False, comment='upgrade / lateral / downgrade'),
        sa.Column('effective_at', sa.DateTime(), nullable=True, comment='変更適用予定日時 (即時適用はNULL)'),
        sa.Column('state', sa.String(20), nullable=False, server_default='applied', comment='applied / scheduled / canceled'),
        sa.Column('stripe_schedule_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_subscription_id'], ['user_subscriptions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_subscription_plan_changes_user_subscription_id', 'subscription_plan_changes', ['user_subscription_id'],
    )

    # processed_stripe_events (Webhook冪等性)
    op.create_table(
        'processed_stripe_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=False, server_default='processed', comment='processed / skipped'),
        sa.Column('processed_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_processed_stripe_events_event_id', 'processed_stripe_events', ['event_id'], unique=True)

    # appointments (予約サービス所有)
    op.create_table(
        'appointments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.Enum(*APPOINTMENT_STATUSES, name='appointment_status'), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['customer_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_appointments_customer_id', 'appointments', ['customer_id'])

    # reward_points (リワード取引)
    op.create_table(
        'reward_points',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('points', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=False, server_default='earned'),
        sa.Column('source', sa.String(50), nullable=False, comment='signup_bonus / plan_upgrade / monthly_loyalty'),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('reference_key', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reference_key'),
    )
    op.create_index('ix_reward_points_user_id', 'reward_points', ['user_id'])


def downgrade() -> None:
    op.drop_index('ix_reward_points_user_id', 'reward_points')
    op.drop_table('reward_points')
    op.drop_index('ix_appointments_customer_id', 'appointments')
    op.drop_table('appointments')
    op.drop_index('ix_processed_stripe_events_event_id', 'processed_stripe_events')
    op.drop_table('processed_stripe_events')
    op.drop_index('ix_subscription_plan_changes_user_subscription_id', 'subscription_plan_changes')
    op.drop_table('subscription_plan_changes')
    op.drop_index('ix_user_subscriptions_stripe_subscription_id', 'user_subscriptions')
    op.drop_table('user_subscriptions')
    op.drop_index('ix_plan_catalog_stripe_product_id', 'plan_catalog')
    op.drop_table('plan_catalog')
    op.drop_table('billing_customers')
    op.drop_index('ix_users_email', 'users')
    op.drop_table('users')
