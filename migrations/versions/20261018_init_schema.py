"""init schema

Revision ID: 20261018_init_schema
Revises: 
Create Date: 2026-10-18 09:12:41.204113

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261018_init_schema'
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = postgresql.JSONB().with_variant(sa.JSON(), 'sqlite')

job_status = sa.Enum(
    'QUEUED', 'PROCESSING', 'BLOCKED', 'COMPLETED', 'FAILED', name='job_status'
)
job_style = sa.Enum('BYZANTINE', 'GOTHIC', 'CYBERPUNK', name='job_style')


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('email', sa.String, nullable=False, unique=True),
        sa.Column('name', sa.String),
        sa.Column('image_url', sa.String),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'image_jobs',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('users.id'), nullable=False),
        sa.Column('input_url', sa.String, nullable=False),
        sa.Column('style', job_style, nullable=False),
        sa.Column('prompt_variant', sa.String(200)),
        sa.Column('output_format', sa.String(8), nullable=False, server_default='png'),
        sa.Column('status', job_status, nullable=False, server_default='QUEUED'),
        sa.Column('output_url', sa.String),
        sa.Column('output_key', sa.String),
        sa.Column('blocked_reason', sa.String),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_image_jobs_user_id', 'image_jobs', ['user_id'])

    op.create_table(
        'generation_events',
        sa.Column('id', sa.BigInteger().with_variant(sa.Integer, 'sqlite'), primary_key=True),
        sa.Column('job_id', sa.String(32), sa.ForeignKey('image_jobs.id'), nullable=False),
        sa.Column('step', sa.String, nullable=False),
        sa.Column('detail', JSON_TYPE),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_generation_events_job_id', 'generation_events', ['job_id'])

    op.create_table(
        'quotas',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('users.id'), nullable=False),
        sa.Column('month_utc', sa.String(7), nullable=False),
        sa.Column('free_remaining', sa.Integer, nullable=False, server_default='0'),
        sa.Column('paid_remaining', sa.Integer, nullable=False, server_default='0'),
        sa.Column('watermark_exempt', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'month_utc', name='uq_quotas_user_month'),
        sa.CheckConstraint('free_remaining >= 0', name='ck_quotas_free_nonneg'),
        sa.CheckConstraint('paid_remaining >= 0', name='ck_quotas_paid_nonneg'),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('users.id'), nullable=False),
        sa.Column('stripe_customer_id', sa.String),
        sa.Column('stripe_subscription_id', sa.String, unique=True),
        sa.Column('stripe_price_id', sa.String),
        sa.Column('plan_tier', sa.String, nullable=False, server_default='FREE'),
        sa.Column('status', sa.String, nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True)),
        sa.Column('current_period_end', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_stripe_customer_id', 'subscriptions', ['stripe_customer_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('stripe_event_id', sa.String, nullable=False, unique=True),
        sa.Column('type', sa.String, nullable=False),
        sa.Column('payload', JSON_TYPE),
        sa.Column('status', sa.String, nullable=False, server_default='received'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True)),
    )

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.Integer, nullable=False),
        sa.Column('action', sa.String, nullable=False),
        sa.Column('context', JSON_TYPE),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])


def downgrade() -> None:
    op.drop_index('ix_audit_logs_user_id', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_table('webhook_events')
    op.drop_index('ix_subscriptions_stripe_customer_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('quotas')
    op.drop_index('ix_generation_events_job_id', table_name='generation_events')
    op.drop_table('generation_events')
    op.drop_index('ix_image_jobs_user_id', table_name='image_jobs')
    op.drop_table('image_jobs')
    op.drop_table('users')

    job_status.drop(op.get_bind(), checkfirst=True)
    job_style.drop(op.get_bind(), checkfirst=True)
