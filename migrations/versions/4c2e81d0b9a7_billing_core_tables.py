"""billing core: persons, profiles, enrollments, billing accounts, subscriptions, assignments, webhook events

Revision ID: 4c2e81d0b9a7
Revises:
Create Date: 2026-10-18 09:12:31.418220

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '4c2e81d0b9a7'
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade():
    op.create_table(
        'persons',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('date_of_birth', sa.Date(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'contact_points',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('person_id', sa.Integer(), sa.ForeignKey('persons.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('value', sa.String(length=255), nullable=False),
        sa.Column('is_primary', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    with op.batch_alter_table('contact_points', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_contact_points_person_id'), ['person_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_contact_points_type'), ['type'], unique=False)
        batch_op.create_index(batch_op.f('ix_contact_points_value'), ['value'], unique=False)

    op.create_table(
        'program_profiles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('person_id', sa.Integer(), sa.ForeignKey('persons.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('program', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='REGISTERED'),
        sa.Column('monthly_rate', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('guardian_email', sa.String(length=255), nullable=True),
        sa.Column('family_reference_id', sa.String(length=64), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(length=64), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=64), nullable=True),
        sa.Column('subscription_status', sa.String(length=32), nullable=True),
        sa.Column('subscription_status_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('previous_subscription_ids', JSON, nullable=False, server_default='[]'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
    )
    with op.batch_alter_table('program_profiles', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_program_profiles_person_id'), ['person_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_program_profiles_program'), ['program'], unique=False)
        batch_op.create_index(batch_op.f('ix_program_profiles_guardian_email'), ['guardian_email'], unique=False)
        batch_op.create_index(batch_op.f('ix_program_profiles_family_reference_id'), ['family_reference_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_program_profiles_stripe_subscription_id'), ['stripe_subscription_id'], unique=False)

    op.create_table(
        'enrollments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('program_profile_id', sa.Integer(), sa.ForeignKey('program_profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('batch_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='REGISTERED'),
        sa.Column('start_date', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
    )
    with op.batch_alter_table('enrollments', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_enrollments_program_profile_id'), ['program_profile_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_enrollments_batch_id'), ['batch_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_enrollments_status'), ['status'], unique=False)

    op.create_table(
        'billing_accounts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('person_id', sa.Integer(), sa.ForeignKey('persons.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('account_type', sa.String(length=32), nullable=False),
        sa.Column('stripe_customer_id_mahad', sa.String(length=64), nullable=True),
        sa.Column('stripe_customer_id_dugsi', sa.String(length=64), nullable=True),
        sa.Column('stripe_customer_id_youth', sa.String(length=64), nullable=True),
        sa.Column('stripe_customer_id_donation', sa.String(length=64), nullable=True),
        sa.Column('payment_intent_id_dugsi', sa.String(length=64), nullable=True),
        sa.Column('payment_method_captured', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payment_method_captured_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('person_id', 'account_type', name='uq_billing_accounts_person_account_type'),
    )
    with op.batch_alter_table('billing_accounts', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_billing_accounts_person_id'), ['person_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_billing_accounts_account_type'), ['account_type'], unique=False)
        for column in ('mahad', 'dugsi', 'youth', 'donation'):
            name = f'stripe_customer_id_{column}'
            batch_op.create_index(batch_op.f(f'ix_billing_accounts_{name}'), [name], unique=True)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('billing_account_id', sa.Integer(), sa.ForeignKey('billing_accounts.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('stripe_account_type', sa.String(length=32), nullable=False),
        sa.Column('stripe_subscription_id', sa.String(length=64), nullable=False),
        sa.Column('stripe_customer_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='incomplete'),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='usd'),
        sa.Column('interval', sa.String(length=16), nullable=False, server_default='month'),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_payment_date', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    with op.batch_alter_table('subscriptions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_subscriptions_billing_account_id'), ['billing_account_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_subscriptions_stripe_account_type'), ['stripe_account_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_subscriptions_stripe_subscription_id'), ['stripe_subscription_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_subscriptions_stripe_customer_id'), ['stripe_customer_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_subscriptions_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_subscriptions_current_period_end'), ['current_period_end'], unique=False)

    op.create_table(
        'billing_assignments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.Integer(), sa.ForeignKey('subscriptions.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('program_profile_id', sa.Integer(), sa.ForeignKey('program_profiles.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('percentage', sa.Float(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('start_date', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
    )
    with op.batch_alter_table('billing_assignments', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_billing_assignments_subscription_id'), ['subscription_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_billing_assignments_program_profile_id'), ['program_profile_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_billing_assignments_is_active'), ['is_active'], unique=False)

        # One ACTIVE assignment per (subscription, profile); inactive history is unbounded
        batch_op.create_index(
            'uq_billing_assignments_active_pair',
            ['subscription_id', 'program_profile_id'],
            unique=True,
            postgresql_where=sa.text('is_active'),
            sqlite_where=sa.text('is_active = 1'),
        )

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=80), nullable=False),
        sa.Column('account_type', sa.String(length=32), nullable=True),
        sa.Column('signature_valid', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('payload', JSON, nullable=False),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    with op.batch_alter_table('webhook_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_webhook_events_stripe_event_id'), ['stripe_event_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_webhook_events_type'), ['type'], unique=False)
        batch_op.create_index(batch_op.f('ix_webhook_events_account_type'), ['account_type'], unique=False)


def downgrade():
    op.drop_table('webhook_events')
    with op.batch_alter_table('billing_assignments', schema=None) as batch_op:
        batch_op.drop_index('uq_billing_assignments_active_pair')
    op.drop_table('billing_assignments')
    op.drop_table('subscriptions')
    op.drop_table('billing_accounts')
    op.drop_table('enrollments')
    op.drop_table('program_profiles')
    op.drop_table('contact_points')
    op.drop_table('persons')
