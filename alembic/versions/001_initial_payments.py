"""Initial payments schema

Revision ID: 001_initial_payments
Revises:
Create Date: 2026-10-19

Creates the purchase targets (tournaments, banners, shops, venues,
individuals, packages), bookings with their slots, the OrderHistory /
Payment pair, payouts, the webhook event log and the notification outbox.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial_payments'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ORDER_TYPES = "'tournament', 'banner', 'sponsor', 'shop', 'venue', 'individual', 'booking'"


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    ]


def _money(name, nullable=True):
    return sa.Column(name, sa.Numeric(12, 2), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('full_name', sa.String(150)),
        sa.Column('email', sa.String(255)),
        sa.Column('phone_number', sa.String(20), unique=True),
        sa.Column('role', sa.String(20), nullable=False, server_default='player'),
        sa.Column('fcm_token', sa.String(512)),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_users_email', 'users', ['email'])

    op.create_table(
        'packages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(150), nullable=False),
        sa.Column('package_for', sa.String(20), nullable=False),
        _money('price', nullable=False),
        sa.Column('duration_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        'tournaments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.false()),
        sa.Column('is_sponsored', sa.Boolean(), server_default=sa.false()),
        sa.Column('sponsor_package_id', sa.String(36), sa.ForeignKey('packages.id', ondelete='SET NULL')),
        *_timestamps(),
    )
    op.create_index('ix_tournaments_user_id', 'tournaments', ['user_id'])

    op.create_table(
        'promotional_banners',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('title', sa.String(200)),
        sa.Column('is_active', sa.Boolean(), server_default=sa.false()),
        sa.Column('activated_at', sa.DateTime()),
        *_timestamps(),
    )
    op.create_index('ix_promotional_banners_user_id', 'promotional_banners', ['user_id'])

    op.create_table(
        'shops',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('shop_name', sa.String(200), nullable=False),
        sa.Column('package_id', sa.String(36), sa.ForeignKey('packages.id', ondelete='SET NULL')),
        sa.Column('is_subscription_purchased', sa.Boolean(), server_default=sa.false()),
        sa.Column('package_start_date', sa.DateTime()),
        sa.Column('package_end_date', sa.DateTime()),
        *_timestamps(),
    )
    op.create_index('ix_shops_user_id', 'shops', ['user_id'])

    op.create_table(
        'venues',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('sports', sa.JSON()),
        sa.Column('playable_areas', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('upi_id', sa.String(100)),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('is_subscription_purchased', sa.Boolean(), server_default=sa.false()),
        sa.Column('package_id', sa.String(36), sa.ForeignKey('packages.id', ondelete='SET NULL')),
        sa.Column('subscription_expiry', sa.DateTime()),
        sa.Column('total_bookings', sa.Integer(), server_default='0'),
        _money('total_amount'),
        _money('amount_need_to_pay'),
        _money('total_amount_paid'),
        sa.Column('razorpay_contact_id', sa.String(64)),
        sa.Column('razorpay_fund_account_id', sa.String(64)),
        sa.Column('slot_version', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
    )
    op.create_index('ix_venues_user_id', 'venues', ['user_id'])

    op.create_table(
        'individuals',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('full_name', sa.String(150), nullable=False),
        sa.Column('upi_id', sa.String(100)),
        sa.Column('has_active_subscription', sa.Boolean(), server_default=sa.false()),
        sa.Column('package_id', sa.String(36), sa.ForeignKey('packages.id', ondelete='SET NULL')),
        sa.Column('subscription_expiry', sa.DateTime()),
        sa.Column('razorpay_contact_id', sa.String(64)),
        sa.Column('razorpay_fund_account_id', sa.String(64)),
        *_timestamps(),
    )
    op.create_index('ix_individuals_user_id', 'individuals', ['user_id'])

    op.create_table(
        'bookings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('venue_id', sa.String(36), sa.ForeignKey('venues.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('sport', sa.String(50), nullable=False),
        sa.Column('booking_pattern', sa.String(20)),
        sa.Column('duration_in_hours', sa.Numeric(6, 2)),
        _money('base_amount'),
        _money('processing_fee'),
        _money('convenience_fee'),
        _money('gst_amount'),
        _money('total_amount'),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('booking_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('is_locked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('locked_until', sa.DateTime()),
        sa.Column('session_id', sa.String(100)),
        sa.Column('razorpay_payment_id', sa.String(64)),
        sa.Column('cancellation_reason', sa.String(255)),
        sa.Column('confirmed_at', sa.DateTime()),
        *_timestamps(),
    )
    op.create_index('ix_bookings_user_id', 'bookings', ['user_id'])
    op.create_index('ix_booking_session', 'bookings', ['venue_id', 'sport', 'session_id'])
    op.create_index('ix_booking_lock_expiry', 'bookings', ['is_locked', 'locked_until'])

    op.create_table(
        'booking_slots',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('venue_id', sa.String(36), nullable=False),
        sa.Column('sport', sa.String(50), nullable=False),
        sa.Column('slot_date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.String(5), nullable=False),
        sa.Column('end_time', sa.String(5), nullable=False),
        sa.Column('playable_area', sa.Integer(), nullable=False, server_default='1'),
        sa.CheckConstraint('playable_area >= 1', name='ck_slot_playable_area'),
    )
    op.create_index('ix_slot_lookup', 'booking_slots', ['venue_id', 'sport', 'slot_date', 'playable_area'])

    op.create_table(
        'order_history',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_id', sa.String(64), nullable=False, unique=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('order_type', sa.String(20), nullable=False),
        sa.Column('target_id', sa.String(36), nullable=False),
        sa.Column('package_id', sa.String(36)),
        _money('amount', nullable=False),
        _money('amount_paid', nullable=False),
        _money('amount_due', nullable=False),
        _money('base_amount'),
        _money('processing_fee'),
        _money('convenience_fee'),
        _money('gst_amount'),
        _money('total_amount'),
        _money('amount_without_coupon'),
        sa.Column('coupon', sa.String(50)),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('receipt', sa.String(64)),
        sa.Column('status', sa.String(20), nullable=False, server_default='Pending'),
        *_timestamps(),
        sa.CheckConstraint(f"order_type IN ({ORDER_TYPES})", name='ck_order_history_type'),
    )
    op.create_index('ix_order_history_user_id', 'order_history', ['user_id'])
    op.create_index('ix_order_history_user_created', 'order_history', ['user_id', 'created_at'])
    op.create_index('ix_order_history_target', 'order_history', ['order_type', 'target_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_id', sa.String(64), nullable=False, unique=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('order_type', sa.String(20), nullable=False),
        sa.Column('target_id', sa.String(36), nullable=False),
        sa.Column('payment_mode', sa.String(20)),
        sa.Column('transaction_id', sa.String(64)),
        sa.Column('razorpay_payment_id', sa.String(64)),
        _money('amount', nullable=False),
        _money('amount_paid', nullable=False),
        _money('base_amount'),
        _money('processing_fee'),
        _money('convenience_fee'),
        _money('gst_amount'),
        _money('total_amount'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('receipt', sa.String(64)),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='Pending'),
        sa.Column('payment_date', sa.DateTime()),
        *_timestamps(),
    )
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_razorpay_payment_id', 'payments', ['razorpay_payment_id'])

    op.create_table(
        'tournament_payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tournament_id', sa.String(36), sa.ForeignKey('tournaments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('payment_id', sa.String(36), sa.ForeignKey('payments.id', ondelete='CASCADE'), nullable=False),
        _money('amount', nullable=False),
        sa.Column('created_at', sa.DateTime()),
        sa.UniqueConstraint('tournament_id', 'payment_id', name='uq_tournament_payment'),
    )

    op.create_table(
        'payouts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('razorpay_payout_id', sa.String(64), unique=True),
        sa.Column('fund_account_id', sa.String(64)),
        sa.Column('user_id', sa.String(36)),
        sa.Column('beneficiary_type', sa.String(20), nullable=False),
        sa.Column('beneficiary_id', sa.String(36), nullable=False),
        sa.Column('booking_id', sa.String(36)),
        sa.Column('recipient_vpa', sa.String(100)),
        _money('amount', nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('mode', sa.String(20), nullable=False, server_default='UPI'),
        sa.Column('purpose', sa.String(30), nullable=False, server_default='payout'),
        sa.Column('reference_id', sa.String(64)),
        sa.Column('narration', sa.String(100)),
        sa.Column('idempotency_key', sa.String(100), nullable=False, unique=True),
        sa.Column('gateway_idempotency_key', sa.String(120)),
        sa.Column('status', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('failure_reason', sa.Text()),
        sa.Column('processed_at', sa.DateTime()),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('last_retry_at', sa.DateTime()),
        sa.Column('needs_manual_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('submission_unconfirmed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('gateway_response', sa.JSON()),
        sa.Column('webhook_data', sa.JSON()),
        *_timestamps(),
    )
    op.create_index('ix_payouts_user_id', 'payouts', ['user_id'])
    op.create_index('ix_payout_status_retry', 'payouts', ['status', 'last_retry_at'])
    op.create_index('ix_payout_beneficiary', 'payouts', ['beneficiary_type', 'beneficiary_id'])
    op.create_index('ix_payouts_reference_id', 'payouts', ['reference_id'])

    op.create_table(
        'payment_webhook_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False, server_default='razorpay'),
        sa.Column('event_id', sa.String(255)),
        sa.Column('event_type', sa.String(100)),
        sa.Column('entity_type', sa.String(20), nullable=False),
        sa.Column('external_id', sa.String(255)),
        sa.Column('entity_status', sa.String(30)),
        sa.Column('payload_json', sa.Text(), nullable=False),
        sa.Column('payload_hash', sa.String(64)),
        sa.Column('status', sa.String(20), nullable=False, server_default='received'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('next_retry_at', sa.DateTime()),
        sa.Column('result_action', sa.String(50)),
        sa.Column('error_message', sa.Text()),
        sa.Column('received_at', sa.DateTime()),
        sa.Column('processed_at', sa.DateTime()),
    )
    op.create_index('ix_payment_webhook_provider_hash', 'payment_webhook_events', ['provider', 'payload_hash'])
    op.create_index('ix_payment_webhook_provider_event_id', 'payment_webhook_events', ['provider', 'event_id'])
    op.create_index('ix_payment_webhook_retry', 'payment_webhook_events', ['status', 'next_retry_at'])
    op.create_index('ix_payment_webhook_external', 'payment_webhook_events', ['entity_type', 'external_id'])

    op.create_table(
        'notification_outbox',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('channel', sa.String(10), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('user_id', sa.String(36)),
        sa.Column('recipient', sa.String(512), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('next_attempt_at', sa.DateTime()),
        sa.Column('last_error', sa.Text()),
        sa.Column('completed_at', sa.DateTime()),
        sa.Column('idempotency_key', sa.String(255), nullable=False, unique=True),
        *_timestamps(),
    )
    op.create_index('ix_notification_outbox_user_id', 'notification_outbox', ['user_id'])
    op.create_index('ix_notification_status_next', 'notification_outbox', ['status', 'next_attempt_at'])


def downgrade() -> None:
    for table in (
        'notification_outbox',
        'payment_webhook_events',
        'payouts',
        'tournament_payments',
        'payments',
        'order_history',
        'booking_slots',
        'bookings',
        'individuals',
        'venues',
        'shops',
        'promotional_banners',
        'tournaments',
        'packages',
        'users',
    ):
        op.drop_table(table)
