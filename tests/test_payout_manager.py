"""
Tests for the payout manager

Tests cover:
- Status transition table
- Idempotency keys (a repeated key is never paid twice)
- Fund account creation once per beneficiary
- Gateway rejection vs unconfirmed submission (timeouts)
- Retries: same gateway key until a definitive failure, then a new key; retry limit
- Venue payout counters on processed / reversed
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from gully.models import BeneficiaryType, Payout, PayoutStatus, Venue
from gully.services.payout_service import (
    ALLOWED_TRANSITIONS,
    PayoutManager,
    PayoutRequest,
    can_transition,
)
from gully.utils.errors import AlreadyExists, GatewayUnavailable, NotFound, ValidationError


@pytest.fixture
def manager(db, gateway, clock):
    return PayoutManager(db, gateway=gateway, clock=clock)


def venue_payout(venue, key="settle-2026-03-venue", amount="1200"):
    return PayoutRequest(
        idempotency_key=key,
        beneficiary_type=BeneficiaryType.VENUE,
        beneficiary_id=venue.id,
        amount=Decimal(amount),
        narration="March settlement",
    )


class TestTransitions:
    """Tests for the payout status machine"""

    @pytest.mark.parametrize("current,new,allowed", [
        ("queued", "processing", True),
        ("queued", "processed", True),
        ("pending", "rejected", True),
        ("processing", "processed", True),
        ("processing", "failed", True),
        ("processed", "reversed", True),
        ("failed", "processing", True),
        ("processed", "failed", False),
        ("processed", "processing", False),
        ("rejected", "processing", False),
        ("cancelled", "queued", False),
        ("failed", "processed", False),
        ("processing", "bogus", False),
    ])
    def test_can_transition(self, current, new, allowed):
        assert can_transition(current, new) is allowed

    def test_terminal_states_have_no_exits(self):
        for status in (PayoutStatus.REJECTED, PayoutStatus.CANCELLED, PayoutStatus.REVERSED):
            assert ALLOWED_TRANSITIONS[status] == set()


class TestCreatePayout:
    """Tests for PayoutManager.create_payout"""

    def test_creates_fund_account_and_submits(self, db, factory, gateway, manager):
        venue = factory.venue(upi_id="greenturf@okaxis")

        payout = manager.create_payout(venue_payout(venue))

        assert payout.status == PayoutStatus.PROCESSING.value
        assert payout.razorpay_payout_id.startswith("pout_")
        assert payout.recipient_vpa == "greenturf@okaxis"
        assert payout.max_retries == 3
        assert gateway.fund_accounts[0]["vpa"]["address"] == "greenturf@okaxis"
        assert gateway.payouts[0]["amount"] == 120000
        assert gateway.payouts[0]["idempotency_key"] == "settle-2026-03-venue"

        db.refresh(venue)
        assert venue.razorpay_contact_id == gateway.contacts[0]["id"]
        assert venue.razorpay_fund_account_id == payout.fund_account_id

    def test_fund_account_reused(self, factory, gateway, manager):
        venue = factory.venue()

        manager.create_payout(venue_payout(venue, key="settle-key-0001"))
        manager.create_payout(venue_payout(venue, key="settle-key-0002"))

        assert len(gateway.contacts) == 1
        assert len(gateway.fund_accounts) == 1
        assert len(gateway.payouts) == 2

    def test_repeated_key_rejected(self, db, factory, gateway, manager):
        venue = factory.venue()
        manager.create_payout(venue_payout(venue))

        with pytest.raises(AlreadyExists):
            manager.create_payout(venue_payout(venue))

        assert db.query(Payout).count() == 1
        assert len(gateway.payouts) == 1

    def test_individual_beneficiary(self, factory, manager):
        individual = factory.individual()

        payout = manager.create_payout(PayoutRequest(
            idempotency_key="coach-fee-0001",
            beneficiary_type=BeneficiaryType.INDIVIDUAL,
            beneficiary_id=individual.id,
            amount=Decimal("300"),
        ))

        assert payout.beneficiary_type == "individual"
        assert payout.recipient_vpa == "coach@upi"

    def test_validation(self, factory, manager):
        venue = factory.venue()
        no_upi = factory.venue(name="Cash Only", upi_id=None)

        with pytest.raises(ValidationError):
            manager.create_payout(venue_payout(venue, key=""))
        with pytest.raises(ValidationError):
            manager.create_payout(venue_payout(venue, amount="0"))
        with pytest.raises(ValidationError):
            manager.create_payout(venue_payout(no_upi))
        with pytest.raises(NotFound):
            manager.create_payout(PayoutRequest(
                idempotency_key="missing-0001",
                beneficiary_type=BeneficiaryType.VENUE,
                beneficiary_id="nope",
                amount=Decimal("10"),
            ))

    def test_gateway_rejection_marks_failed(self, factory, gateway, manager):
        venue = factory.venue()
        gateway.payout_error = ValidationError("Invalid fund account")

        payout = manager.create_payout(venue_payout(venue))

        assert payout.status == PayoutStatus.FAILED.value
        assert payout.failure_reason == "Invalid fund account"
        assert payout.submission_unconfirmed is False
        assert payout.needs_manual_review is False

    def test_gateway_outage_leaves_submission_unconfirmed(self, factory, gateway, manager):
        venue = factory.venue()
        gateway.payout_error = GatewayUnavailable("Payment gateway timed out, please try again")

        payout = manager.create_payout(venue_payout(venue))

        assert payout.status == PayoutStatus.QUEUED.value
        assert payout.submission_unconfirmed is True
        assert payout.razorpay_payout_id is None
        assert payout.gateway_idempotency_key == "settle-2026-03-venue"
        assert payout.failure_reason == "Payment gateway timed out, please try again"


class TestStatusUpdates:
    """Tests for apply_status, handle_gateway_event and sync_status"""

    def test_processed_moves_venue_balance(self, db, factory, manager):
        venue = factory.venue(amount_need_to_pay=Decimal("5000"))
        payout = manager.create_payout(venue_payout(venue, amount="1200"))

        manager.handle_gateway_event(payout.razorpay_payout_id, "processed")

        db.refresh(venue)
        assert payout.status == PayoutStatus.PROCESSED.value
        assert payout.processed_at is not None
        assert venue.total_amount_paid == Decimal("1200.00")
        assert venue.amount_need_to_pay == Decimal("3800.00")

    def test_reversal_restores_venue_balance(self, db, factory, manager):
        venue = factory.venue(amount_need_to_pay=Decimal("5000"))
        payout = manager.create_payout(venue_payout(venue, amount="1200"))
        manager.handle_gateway_event(payout.razorpay_payout_id, "processed")

        manager.handle_gateway_event(payout.razorpay_payout_id, "reversed", failure_reason="Beneficiary bank down")

        db.refresh(venue)
        assert payout.status == PayoutStatus.REVERSED.value
        assert payout.needs_manual_review is True
        assert payout.failure_reason == "Beneficiary bank down"
        assert venue.total_amount_paid == Decimal("0.00")
        assert venue.amount_need_to_pay == Decimal("5000.00")

    def test_invalid_transition_ignored(self, factory, manager):
        venue = factory.venue()
        payout = manager.create_payout(venue_payout(venue))
        manager.handle_gateway_event(payout.razorpay_payout_id, "processed")

        assert manager.apply_status(payout, PayoutStatus.FAILED.value) is False
        assert payout.status == PayoutStatus.PROCESSED.value

    def test_unknown_gateway_payout(self, manager):
        assert manager.handle_gateway_event("pout_missing", "processed") is None

    def test_sync_status_polls_gateway(self, factory, gateway, manager):
        venue = factory.venue()
        payout = manager.create_payout(venue_payout(venue))
        gateway.payout_status = "processed"

        manager.sync_status(payout)

        assert payout.status == PayoutStatus.PROCESSED.value
        assert payout.gateway_response["status"] == "processed"

    def test_sync_requires_gateway_id(self, factory, gateway, manager):
        venue = factory.venue()
        gateway.payout_error = GatewayUnavailable()
        payout = manager.create_payout(venue_payout(venue))

        with pytest.raises(ValidationError):
            manager.sync_status(payout)

    def test_sync_binds_unconfirmed_transfer_by_reference(self, factory, gateway, manager):
        venue = factory.venue()
        gateway.payout_error = GatewayUnavailable("Payment gateway timed out, please try again")
        gateway.accept_then_fail = True
        payout = manager.create_payout(venue_payout(venue))

        manager.sync_status(payout)

        transfer = gateway.accepted_payouts["settle-2026-03-venue"]
        assert payout.razorpay_payout_id == transfer["id"]
        assert payout.status == PayoutStatus.PROCESSING.value
        assert payout.submission_unconfirmed is False
        assert payout.failure_reason is None

    def test_webhook_matches_unconfirmed_payout_by_reference(self, db, factory, gateway, manager):
        venue = factory.venue(amount_need_to_pay=Decimal("5000"))
        gateway.payout_error = GatewayUnavailable("Payment gateway timed out, please try again")
        gateway.accept_then_fail = True
        payout = manager.create_payout(venue_payout(venue, amount="1200"))
        transfer = gateway.accepted_payouts["settle-2026-03-venue"]

        matched = manager.handle_gateway_event(transfer["id"], "processed", reference_id=transfer["reference_id"])

        assert matched.id == payout.id
        assert payout.razorpay_payout_id == transfer["id"]
        assert payout.status == PayoutStatus.PROCESSED.value
        assert payout.submission_unconfirmed is False
        db.refresh(venue)
        assert venue.amount_need_to_pay == Decimal("3800.00")

        # A bound payout is never rebound to another transfer with the same reference
        assert manager.handle_gateway_event("pout_other", "processed", reference_id=transfer["reference_id"]) is None


class TestRetries:
    """Tests for retry, retry_due and the backoff schedule"""

    def test_backoff_schedule(self, manager):
        payout = Payout(retry_count=0)
        delays = []
        for count in range(6):
            payout.retry_count = count
            delays.append(manager.backoff_for(payout))

        assert delays == [timedelta(minutes=m) for m in (5, 10, 20, 40, 60, 60)]

    def test_timed_out_submission_is_not_paid_twice(self, factory, gateway, clock, manager):
        venue = factory.venue()
        gateway.payout_error = GatewayUnavailable("Payment gateway timed out, please try again")
        gateway.accept_then_fail = True
        payout = manager.create_payout(venue_payout(venue, key="settle-1"))
        gateway.payout_error = None
        gateway.accept_then_fail = False

        clock.advance(minutes=6)
        retried = manager.retry_due()

        assert [p.id for p in retried] == [payout.id]
        assert list(gateway.accepted_payouts) == ["settle-1"]
        assert [p["idempotency_key"] for p in gateway.payouts] == ["settle-1"]
        assert payout.razorpay_payout_id == gateway.accepted_payouts["settle-1"]["id"]
        assert payout.status == PayoutStatus.PROCESSING.value
        assert payout.retry_count == 1

    def test_unconfirmed_submission_resent_with_same_key(self, factory, gateway, clock, manager):
        venue = factory.venue()
        gateway.payout_error = GatewayUnavailable()
        payout = manager.create_payout(venue_payout(venue, key="settle-1"))

        gateway.payout_error = None
        manager.retry(payout)

        assert [p["idempotency_key"] for p in gateway.payouts] == ["settle-1", "settle-1"]
        assert [p["reference_id"] for p in gateway.payouts] == ["settle-1", "settle-1"]
        assert list(gateway.accepted_payouts) == ["settle-1"]
        assert payout.status == PayoutStatus.PROCESSING.value
        assert payout.submission_unconfirmed is False
        assert payout.last_retry_at == clock.now

    def test_definitive_failure_retries_under_new_key(self, factory, gateway, clock, manager):
        venue = factory.venue()
        payout = manager.create_payout(venue_payout(venue, key="settle-retry-key"))
        first_transfer = payout.razorpay_payout_id
        manager.handle_gateway_event(first_transfer, "failed", failure_reason="Beneficiary VPA is invalid")

        manager.retry(payout)

        assert payout.retry_count == 1
        assert payout.last_retry_at == clock.now
        assert payout.status == PayoutStatus.PROCESSING.value
        assert [p["idempotency_key"] for p in gateway.payouts] == ["settle-retry-key", "settle-retry-key-retry-1"]
        assert payout.reference_id == "settle-retry-key-r1"
        assert payout.razorpay_payout_id not in (None, first_transfer)
        # The stored key never changes
        assert payout.idempotency_key == "settle-retry-key"

    def test_only_failed_payouts_retry(self, factory, manager):
        venue = factory.venue()
        payout = manager.create_payout(venue_payout(venue))

        with pytest.raises(ValidationError):
            manager.retry(payout)

    def test_retry_limit_flags_manual_review(self, factory, gateway, manager):
        venue = factory.venue()
        gateway.payout_error = ValidationError("Invalid fund account")
        payout = manager.create_payout(venue_payout(venue))

        for _ in range(3):
            manager.retry(payout)
        assert payout.status == PayoutStatus.FAILED.value
        assert payout.retry_count == 3
        assert payout.needs_manual_review is True

        with pytest.raises(ValidationError):
            manager.retry(payout)
        assert len(gateway.payouts) == 4

    def test_retry_due_waits_for_backoff(self, factory, gateway, clock, manager):
        venue = factory.venue()
        gateway.payout_error = GatewayUnavailable()
        payout = manager.create_payout(venue_payout(venue))
        gateway.payout_error = None

        clock.advance(minutes=2)
        assert manager.retry_due() == []

        clock.advance(minutes=4)
        retried = manager.retry_due()

        assert [p.id for p in retried] == [payout.id]
        assert payout.status == PayoutStatus.PROCESSING.value
        assert {p["idempotency_key"] for p in gateway.payouts} == {"settle-2026-03-venue"}

    def test_retry_due_skips_manual_review(self, db, factory, gateway, clock, manager):
        venue = factory.venue()
        gateway.payout_error = GatewayUnavailable()
        payout = manager.create_payout(venue_payout(venue))
        payout.needs_manual_review = True
        db.commit()

        clock.advance(hours=2)
        assert manager.retry_due() == []
